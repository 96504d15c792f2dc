"""Tests for chat channels, request parsing and the Telegram listener."""

from unittest import mock

import pytest

from episodedl.config import Config, MessageTunnel
from episodedl.errors import ProviderAuthError, TransferError
from episodedl.notify import (
    NotificationChannel,
    NullChannel,
    TelegramChannel,
    TelegramListener,
    WhatsAppChannel,
    make_channel,
    parse_request,
)


class RecordingChannel(NotificationChannel):
    """In-memory channel; `video_failures` send attempts fail before one succeeds."""

    def __init__(self, video_failures=0, **kwargs):
        kwargs.setdefault("retry_delay", 0)
        super().__init__(**kwargs)
        self.texts = []
        self.videos = []
        self.video_failures = video_failures

    def _send_text(self, text):
        self.texts.append(text)

    def _send_video(self, path, caption):
        if self.video_failures:
            self.video_failures -= 1
            raise TransferError("upload timed out")
        self.videos.append((path, caption))


def fake_response(payload=None, status=200):
    response = mock.Mock()
    response.status_code = status
    response.ok = 200 <= status < 300
    response.reason = "Bad Request" if status == 400 else "OK"
    response.text = str(payload)
    response.json.return_value = payload
    return response


class TestNotificationChannel:
    """Tests for queueing, episode prefixes and video retries."""

    def test_queue_until_ready(self):
        channel = RecordingChannel()
        channel.send("first")
        channel.send("second")
        assert channel.texts == []

        with channel:
            assert channel.texts == ["first", "second"]
            channel.send("third")
        assert channel.texts == ["first", "second", "third"]
        assert not channel.ready

    def test_episode_prefix(self):
        with RecordingChannel() as channel:
            channel.for_episode("Show s01e02").send("Searching...")
        assert channel.texts == ["*[Show s01e02]*\nSearching..."]

    def test_episode_send_is_best_effort(self):
        channel = mock.Mock()
        channel.send.side_effect = TransferError("chat down")
        episode = NullChannel().for_episode("x")
        episode.channel = channel
        episode.send("hello")  # does not raise

    @pytest.mark.parametrize(
        "error", [ProviderAuthError("token rejected"), TransferError("chat down", status_code=502)]
    )
    def test_episode_send_survives_channel_errors(self, error, caplog):
        """Test that any channel failure on a text message is logged, not raised."""
        channel = mock.Mock()
        channel.send.side_effect = error
        episode = NullChannel().for_episode("x")
        episode.channel = channel

        with caplog.at_level("WARNING", logger="episodedl"):
            episode.send("hello")

        assert f"Notification failed: {error}" in caplog.text

    def test_send_video(self, tmp_path):
        video = tmp_path / "v.whatsapp.mp4"
        video.write_bytes(b"x" * 1024)
        with RecordingChannel() as channel:
            assert channel.for_episode("Show s01e02").send_video(video) is True
        assert channel.videos == [(video, "[Show s01e02] Compressed video")]

    def test_send_video_retries_then_succeeds(self, tmp_path):
        video = tmp_path / "v.mp4"
        video.write_bytes(b"x")
        with RecordingChannel(video_failures=2, send_retries=3) as channel:
            assert channel.send_video(video) is True
        assert any(t.startswith("Retry attempt 2") for t in channel.texts)

    def test_send_video_falls_back_to_text(self, tmp_path):
        video = tmp_path / "v.mp4"
        video.write_bytes(b"x")
        with RecordingChannel(video_failures=5, send_retries=3) as channel:
            assert channel.send_video(video) is False
        assert channel.videos == []
        assert channel.texts[-1].startswith("Video file ready but couldn't send it")
        assert str(video) in channel.texts[-1]

    def test_send_video_too_big(self, tmp_path):
        video = tmp_path / "v.mp4"
        video.write_bytes(b"x" * 2 * 1024 * 1024)
        channel = RecordingChannel()
        channel.media_limit_mb = 1
        with channel:
            assert channel.send_video(video) is False
        assert channel.videos == []
        assert "too big" in channel.texts[-1]


class TestTelegramChannel:
    """Tests for the Bot API backend against a mocked session."""

    def make(self, session):
        return TelegramChannel("TOKEN", "42", session=session, base_url="https://tg.example", retry_delay=0)

    def test_requires_credentials(self):
        with pytest.raises(ProviderAuthError):
            TelegramChannel("", "42")

    def test_connect_and_send(self):
        session = mock.Mock()
        session.post.return_value = fake_response({"ok": True, "result": {"username": "bot"}})
        with self.make(session) as channel:
            channel.send("hello *world*")

        urls = [c.args[0] for c in session.post.call_args_list]
        assert urls == ["https://tg.example/botTOKEN/getMe", "https://tg.example/botTOKEN/sendMessage"]
        assert session.post.call_args.kwargs["json"] == {
            "chat_id": "42",
            "text": "hello *world*",
            "parse_mode": "Markdown",
        }

    def test_unauthorized(self):
        session = mock.Mock()
        session.post.return_value = fake_response({"ok": False}, status=401)
        with pytest.raises(ProviderAuthError):
            self.make(session).connect()

    def test_markdown_error_resends_plain(self):
        session = mock.Mock()
        session.post.side_effect = [
            fake_response({"result": {}}),
            fake_response({"description": "can't parse entities"}, status=400),
            fake_response({"ok": True}),
        ]
        with self.make(session) as channel:
            channel.send("Show_S01E02 [1080p")

        assert "parse_mode" not in session.post.call_args.kwargs["json"]

    def test_send_video_multipart(self, tmp_path):
        video = tmp_path / "v.mp4"
        video.write_bytes(b"x")
        session = mock.Mock()
        session.post.return_value = fake_response({"ok": True, "result": {}})
        with self.make(session) as channel:
            assert channel.send_video(video, caption="cap") is True

        video_call = [c for c in session.post.call_args_list if c.args[0].endswith("/sendVideo")][0]
        assert video_call.kwargs["data"]["caption"] == "cap"
        assert "video" in video_call.kwargs["files"]


class TestWhatsAppChannel:
    def test_send_text(self):
        session = mock.Mock()
        session.headers = {}
        session.request.return_value = fake_response({"display_phone_number": "+1 555"})
        with WhatsAppChannel("TOKEN", "PNID", "972500000000", session=session, base_url="https://wa.example") as channel:
            channel.send("hi")

        method, url = session.request.call_args.args
        assert (method, url) == ("POST", "https://wa.example/PNID/messages")
        assert session.request.call_args.kwargs["json"] == {
            "messaging_product": "whatsapp",
            "to": "972500000000",
            "type": "text",
            "text": {"body": "hi"},
        }
        assert session.headers["Authorization"] == "Bearer TOKEN"

    def test_send_video_uploads_then_sends(self, tmp_path):
        video = tmp_path / "v.mp4"
        video.write_bytes(b"x")
        session = mock.Mock()
        session.headers = {}
        session.request.side_effect = lambda method, url, **kw: fake_response(
            {"id": "media-1"} if url.endswith("/media") else {}
        )
        with WhatsAppChannel("T", "PNID", "1", session=session, base_url="https://wa.example", retry_delay=0) as channel:
            assert channel.send_video(video, "cap") is True

        video_messages = [
            c.kwargs["json"] for c in session.request.call_args_list if c.kwargs.get("json", {}).get("type") == "video"
        ]
        assert video_messages[0]["video"] == {"id": "media-1", "caption": "cap"}


class TestMakeChannel:
    def test_none(self):
        assert isinstance(make_channel(Config(message_tunnel=MessageTunnel.NONE)), NullChannel)

    def test_telegram_without_token(self):
        with pytest.raises(ProviderAuthError):
            make_channel(Config(message_tunnel=MessageTunnel.TELEGRAM))

    def test_whatsapp(self):
        config = Config(
            message_tunnel=MessageTunnel.WHATSAPP,
            whatsapp_token="t",
            whatsapp_phone_number_id="p",
            whatsapp_recipient="r",
        )
        assert isinstance(make_channel(config), WhatsAppChannel)


class TestParseRequest:
    @pytest.mark.parametrize(
        "text,expected",
        [
            ("Rick and Morty S08E05", ("Rick and Morty", 8, 5)),
            ("the office s2e10", ("the office", 2, 10)),
            ("  Severance S02E01  ", ("Severance", 2, 1)),
        ],
    )
    def test_strict_pattern(self, text, expected):
        assert parse_request(text) == expected

    def test_guessit_fallback(self):
        assert parse_request("Rick.and.Morty.S08E05.1080p.WEB") == ("Rick and Morty", 8, 5)

    @pytest.mark.parametrize("text", ["", None, "hello there"])
    def test_not_a_request(self, text):
        assert parse_request(text) is None


class TestTelegramListener:
    """Tests for polling chat requests and dispatching them."""

    def make_channel(self, updates):
        channel = mock.Mock(spec=TelegramChannel)
        channel.chat_id = "42"
        channel.get_updates.return_value = updates
        return channel

    def test_dispatches_requests_in_order(self):
        channel = self.make_channel(
            [
                {"update_id": 7, "message": {"chat": {"id": 42}, "text": "Rick and Morty S08E05"}},
                {"update_id": 8, "message": {"chat": {"id": 99}, "text": "Other Show S01E01"}},
                {"update_id": 9, "message": {"chat": {"id": 42}, "text": "thanks!"}},
                {"update_id": 10, "message": {"chat": {"id": 42}, "text": "Severance S02E01"}},
            ]
        )
        handled = []
        listener = TelegramListener(channel, lambda *request: handled.append(request))

        assert listener.poll_once() == 2
        assert handled == [("Rick and Morty", 8, 5), ("Severance", 2, 1)]
        assert listener.offset == 11
        channel.reply.assert_any_call(
            "42", 'Looking for downloads for "Rick and Morty", Season 8, Episode 5...'
        )

    def test_handler_failure_does_not_stop_listener(self):
        channel = self.make_channel(
            [
                {"update_id": 1, "message": {"chat": {"id": 42}, "text": "A S01E01"}},
                {"update_id": 2, "message": {"chat": {"id": 42}, "text": "B S01E02"}},
            ]
        )
        calls = []

        def handler(show, season, episode):
            calls.append(show)
            if show == "A":
                raise RuntimeError("no torrents")

        assert TelegramListener(channel, handler).poll_once() == 2
        assert calls == ["A", "B"]
