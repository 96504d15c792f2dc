"""
Chat notifications (Telegram or WhatsApp) and the Telegram request listener.

A channel is an owned connection: ``connect()`` -> ready -> ``send()`` ... ->
``close()``. Messages sent before the channel is ready are queued and flushed
in order once it is.
"""

import logging
import os
import re
import threading
import time

import requests
from guessit import guessit

from .config import MessageTunnel
from .errors import EpisodeDownloaderError, ProviderAuthError, TransferError
from .timefmt import file_info

logger = logging.getLogger("episodedl")

TELEGRAM_API_URL = "https://api.telegram.org"
WHATSAPP_API_URL = "https://graph.facebook.com/v19.0"

# "Rick and Morty S08E05"
REQUEST_PATTERN = re.compile(r"^(.+?)\s+[sS](\d{1,2})[eE](\d{1,3})$")


class NotificationChannel:
    """Base class for chat backends."""

    # largest video this backend can deliver, None for no limit
    media_limit_mb = None

    def __init__(self, send_retries=3, retry_delay=5.0):
        self.send_retries = max(1, send_retries)
        self.retry_delay = retry_delay
        self._lock = threading.RLock()
        self._ready = False
        self._queue = []

    @property
    def ready(self):
        return self._ready

    def connect(self):
        self._connect()
        self._mark_ready()
        return self

    def close(self):
        with self._lock:
            if self._queue:
                logger.warning(f"Dropping {len(self._queue)} undelivered messages")
                self._queue = []
            self._ready = False
        self._close()

    def __enter__(self):
        return self.connect()

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def _mark_ready(self):
        with self._lock:
            self._ready = True
            queued, self._queue = self._queue, []
            for text in queued:
                self._send_text(text)

    def send(self, text):
        with self._lock:
            if not self._ready:
                logger.info(f"Channel not ready yet. Queuing message: {text}")
                self._queue.append(text)
                return
            self._send_text(text)

    def send_video(self, path, caption=""):
        """Send a video file, retrying transient failures.

        Falls back to a text notice with the file's location. Returns whether
        the video itself was delivered.
        """
        info = file_info(path)
        size_mb = os.stat(path).st_size / (1024 * 1024)
        if self.media_limit_mb is not None and size_mb > self.media_limit_mb:
            self.send(
                f"Compressed file is too big to send:\n📁 File: {info.name}\n"
                f"📊 Size: {info.size}\n⚠️ Limit: ~{self.media_limit_mb}MB"
            )
            return False

        for attempt in range(1, self.send_retries + 1):
            if attempt == 1:
                self.send(f"Sending compressed video (size: {info.size})...")
            else:
                self.send(f"Retry attempt {attempt - 1} for sending video...")
            try:
                with self._lock:
                    self._send_video(path, caption)
                logger.info(f"Video sent: {info.name}")
                return True
            except (TransferError, OSError) as e:
                logger.warning(f"Send attempt {attempt} failed: {e}")
                if attempt < self.send_retries:
                    time.sleep(self.retry_delay)

        self.send(
            f"Video file ready but couldn't send it:\n📁 File: {info.name}\n"
            f"📊 Size: {info.size}\n📂 Location: {info.path}"
        )
        return False

    def for_episode(self, episode_name):
        return EpisodeChannel(self, episode_name)

    def _connect(self):
        pass

    def _close(self):
        pass

    def _send_text(self, text):
        raise NotImplementedError

    def _send_video(self, path, caption):
        raise NotImplementedError


class EpisodeChannel:
    """Prefixes every message with the episode it is about.

    Text delivery is best effort here: a failed message is logged and the
    pipeline carries on.
    """

    def __init__(self, channel, episode_name):
        self.channel = channel
        self.episode_name = episode_name

    def send(self, text):
        try:
            self.channel.send(f"*[{self.episode_name}]*\n{text}")
        except EpisodeDownloaderError as e:
            logger.warning(f"Notification failed: {e}")

    def send_video(self, path):
        return self.channel.send_video(path, caption=f"[{self.episode_name}] Compressed video")


class NullChannel(NotificationChannel):
    """Writes notifications to the log only."""

    def _send_text(self, text):
        logger.info(f"[notify] {text}")

    def _send_video(self, path, caption):
        logger.info(f"[notify] video {path} ({caption})")


def _check(response, what):
    if response.status_code in (401, 403):
        raise ProviderAuthError(f"{what}: unauthorized ({response.status_code})")
    if not response.ok:
        raise TransferError(
            f"{what}: {response.status_code} {response.reason} - {response.text[:300]}",
            status_code=response.status_code,
        )
    return response


class TelegramChannel(NotificationChannel):
    media_limit_mb = 50

    def __init__(self, token, chat_id, session=None, base_url=TELEGRAM_API_URL, timeout=30, **kwargs):
        super().__init__(**kwargs)
        if not token or not chat_id:
            raise ProviderAuthError("TELEGRAM_BOT_TOKEN or TELEGRAM_CHAT_ID not set")
        self.chat_id = chat_id
        self.session = session or requests.Session()
        self.api = f"{base_url.rstrip('/')}/bot{token}"
        self.timeout = timeout

    def _call(self, method, what, **kwargs):
        try:
            response = self.session.post(f"{self.api}/{method}", timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise TransferError(f"{what}: {e}")
        return _check(response, what)

    def _connect(self):
        me = self._call("getMe", "Telegram login").json().get("result") or {}
        logger.info(f"Connected to Telegram as @{me.get('username', '?')}")

    def _close(self):
        self.session.close()

    def _send_text(self, text):
        logger.debug(f"[Telegram] Sending message: {text}")
        payload = {"chat_id": self.chat_id, "text": text, "parse_mode": "Markdown"}
        try:
            self._call("sendMessage", "Failed to send Telegram message", json=payload)
        except TransferError as e:
            # unbalanced markdown in a file name; send it plain instead
            if e.status_code != 400:
                raise
            payload.pop("parse_mode")
            self._call("sendMessage", "Failed to send Telegram message", json=payload)

    def _send_video(self, path, caption):
        with open(path, "rb") as fh:
            self._call(
                "sendVideo",
                "Failed to send Telegram video",
                data={"chat_id": self.chat_id, "caption": caption, "supports_streaming": "true"},
                files={"video": (os.path.basename(path), fh, "video/mp4")},
            )

    def reply(self, chat_id, text):
        self._call("sendMessage", "Failed to send Telegram message", json={"chat_id": chat_id, "text": text})

    def get_updates(self, offset=None, timeout=30):
        params = {"timeout": timeout, "allowed_updates": '["message"]'}
        if offset is not None:
            params["offset"] = offset
        try:
            response = self.session.get(
                f"{self.api}/getUpdates", params=params, timeout=timeout + self.timeout
            )
        except requests.RequestException as e:
            raise TransferError(f"Telegram getUpdates: {e}")
        return _check(response, "Telegram getUpdates").json().get("result") or []


class WhatsAppChannel(NotificationChannel):
    """WhatsApp Cloud API backend."""

    media_limit_mb = 95
    # larger videos go out as documents
    inline_video_limit_mb = 16

    def __init__(
        self, token, phone_number_id, recipient, session=None, base_url=WHATSAPP_API_URL, timeout=60, **kwargs
    ):
        super().__init__(**kwargs)
        if not token or not phone_number_id or not recipient:
            raise ProviderAuthError(
                "WHATSAPP_TOKEN, WHATSAPP_PHONE_NUMBER_ID and MY_WHATSAPP_NUMBER must be set"
            )
        self.recipient = recipient
        self.base = f"{base_url.rstrip('/')}/{phone_number_id}"
        self.session = session or requests.Session()
        self.session.headers["Authorization"] = f"Bearer {token}"
        self.timeout = timeout

    def _request(self, method, url, what, **kwargs):
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise TransferError(f"{what}: {e}")
        return _check(response, what)

    def _connect(self):
        info = self._request("GET", self.base, "WhatsApp login").json()
        logger.info(f"WhatsApp client is ready ({info.get('display_phone_number', self.recipient)})")

    def _close(self):
        self.session.close()

    def _message(self, body, what):
        payload = {"messaging_product": "whatsapp", "to": self.recipient}
        payload.update(body)
        return self._request("POST", f"{self.base}/messages", what, json=payload)

    def _send_text(self, text):
        logger.debug(f"[WhatsApp] Sending message to {self.recipient}: {text}")
        self._message({"type": "text", "text": {"body": text}}, "Failed to send WhatsApp message")

    def _send_video(self, path, caption):
        with open(path, "rb") as fh:
            upload = self._request(
                "POST",
                f"{self.base}/media",
                "WhatsApp media upload",
                data={"messaging_product": "whatsapp", "type": "video/mp4"},
                files={"file": (os.path.basename(path), fh, "video/mp4")},
            )
        media_id = upload.json().get("id")
        if not media_id:
            raise TransferError("WhatsApp media upload returned no id")

        if os.stat(path).st_size / (1024 * 1024) <= self.inline_video_limit_mb:
            body = {"type": "video", "video": {"id": media_id, "caption": caption}}
        else:
            body = {
                "type": "document",
                "document": {"id": media_id, "caption": caption, "filename": os.path.basename(path)},
            }
        self._message(body, "Failed to send WhatsApp video")


def make_channel(config):
    kwargs = {"send_retries": config.send_retries, "retry_delay": config.retry_delay}
    if config.message_tunnel == MessageTunnel.TELEGRAM:
        return TelegramChannel(config.telegram_bot_token, config.telegram_chat_id, **kwargs)
    if config.message_tunnel == MessageTunnel.WHATSAPP:
        return WhatsAppChannel(
            config.whatsapp_token,
            config.whatsapp_phone_number_id,
            config.whatsapp_recipient,
            **kwargs,
        )
    return NullChannel(**kwargs)


def parse_request(text):
    """Turn 'Show Name S01E02' into (show, season, episode), or None."""
    text = (text or "").strip()
    if not text:
        return None

    match = REQUEST_PATTERN.match(text)
    if match:
        return match.group(1).strip(), int(match.group(2)), int(match.group(3))

    info = guessit(text)
    title, season, episode = info.get("title"), info.get("season"), info.get("episode")
    if info.get("type") == "episode" and title and isinstance(season, int) and isinstance(episode, int):
        return title, season, episode
    return None


class TelegramListener:
    """Long-polls a bot for 'Show S01E02' messages and handles them one at a time."""

    def __init__(self, channel, handler, poll_timeout=30):
        self.channel = channel
        self.handler = handler
        self.poll_timeout = poll_timeout
        self.offset = None

    def poll_once(self):
        handled = 0
        for update in self.channel.get_updates(self.offset, self.poll_timeout):
            self.offset = update["update_id"] + 1
            message = update.get("message") or {}
            chat_id = str((message.get("chat") or {}).get("id", ""))
            if chat_id != str(self.channel.chat_id):
                logger.debug(f"Ignoring message from chat {chat_id}")
                continue

            request = parse_request(message.get("text"))
            if request is None:
                continue
            show, season, episode = request
            self.channel.reply(
                chat_id,
                f'Looking for downloads for "{show}", Season {season}, Episode {episode}...',
            )
            try:
                self.handler(show, season, episode)
            except Exception as e:
                # the handler has already reported the failure to the chat
                logger.error(f"Request '{message.get('text')}' failed: {e}")
            handled += 1
        return handled

    def run_forever(self):
        logger.info("Listening for Telegram episode requests...")
        while True:
            try:
                self.poll_once()
            except TransferError as e:
                logger.warning(f"Polling failed: {e}")
                time.sleep(5)
