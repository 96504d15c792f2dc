"""Shared fixtures: fake ffmpeg on PATH, sample media files and a quiet config."""

import os
import sys
from pathlib import Path

import pytest

from episodedl.config import Config, MessageTunnel

FAKE_FFMPEG = Path(__file__).parent / "fake_ffmpeg" / "fake_ffmpeg.py"


@pytest.fixture(scope="session")
def fake_ffmpeg_bin(tmp_path_factory):
    """
    Directory holding executable 'ffmpeg' and 'ffprobe' copies of fake_ffmpeg.py.

    The copies get a shebang for the interpreter running the tests, so they
    work whatever the checkout's file modes are.
    """
    assert FAKE_FFMPEG.exists(), f"fake_ffmpeg.py not found at {FAKE_FFMPEG}"
    bin_dir = tmp_path_factory.mktemp("bin")

    body = FAKE_FFMPEG.read_text()
    if body.startswith("#!"):
        body = body.split("\n", 1)[1]
    for name in ("ffmpeg", "ffprobe"):
        exe = bin_dir / name
        exe.write_text(f"#!{sys.executable}\n{body}")
        exe.chmod(0o755)
    return bin_dir


@pytest.fixture
def fake_ffmpeg_env(fake_ffmpeg_bin, monkeypatch):
    """Put the fake binaries first on PATH with fast, successful defaults."""
    monkeypatch.setenv("PATH", f"{fake_ffmpeg_bin}{os.pathsep}{os.environ.get('PATH', '')}")
    for key, value in {
        "FAKE_FFMPEG_DURATION": "10.0",
        "FAKE_FFMPEG_DELAY": "0.01",
        "FAKE_FFMPEG_UPDATE_FREQ": "0.5",
        "FAKE_FFMPEG_EXIT_CODE": "0",
    }.items():
        monkeypatch.setenv(key, value)
    monkeypatch.delenv("FAKE_FFMPEG_ARGS_LOG", raising=False)
    return fake_ffmpeg_bin


@pytest.fixture
def sample_video_file(tmp_path):
    """A few bytes with a release-style name; only fake ffmpeg ever reads it."""
    video_file = tmp_path / "Show.S01E02.1080p.WEB.mkv"
    video_file.write_bytes(b"fake video data")
    return video_file


@pytest.fixture
def sample_subtitle_file(tmp_path):
    subtitle = tmp_path / "Show s01e02.heb.srt"
    subtitle.write_text("1\n00:00:01,000 --> 00:00:02,000\nשלום\n", encoding="utf-8")
    return subtitle


@pytest.fixture
def config():
    """Credentials filled in, no chat backend, no retry or failure sleeps."""
    return Config(
        opensubtitles_api_key="os-key",
        opensubtitles_username="user",
        opensubtitles_password="secret",
        openai_api_key="sk-test",
        message_tunnel=MessageTunnel.NONE,
        send_retries=3,
        retry_delay=0,
        failure_grace=0,
    )
