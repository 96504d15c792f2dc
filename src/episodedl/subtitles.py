"""
OpenSubtitles REST client and LLM-based SRT translation.
"""

import logging
import os
import re
import time
from pathlib import Path

import requests
from more_itertools import chunked
from openai import OpenAI, OpenAIError
from rich.progress import Progress, SpinnerColumn, TimeElapsedColumn

from .console import console
from .errors import ProviderAuthError, TransferError
from .progress import estimate_eta
from .scoring import SubtitleCandidate

logger = logging.getLogger("episodedl")

OPENSUBTITLES_URL = "https://api.opensubtitles.com/api/v1"

TRANSLATION_CHUNK_BLOCKS = 100
TRANSLATION_MAX_TOKENS = 4096
TRANSLATION_SYSTEM_PROMPT = (
    "You are a subtitles translation assistant. Keep timestamps unchanged and "
    "translate dialogue only. Translate to {language}, and ensure the translation "
    "is right-to-left. Punctuation such as dots and question marks should appear "
    "at the end of the line, not the beginning, as is correct for {language}."
)
TRANSLATION_USER_PROMPT = (
    "Translate the following SRT file content to {language} while preserving "
    "timestamps and right-to-left punctuation:\n\n{text}"
)

_BLANK_LINES = re.compile(r"\n\s*\n+")


def _json(response):
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


class OpenSubtitlesClient:
    def __init__(self, config, session=None, base_url=OPENSUBTITLES_URL, timeout=20):
        self.config = config
        self.session = session or requests.Session()
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.token = None

    def _headers(self):
        headers = {
            "Api-Key": self.config.opensubtitles_api_key,
            "User-Agent": self.config.opensubtitles_user_agent,
            "Accept": "application/json",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _request(self, method, path, **kwargs):
        url = f"{self.base_url}{path}"
        logger.debug(f"[OpenSubtitles] {method} {url} {kwargs.get('params') or kwargs.get('json') or ''}")
        try:
            return self.session.request(
                method, url, headers=self._headers(), timeout=self.timeout, **kwargs
            )
        except requests.RequestException as e:
            raise TransferError(f"OpenSubtitles request failed: {e}")

    def login(self):
        if not self.config.opensubtitles_api_key:
            raise ProviderAuthError("Set OS_API_KEY to use OpenSubtitles")
        if not self.config.opensubtitles_username or not self.config.opensubtitles_password:
            raise ProviderAuthError("Set OS_API_USER & OS_API_PASS env vars")

        response = self._request(
            "POST",
            "/login",
            json={
                "username": self.config.opensubtitles_username,
                "password": self.config.opensubtitles_password,
            },
        )
        token = None
        if response.ok:
            token = _json(response).get("token")
        if not token:
            raise ProviderAuthError(f"OpenSubtitles login failed ({response.status_code})")
        self.token = token
        logger.info("Logged in to OpenSubtitles")
        return token

    def search(self, show, season, episode, language):
        query = show.lower()
        if season or episode:
            query = f"{query} season {season} episode {episode}"
        response = self._request(
            "GET", "/subtitles", params={"query": query, "languages": language}
        )
        if not response.ok:
            raise TransferError(
                f"OpenSubtitles search failed: {response.status_code}",
                status_code=response.status_code,
            )

        candidates = []
        for item in _json(response).get("data") or []:
            attributes = item.get("attributes") or {}
            files = attributes.get("files") or []
            if not files or not files[0].get("file_id"):
                continue
            candidates.append(
                SubtitleCandidate(
                    file_id=str(files[0]["file_id"]),
                    file_name=files[0].get("file_name") or None,
                    release=attributes.get("release") or None,
                    language=attributes.get("language") or language,
                )
            )
        if not candidates:
            logger.info(f"[OpenSubtitles] No subtitles found for '{query}' ({language})")
        else:
            logger.info(f"[OpenSubtitles] {len(candidates)} subtitles for '{query}' ({language})")
        return candidates

    def download(self, candidate, dest):
        if not candidate or not candidate.file_id:
            raise TransferError("No file_id for subtitle download")

        response = self._request("POST", "/download", json={"file_id": candidate.file_id})
        link = None
        if response.ok:
            link = _json(response).get("link")
        if not link:
            logger.error(f"[Subtitle Download] No link returned: {response.text[:500]}")
            raise TransferError("Subtitle download failed", status_code=response.status_code)

        try:
            subtitle = self.session.get(link, timeout=self.timeout)
        except requests.RequestException as e:
            raise TransferError(f"Subtitle download failed: {e}")
        if not subtitle.ok:
            logger.error(
                f"[Subtitle Download] Status {subtitle.status_code}: {subtitle.text[:500]}"
            )
            raise TransferError("Subtitle download failed", status_code=subtitle.status_code)

        dest = Path(dest)
        partial = dest.with_name(dest.name + ".part")
        partial.write_bytes(subtitle.content)
        os.replace(partial, dest)
        logger.info(f"Subtitle saved to {dest}")
        return dest


def split_blocks(text):
    """Split SRT text into cue blocks (number, timing, lines)."""
    text = text.replace("\r\n", "\n").strip()
    if not text:
        return []
    return _BLANK_LINES.split(text)


class SubtitleTranslator:
    def __init__(self, config, client=None):
        self.config = config
        self._client = client

    @property
    def client(self):
        if self._client is None:
            try:
                self._client = OpenAI(api_key=self.config.openai_api_key or None)
            except OpenAIError as e:
                raise ProviderAuthError(f"Cannot create OpenAI client: {e}")
        return self._client

    def translate_chunk(self, text, language):
        try:
            response = self.client.chat.completions.create(
                model=self.config.openai_model,
                max_tokens=TRANSLATION_MAX_TOKENS,
                messages=[
                    {"role": "system", "content": TRANSLATION_SYSTEM_PROMPT.format(language=language)},
                    {"role": "user", "content": TRANSLATION_USER_PROMPT.format(language=language, text=text)},
                ],
            )
        except OpenAIError as e:
            raise TransferError(f"Translation request failed: {e}")
        if not response.choices:
            return ""
        return (response.choices[0].message.content or "").strip()

    def translate_file(self, src, dest, language="Hebrew", reporter=None):
        """Translate an SRT file block-chunk by block-chunk, keeping cue order.

        The translation is written to a temporary file and renamed when done.
        """
        dest = Path(dest)
        blocks = split_blocks(Path(src).read_text(encoding="utf-8", errors="replace"))
        chunks = list(chunked(blocks, TRANSLATION_CHUNK_BLOCKS))
        partial = dest.with_name(dest.name + ".part")
        started = time.monotonic()

        logger.info(f"Translating {Path(src).name} to {language} ({len(chunks)} chunks)")
        try:
            with partial.open("w", encoding="utf-8") as out, Progress(
                SpinnerColumn(),
                *Progress.get_default_columns(),
                TimeElapsedColumn(),
                console=console,
            ) as progress:
                task = progress.add_task("Translating subtitles", total=len(chunks))
                for i, chunk in enumerate(chunks, start=1):
                    out.write(self.translate_chunk("\n\n".join(chunk), language) + "\n\n")
                    progress.update(task, completed=i)
                    if reporter:
                        elapsed = time.monotonic() - started
                        reporter.update(i / len(chunks), elapsed, estimate_eta(i, len(chunks), elapsed))
        except BaseException:
            if partial.exists():
                partial.unlink()
            raise
        os.replace(partial, dest)
        return dest
