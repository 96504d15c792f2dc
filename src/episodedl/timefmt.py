import os
import re
from dataclasses import dataclass


def format_duration(seconds):
    """Format a number of seconds as e.g. '1h 2m 5s'."""
    try:
        # round half up
        seconds = int(max(0.0, float(seconds)) + 0.5)
    except (TypeError, ValueError, OverflowError):
        seconds = 0

    days, seconds = divmod(seconds, 86400)
    hours, seconds = divmod(seconds, 3600)
    minutes, seconds = divmod(seconds, 60)

    parts = []
    if days:
        parts.append(f"{days}d")
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    parts.append(f"{seconds}s")
    return " ".join(parts)


def format_size(num_bytes):
    return f"{num_bytes / (1024 * 1024):.2f} MB"


@dataclass(frozen=True)
class FileInfo:
    name: str
    size: str
    path: str


def file_info(path):
    """Name and human readable size of a file, tolerating missing files."""
    path = os.fspath(path)
    try:
        size = format_size(os.stat(path).st_size)
    except OSError:
        size = "Unknown size"
    return FileInfo(name=os.path.basename(path), size=size, path=path)


_MARKDOWN_SPECIALS = re.compile(r"([_*`\[])")


def format_file_name(name):
    """Escape characters Telegram Markdown would otherwise eat."""
    return _MARKDOWN_SPECIALS.sub(r"\\\1", name)
