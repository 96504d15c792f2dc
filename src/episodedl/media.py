#!/usr/bin/env python3
"""
ffmpeg work: burning subtitles into a video and shrinking it for chat apps.

Outputs are encoded to a ``.part`` file next to the target and renamed on
success, so an interrupted encode never looks like a finished one.
"""

import logging
import os
import shutil
from pathlib import Path

import ffmpeg

from .errors import SubprocessError
from .progress import probe_duration, run_ffmpeg_with_progress
from .timefmt import format_size

logger = logging.getLogger("episodedl")

VIDEO_EXTENSIONS = (".mp4", ".mkv", ".avi", ".mov", ".wmv", ".flv")
SUBTITLE_EXTENSIONS = (".srt", ".sub")

MUXED_MARKER = ".hebsub."
COMPRESSED_MARKER = ".whatsapp."
PART_SUFFIX = ".part"

COMPRESSION_THRESHOLD_MB = 110


def probe_video(path):
    try:
        return ffmpeg.probe(str(path))
    except ffmpeg.Error as e:
        stderr = e.stderr.decode(errors="replace").strip() if e.stderr else ""
        raise SubprocessError(f"ffprobe failed for {path}: {stderr or e}")


def media_duration(path):
    """Duration of a media file in seconds, 0 if ffprobe can't tell."""
    try:
        return probe_duration(probe_video(path))
    except SubprocessError as e:
        logger.warning(f"Could not determine duration: {e}")
        return 0


def part_path(output):
    output = Path(output)
    return output.with_name(f"{output.stem}{PART_SUFFIX}{output.suffix}")


def _encode(stream, output, duration, description, reporter):
    """Run `stream` (which writes to the .part path) and move the result into place."""
    partial = part_path(output)
    try:
        run_ffmpeg_with_progress(stream, duration, description, reporter)
    except BaseException:
        if partial.exists():
            logger.debug(f"Removing partial output {partial}")
            partial.unlink()
        raise
    os.replace(partial, output)
    return Path(output)


def mux_subtitles(video, subtitle, output, reporter=None):
    """Burn a text subtitle file into the video, re-encoding with libx264."""
    output = Path(output)
    ffin = ffmpeg.input(str(video))
    ffv = ffin.video.filter("subtitles", filename=str(subtitle))
    stream = ffmpeg.overwrite_output(
        ffmpeg.output(
            ffv,
            ffin["a?"],
            str(part_path(output)),
            **{"c:v": "libx264", "c:a": "copy"},
        )
    )
    logger.info(f"Merging {Path(video).name} with {Path(subtitle).name}")
    _encode(stream, output, media_duration(video), "Merging subtitles", reporter)
    logger.info(f"Muxing complete -> {output}")
    return output


def file_size_mb(path):
    try:
        return os.stat(path).st_size / (1024 * 1024)
    except OSError:
        return 0


def needs_compression(path, threshold_mb=COMPRESSION_THRESHOLD_MB):
    return file_size_mb(path) > threshold_mb


def compress_for_chat(infile, outfile, threshold_mb=COMPRESSION_THRESHOLD_MB, reporter=None):
    """Shrink a video to 720p H.264 so it can be sent over chat.

    Files already under `threshold_mb` are copied as-is. Returns whether the
    file was actually re-encoded.
    """
    outfile = Path(outfile)
    if not needs_compression(infile, threshold_mb):
        logger.info(
            f"File size ({format_size(os.stat(infile).st_size)}) is under "
            f"{threshold_mb}MB, copying without compression"
        )
        partial = part_path(outfile)
        shutil.copyfile(infile, partial)
        os.replace(partial, outfile)
        return False

    ffin = ffmpeg.input(str(infile))
    ffv = ffin.video.filter("scale", 720, -2)
    opts = {
        "c:v": "libx264",
        "preset": "medium",
        # 23 is close to visually lossless and still small at 720p
        "crf": "23",
        "b:v": "1000k",
        "c:a": "aac",
        "b:a": "128k",
        "ac": "2",
        "movflags": "faststart",
    }
    stream = ffmpeg.overwrite_output(
        ffmpeg.output(ffv, ffin["a?"], str(part_path(outfile)), **opts)
    )
    logger.info("Compressing video for chat (medium preset, H.264, 720p)")
    _encode(stream, outfile, media_duration(infile), "Compressing video", reporter)
    return True


def _is_hidden(path, root):
    return any(part.startswith(".") for part in path.relative_to(root).parts)


def find_largest_video(directory, exclude_markers=(MUXED_MARKER, COMPRESSED_MARKER)):
    """Largest video file under `directory`, ignoring our own outputs and hidden dirs.

    Only a trailing `.part` before the extension marks an unfinished encode, so
    release names like "Show.Part.2.S01E02" still count.
    """
    directory = Path(directory)
    if not directory.is_dir():
        return None

    largest, largest_size = None, -1
    for path in directory.rglob("*"):
        if not path.is_file() or path.suffix.lower() not in VIDEO_EXTENSIONS:
            continue
        if _is_hidden(path, directory):
            continue
        lowered = path.name.lower()
        if any(marker in lowered for marker in exclude_markers):
            continue
        if path.stem.lower().endswith(PART_SUFFIX):
            continue
        size = path.stat().st_size
        if size > largest_size:
            largest, largest_size = path, size
    return largest


def find_subtitle(directory, markers):
    """First subtitle file in `directory` whose name contains one of `markers`."""
    directory = Path(directory)
    if not directory.is_dir():
        return None
    for path in sorted(directory.iterdir()):
        lowered = path.name.lower()
        if not path.is_file() or not lowered.endswith(SUBTITLE_EXTENSIONS):
            continue
        if any(marker in lowered for marker in markers):
            return path
    return None
