#!/usr/bin/env python3
import logging
import re
import socket
import subprocess
import threading
import time
from collections import deque

from rich.progress import Progress, SpinnerColumn, TimeElapsedColumn

from .console import console
from .errors import SubprocessError
from .timefmt import format_duration

# Create logger but don't configure it - CLI will handle configuration
logger = logging.getLogger("episodedl")

_ERROR_LINE = re.compile(r"error|err:|invalid|unable|fail|could not", re.IGNORECASE)


class ProgressReporter:
    """Sends a chat message every time progress crosses a multiple of `step` percent.

    Several thresholds crossed in one update produce one message each, so a
    reader always sees 20%, 40%, ... even when updates arrive in bursts.
    Failing to notify is logged and otherwise ignored.
    """

    def __init__(self, notify, message, step=20):
        if step <= 0:
            raise ValueError("step must be positive")
        self.notify = notify
        self.message = message
        self.step = step
        self.last_notified = 0

    def update(self, fraction, elapsed, eta, extra=None):
        percent = int(max(0.0, min(fraction, 1.0)) * 100)
        while percent >= self.last_notified + self.step:
            self.last_notified += self.step
            if self.last_notified > 100:
                break
            details = f"Elapsed: {format_duration(elapsed)}, ETA: {format_duration(eta)}"
            if extra:
                details += f", {extra}"
            try:
                self.notify(f"{self.message} {self.last_notified}% ({details})")
            except Exception as e:
                logger.warning(f"Progress notification failed: {e}")


def estimate_eta(done, total, elapsed):
    """Seconds left, assuming the rate so far holds."""
    if done <= 0 or total <= 0:
        return 0.0
    rate = done / max(elapsed, 1e-6)
    return max(total - done, 0) / rate


class ProgressServer:
    """TCP server receiving the key=value lines ffmpeg writes for `-progress`."""

    def __init__(self, on_update):
        self.on_update = on_update
        self.sock = None
        self.server_thread = None
        self.client_thread = None
        self.running = False
        self.url = None

    def start(self):
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.sock.bind(("127.0.0.1", 0))
        self.sock.listen(1)
        # lets the accept loop notice stop()
        self.sock.settimeout(1.0)

        host, port = self.sock.getsockname()
        self.url = f"tcp://{host}:{port}"
        logger.debug(f"Progress server listening on {self.url}")

        self.running = True
        self.server_thread = threading.Thread(target=self._accept_loop, daemon=True)
        self.server_thread.start()
        return self.url

    def _accept_loop(self):
        while self.running:
            try:
                client_sock, addr = self.sock.accept()
            except socket.timeout:
                continue
            except OSError as e:
                if self.running:
                    logger.error(f"Error accepting progress connection: {e}")
                break

            logger.debug(f"Progress connection from {addr}")
            if self.client_thread and self.client_thread.is_alive():
                logger.warning("Already handling an ffmpeg client, rejecting connection")
                client_sock.close()
                continue

            self.client_thread = threading.Thread(
                target=self._read_client, args=(client_sock,), daemon=True
            )
            self.client_thread.start()

    def _read_client(self, client_sock):
        buffer = b""
        client_sock.settimeout(5.0)
        self.on_update("start", "connected")
        try:
            # drain until ffmpeg closes the connection, even while stopping
            while True:
                try:
                    chunk = client_sock.recv(1024)
                except socket.timeout:
                    if not self.running:
                        break
                    continue
                except OSError as e:
                    logger.debug(f"Error reading progress: {e}")
                    break
                if not chunk:
                    break

                buffer += chunk
                while b"\n" in buffer:
                    raw, buffer = buffer.split(b"\n", 1)
                    line = raw.decode(errors="ignore").strip()
                    if not line:
                        continue
                    key, _, value = line.partition("=")
                    key = key.strip()
                    if key:
                        self.on_update(key, value.strip() or None)
        finally:
            client_sock.close()

    def stop(self):
        self.running = False
        if self.sock:
            try:
                self.sock.close()
            except OSError as e:
                logger.debug(f"Error closing progress socket: {e}")

        for thread in (self.server_thread, self.client_thread):
            if thread and thread.is_alive():
                thread.join(timeout=1.0)
        logger.debug("Progress server stopped")


def probe_duration(probe_result):
    """Extract duration in seconds from an ffprobe result, 0 when unknown."""
    duration = 0
    try:
        if "format" in probe_result and "duration" in probe_result["format"]:
            duration = float(probe_result["format"]["duration"])
    except (ValueError, TypeError):
        logger.warning("Could not parse video duration")
    return duration


def _log_stderr(pipe, tail):
    for line in pipe:
        line = line.strip()
        if not line or line.startswith(("frame=", "size=")):
            continue
        tail.append(line)
        if _ERROR_LINE.search(line):
            logger.warning(f"FFmpeg: {line}")
        else:
            logger.debug(f"FFmpeg: {line}")


def run_ffmpeg_with_progress(ffmpeg_stream, duration, description="Encoding", reporter=None):
    """Run an ffmpeg-python stream, showing a progress bar and feeding `reporter`.

    Raises SubprocessError if ffmpeg exits non-zero.
    """
    server = None
    started = time.monotonic()
    stderr_tail = deque(maxlen=20)

    with Progress(
        SpinnerColumn(),
        *Progress.get_default_columns(),
        TimeElapsedColumn(),
        console=console,
    ) as progress:
        task = progress.add_task(description, total=duration or None, start=False)

        def on_update(key, value):
            if key == "start":
                progress.start_task(task)
            elif key == "out_time_ms":
                try:
                    position = min(float(value) / 1_000_000.0, duration)
                except (TypeError, ValueError, OverflowError):
                    return
                progress.update(task, completed=position)
                if reporter:
                    elapsed = time.monotonic() - started
                    reporter.update(
                        position / duration,
                        elapsed,
                        estimate_eta(position, duration, elapsed),
                    )
            elif key == "progress" and value == "end":
                progress.update(task, completed=duration)

        if duration > 0:
            server = ProgressServer(on_update)
            url = server.start()
            cmd = ffmpeg_stream.global_args(
                "-progress", url, "-nostats", "-hide_banner"
            ).compile()
            logger.info(f"{description} ({format_duration(duration)} of video)")
        else:
            logger.warning("Cannot show progress - unknown duration")
            cmd = ffmpeg_stream.global_args("-nostats", "-hide_banner").compile()

        try:
            logger.debug(f"Running: {' '.join(cmd)}")
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
            )
            reader = threading.Thread(
                target=_log_stderr, args=(process.stderr, stderr_tail), daemon=True
            )
            reader.start()
            returncode = process.wait()
            reader.join(timeout=1.0)
        finally:
            if server:
                server.stop()

        if returncode != 0:
            detail = f": {stderr_tail[-1]}" if stderr_tail else ""
            raise SubprocessError(
                f"ffmpeg exited with code {returncode}{detail}", returncode=returncode
            )

        if duration > 0:
            progress.update(task, completed=duration)
            # the probed duration can overshoot the last out_time ffmpeg reports
            if reporter:
                reporter.update(1.0, time.monotonic() - started, 0)
    logger.info(f"{description} completed")
