"""
Torrent search on The Pirate Bay's JSON API and retrieval with libtorrent.
"""

import logging
import os
import shutil
import time
from pathlib import Path
from urllib.parse import quote

import libtorrent as lt
import requests
from rich.progress import DownloadColumn, Progress, SpinnerColumn, TimeElapsedColumn, TransferSpeedColumn

from .console import console
from .errors import NotFoundError, TransferError
from .media import VIDEO_EXTENSIONS
from .scoring import Candidate, ScoringPolicy, rank

logger = logging.getLogger("episodedl")

APIBAY_URL = "https://apibay.org"
# apibay answers an empty search with this single placeholder record
EMPTY_INFO_HASH = "0" * 40

DEFAULT_TRACKERS = (
    "udp://tracker.openbittorrent.com:80/announce",
    "udp://tracker.opentrackr.org:1337/announce",
    "udp://open.stealth.si:80/announce",
)

# libtorrent saves into this hidden folder; only finished videos are moved out
STAGING_DIR = ".incomplete"
POLL_INTERVAL = 1.0
METADATA_TIMEOUT = 300


class TorrentIndex:
    """Client for apibay.org, the API behind The Pirate Bay search."""

    def __init__(self, session=None, base_url=APIBAY_URL, timeout=20):
        self.session = session or requests.Session()
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def search(self, query):
        url = f"{self.base_url}/q.php"
        logger.info(f"Searching torrents for '{query}'")
        try:
            response = self.session.get(url, params={"q": query}, timeout=self.timeout)
        except requests.RequestException as e:
            raise TransferError(f"apibay request failed: {e}")
        if not response.ok:
            raise TransferError(
                f"apibay request failed: {response.status_code}",
                status_code=response.status_code,
            )

        try:
            results = response.json()
        except ValueError:
            raise TransferError("apibay returned invalid JSON")

        if not isinstance(results, list):
            results = []
        candidates = [
            Candidate.from_api(r)
            for r in results
            if isinstance(r, dict) and r.get("info_hash") not in (None, "", EMPTY_INFO_HASH)
        ]
        if not candidates:
            raise NotFoundError("No torrents found for this episode.")
        logger.info(f"Found {len(candidates)} torrents for '{query}'")
        return candidates


def find_candidates(index, show, ep_code, min_seeders=0, policy=ScoringPolicy.QUALITY):
    """Search the index for an episode and return the ranked candidates."""
    query = f"{show} {ep_code}"
    ranked = rank(index.search(query), min_seeders=min_seeders, policy=policy, query=query)
    logger.info(f"Best torrent: {ranked[0].name} ({ranked[0].seeders} seeders)")
    return ranked


def magnet_link(candidate, trackers=DEFAULT_TRACKERS):
    parts = [f"magnet:?xt=urn:btih:{candidate.info_hash}", f"dn={quote(candidate.name, safe='')}"]
    parts.extend(f"tr={tracker}" for tracker in trackers)
    return "&".join(parts)


def _pick_video(files):
    """Index of the largest video file in a libtorrent file_storage, or None."""
    best, best_size = None, -1
    for i in range(files.num_files()):
        if not files.file_path(i).lower().endswith(VIDEO_EXTENSIONS):
            continue
        if files.file_size(i) > best_size:
            best, best_size = i, files.file_size(i)
    return best


class TorrentDownloader:
    """Downloads the video file of a torrent into a directory."""

    def __init__(self, listen_interfaces="0.0.0.0:6881,[::]:6881", trackers=DEFAULT_TRACKERS):
        self.settings = {
            "listen_interfaces": listen_interfaces,
            "enable_dht": True,
            "enable_lsd": True,
        }
        self.trackers = trackers

    def download(self, candidate, dest_dir, reporter=None):
        dest_dir = Path(dest_dir)
        staging = dest_dir / STAGING_DIR
        staging.mkdir(parents=True, exist_ok=True)

        logger.info(f"Starting torrent download: {candidate.name}")
        session = lt.session(self.settings)
        params = lt.parse_magnet_uri(magnet_link(candidate, self.trackers))
        params.save_path = str(staging)
        handle = session.add_torrent(params)
        try:
            self._wait_for_metadata(handle)
            files = handle.torrent_file().files()
            logger.debug(
                "Torrent files: "
                + ", ".join(files.file_path(i) for i in range(files.num_files()))
            )
            index = _pick_video(files)
            if index is None:
                raise NotFoundError("No video file found in the torrent.")

            # skip samples, nfo files and extras
            priorities = [0] * files.num_files()
            priorities[index] = 4
            handle.prioritize_files(priorities)

            self._wait_until_finished(handle, files.file_path(index), reporter)
            source = staging / files.file_path(index)
        finally:
            session.remove_torrent(handle)

        target = dest_dir / source.name
        shutil.move(str(source), str(target))
        logger.info(f"Torrent download complete: {target}")
        return target

    def _wait_for_metadata(self, handle):
        deadline = time.monotonic() + METADATA_TIMEOUT
        with console.status("Fetching torrent metadata..."):
            while not handle.status().has_metadata:
                if time.monotonic() > deadline:
                    raise TransferError("Timed out waiting for torrent metadata")
                time.sleep(POLL_INTERVAL)

    def _wait_until_finished(self, handle, file_name, reporter):
        started = time.monotonic()
        with Progress(
            SpinnerColumn(),
            *Progress.get_default_columns(),
            DownloadColumn(),
            TransferSpeedColumn(),
            TimeElapsedColumn(),
            console=console,
        ) as progress:
            task = progress.add_task(f"Downloading {os.path.basename(file_name)}", total=None)
            while True:
                status = handle.status()
                if status.errc.value():
                    raise TransferError(f"Torrent error: {status.errc.message()}")
                progress.update(
                    task, completed=status.total_wanted_done, total=status.total_wanted or None
                )
                if status.is_finished or status.is_seeding:
                    break
                if reporter:
                    remaining = status.total_wanted - status.total_wanted_done
                    eta = remaining / status.download_rate if status.download_rate else 0
                    reporter.update(status.progress, time.monotonic() - started, eta)
                time.sleep(POLL_INTERVAL)
        if reporter:
            reporter.update(1.0, time.monotonic() - started, 0)
