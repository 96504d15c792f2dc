"""
The episode pipeline: search, download, subtitles, mux, compress, notify.

Each expensive stage first looks for its output in the episode folder and is
skipped when it's already there, so re-running after a failure picks up where
the previous run stopped.
"""

import logging
import time
from dataclasses import dataclass
from pathlib import Path

from . import media
from .errors import NotFoundError
from .progress import ProgressReporter
from .scoring import Candidate, match_best
from .timefmt import file_info, format_file_name
from .torrents import find_candidates

logger = logging.getLogger("episodedl")

LANGUAGE_NAMES = {"he": "Hebrew", "en": "English"}
# how translated and downloaded subtitles for a language are tagged on disk
LANGUAGE_MARKERS = {"he": (".heb.", "hebrew")}


@dataclass(frozen=True)
class EpisodeRequest:
    show: str
    season: int
    episode: int
    out_dir: Path = Path(".")
    min_seeders: int = 20
    compress: bool = False

    @property
    def ep_code(self):
        return f"s{self.season:02d}e{self.episode:02d}"

    @property
    def episode_name(self):
        return f"{self.show} {self.ep_code}"


def language_name(code):
    return LANGUAGE_NAMES.get(code, code)


def language_tag(code):
    """File name tag for a language code: 'he' -> 'heb'."""
    markers = LANGUAGE_MARKERS.get(code)
    return markers[0].strip(".") if markers else code


class EpisodeDownloader:
    def __init__(self, config, request, channel, index, downloader, subtitles, translator, sleep=time.sleep):
        self.config = config
        self.request = request
        self.notifier = channel.for_episode(request.episode_name)
        self.index = index
        self.downloader = downloader
        self.subtitles = subtitles
        self.translator = translator
        self.sleep = sleep

    def notify(self, message):
        self.notifier.send(message)

    def reporter(self, message):
        return ProgressReporter(self.notify, message, step=self.config.notify_step)

    def setup_directories(self):
        folder = Path(self.request.out_dir).expanduser().resolve() / self.request.episode_name
        folder.mkdir(parents=True, exist_ok=True)
        return folder

    @property
    def subtitle_markers(self):
        code = self.config.subtitle_language
        return LANGUAGE_MARKERS.get(code, (f".{code}.",))

    def find_torrents(self):
        self.notify("Searching for torrent candidates...")
        torrents = find_candidates(
            self.index,
            self.request.show,
            self.request.ep_code,
            self.request.min_seeders,
            self.config.scoring_policy,
        )
        self.notify(f"Found {len(torrents)} torrent candidates.")
        return torrents

    def find_subtitles(self):
        """Log in and search the preferred language, then the fallback one."""
        self.subtitles.login()
        languages = [self.config.subtitle_language, self.config.fallback_language]
        for i, language in enumerate(languages):
            if i == 0:
                self.notify(f"Searching for {language_name(language)} subtitle candidates...")
            else:
                self.notify(
                    f"No {language_name(languages[i - 1])} subtitles found. "
                    f"Searching for {language_name(language)} subtitles..."
                )
            candidates = self.subtitles.search(
                self.request.show, self.request.season, self.request.episode, language
            )
            if candidates:
                self.notify(f"Found {len(candidates)} subtitle candidates ({language_name(language)}).")
                return candidates, language
        self.notify("No subtitles found :(")
        raise NotFoundError("No subtitles found")

    def download_video(self, release, folder):
        self.notify(f"*Starting torrent download...*\n\n📁 {format_file_name(release.name)}")
        video = self.downloader.download(release, folder, reporter=self.reporter("Downloading..."))
        info = file_info(video)
        self.notify(
            f"Torrent download complete!\n📁 File: {format_file_name(info.name)}\n📊 Size: {info.size}"
        )
        return Path(video)

    def download_subtitle(self, subtitle, language, folder):
        """Download the chosen subtitle, translating it if it's in the fallback language."""
        name = self.request.episode_name
        target_code = self.config.subtitle_language
        target = folder / f"{name}.{language_tag(target_code)}.srt"

        if language == target_code:
            self.subtitles.download(subtitle, target)
            return target

        source = folder / f"{name}.{language_tag(language)}.srt"
        if source.exists():
            self.notify(f"Subtitle file already exists, skipping subtitle download.\n📄 File: {source.name}")
        else:
            self.subtitles.download(subtitle, source)

        self.notify(
            f"Translating subtitles from {language_name(language)} to {language_name(target_code)}..."
        )
        self.translator.translate_file(
            source, target, language_name(target_code), reporter=self.reporter("Translating...")
        )
        return target

    def mux(self, video, subtitle, folder):
        output = folder / f"{video.stem}{media.MUXED_MARKER}mp4"
        if output.exists():
            self.notify(f"Skipping video & subtitles merge -\nMerged video already exists:\n\n{output.name}")
            return output

        message = "Merging video and subtitles..."
        self.notify(message)
        media.mux_subtitles(video, subtitle, output, reporter=self.reporter(message))
        info = file_info(output)
        self.notify(f"Merge completed:\n📁 File: {format_file_name(info.name)}\n📊 Size: {info.size}")
        return output

    def compress(self, video, muxed, folder):
        output = folder / f"{video.stem}{media.COMPRESSED_MARKER}mp4"
        if output.exists():
            self.notify(f"Skipping compression -\nCompressed video already exists:\n\n{output.name}")
        else:
            message = "Compressing video for chat..."
            self.notify(message)
            try:
                compressed = media.compress_for_chat(
                    muxed,
                    output,
                    self.config.compression_threshold_mb,
                    reporter=self.reporter(message),
                )
            except Exception as e:
                self.notify(f"Compression failed: {e}")
                raise
            info = file_info(output)
            if compressed:
                self.notify(f"Compression completed:\n📁 File: {format_file_name(info.name)}\n📊 Size: {info.size}")
            else:
                self.notify(
                    f"File size ({info.size}) is under {self.config.compression_threshold_mb:g}MB, "
                    "skipping compression"
                )
        self.notifier.send_video(output)
        return output

    def run(self):
        """Run every stage that hasn't already produced its output."""
        try:
            return self._run()
        except Exception as e:
            logger.error(f"Pipeline failed: {e}")
            self.notify(f"⛔ Error: {e}")
            # give the chat backend a moment to deliver the error
            self.sleep(self.config.failure_grace)
            raise

    def _run(self):
        folder = self.setup_directories()

        video = media.find_largest_video(folder)
        subtitle_path = media.find_subtitle(folder, self.subtitle_markers)

        torrents = None
        best = None
        if video is not None:
            info = file_info(video)
            self.notify(
                f"Video file already exists, skipping torrent download.\n📁 File: {info.name}\n📊 Size: {info.size}"
            )
        else:
            torrents = self.find_torrents()

        if subtitle_path is not None:
            self.notify(
                f"{language_name(self.config.subtitle_language)} subtitle already exists "
                f"({subtitle_path.name}), skipping subtitle download."
            )
            release = torrents[0] if torrents else None
        else:
            candidates, language = self.find_subtitles()
            releases = torrents or [Candidate(name=video.name)]
            best = match_best(releases, candidates)
            release = best.release
            self.notify(
                f"Matched video and subtitle:\nVideo: {release.name}\n"
                f"Subtitle: {best.subtitle.file_name or best.subtitle.release or 'unknown'}\n"
                f"Similarity score: {best.score:.2f}"
            )

        if video is None:
            video = self.download_video(release, folder)
        if subtitle_path is None:
            subtitle_path = self.download_subtitle(best.subtitle, language, folder)

        final = self.mux(video, subtitle_path, folder)
        if self.request.compress:
            self.compress(video, final, folder)

        info = file_info(final)
        self.notify(
            f"✅ All done!\n\n📁 Final file: {format_file_name(info.name)}\n"
            f"📊 Size: {info.size}\n📂 Location: {folder}"
        )
        return final
