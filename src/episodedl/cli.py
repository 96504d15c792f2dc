#!/usr/bin/env python3
import argparse
import logging
import signal
import sys
from pathlib import Path

from rich.logging import RichHandler

from .config import Config, MessageTunnel
from .errors import ProviderAuthError
from .notify import TelegramChannel, TelegramListener, make_channel
from .pipeline import EpisodeDownloader, EpisodeRequest
from .scoring import ScoringPolicy
from .subtitles import OpenSubtitlesClient, SubtitleTranslator
from .torrents import TorrentDownloader, TorrentIndex

logger = logging.getLogger("episodedl")


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Download a TV episode by torrent, add Hebrew subtitles (translated from English when needed) and report progress over Telegram or WhatsApp."
    )
    parser.add_argument("--show", help='show title, e.g. "Rick and Morty"')
    parser.add_argument("--season", type=int, help="season number")
    parser.add_argument("--episode", type=int, help="episode number")
    parser.add_argument(
        "--out",
        type=Path,
        default=Path("."),
        help="output directory; each episode gets its own folder inside it. Default: current directory",
    )
    parser.add_argument(
        "--min-seeds",
        type=int,
        default=20,
        help="ignore torrents with fewer seeders. Default: 20",
    )
    parser.add_argument(
        "--scoring",
        choices=[p.value for p in ScoringPolicy],
        help="torrent ranking: 'quality' prefers 1080p > 720p > 480p, 'similarity' prefers names closest to the query. Default: $EPISODEDL_SCORING or quality",
    )
    parser.add_argument(
        "--compress",
        action="store_true",
        help="also produce a small 720p copy and send it over the chat channel",
    )
    parser.add_argument(
        "--tunnel",
        choices=[t.value for t in MessageTunnel],
        help="notification channel. Default: $MESSAGE_TUNNEL or telegram",
    )
    parser.add_argument(
        "--listen",
        action="store_true",
        help="wait for 'Show S01E02' messages on Telegram instead of downloading one episode",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true", help="enable verbose logging output"
    )
    parser.add_argument(
        "--quiet", "-q", action="store_true", help="suppress all non-error messages"
    )

    args = parser.parse_args(argv)
    if not args.listen:
        missing = [
            flag
            for flag, value in (("--show", args.show), ("--season", args.season), ("--episode", args.episode))
            if value is None
        ]
        if missing:
            parser.error(f"the following arguments are required: {', '.join(missing)}")
    if args.min_seeds < 0:
        parser.error("--min-seeds must not be negative")
    return args


def setup_logging(args):
    level = logging.INFO
    if args.verbose:
        level = logging.DEBUG
    elif args.quiet:
        level = logging.ERROR

    logging.basicConfig(
        level=level,
        format="%(message)s",  # RichHandler will format it, this avoids double logger name
        handlers=[
            RichHandler(
                level=level,
                rich_tracebacks=True,
                show_path=False,
            )
        ],
    )


def build_config(args):
    config = Config.from_env()
    if args.scoring:
        config.scoring_policy = ScoringPolicy(args.scoring)
    if args.tunnel:
        config.message_tunnel = MessageTunnel(args.tunnel)
    return config


def run_episode(config, channel, show, season, episode, out, min_seeds=20, compress=False):
    request = EpisodeRequest(
        show=show,
        season=season,
        episode=episode,
        out_dir=out,
        min_seeders=min_seeds,
        compress=compress,
    )
    pipeline = EpisodeDownloader(
        config,
        request,
        channel,
        index=TorrentIndex(),
        downloader=TorrentDownloader(),
        subtitles=OpenSubtitlesClient(config),
        translator=SubtitleTranslator(config),
    )
    return pipeline.run()


def listen(config, channel, args):
    if not isinstance(channel, TelegramChannel):
        raise ProviderAuthError("--listen needs the Telegram tunnel")

    def handle(show, season, episode):
        run_episode(config, channel, show, season, episode, args.out, args.min_seeds, args.compress)

    TelegramListener(channel, handle).run_forever()


def _terminate(signum, frame):
    # unwinds through the channel's context manager so it gets closed
    raise SystemExit(1)


def main(argv=None):
    """Main entry point for the CLI."""
    args = parse_args(argv)
    setup_logging(args)
    signal.signal(signal.SIGTERM, _terminate)

    try:
        config = build_config(args)
        with make_channel(config) as channel:
            if args.listen:
                listen(config, channel, args)
            else:
                final = run_episode(
                    config,
                    channel,
                    args.show,
                    args.season,
                    args.episode,
                    args.out,
                    args.min_seeds,
                    args.compress,
                )
                logger.info(f"Done: {final}")
    except KeyboardInterrupt:
        logger.error("Interrupted by user")
        sys.exit(1)
    except Exception as e:
        logger.error(
            f"An unexpected error occurred: {e}", exc_info=args.verbose
        )  # Show traceback if verbose
        sys.exit(1)
    return 0


if __name__ == "__main__":
    main()
