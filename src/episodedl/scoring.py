"""
Ranking of torrent search results and pairing of releases with subtitles.

Two torrent scoring policies exist side by side:

* ``QUALITY`` prefers higher resolutions (1080p > 720p > 480p > anything
  else) and uses the seeder count as a tie-break.
* ``SIMILARITY`` prefers releases whose normalized name lines up with the
  search query, again with seeders as a tie-break.

Scores are only comparable within one ranking pass.

Releases are paired with subtitles by word overlap (``word_similarity``),
which copes with reordered or extra tags much better than the positional
``similarity`` used by the ``SIMILARITY`` policy.
"""

import logging
import re
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional, Sequence

from .errors import EmptyCandidateSetError, NoCandidatesError, ThresholdFilterEmptyError

logger = logging.getLogger("episodedl")

QUALITY_TIERS = (("1080p", 3), ("720p", 2), ("480p", 1))
TIER_WEIGHT = 1000
SEEDER_DIVISOR = 1000

_NON_ALNUM = re.compile(r"[^a-z0-9]")
_NON_ALNUM_RUN = re.compile(r"[^a-z0-9]+")
_LEADING_INT = re.compile(r"\s*([+-]?\d+)")


class ScoringPolicy(str, Enum):
    QUALITY = "quality"
    SIMILARITY = "similarity"


@dataclass(frozen=True)
class Candidate:
    """A torrent release returned by the index."""

    name: str
    seeders: int = 0
    info_hash: str = ""
    score: float = 0.0

    @classmethod
    def from_api(cls, record: dict) -> "Candidate":
        return cls(
            name=str(record.get("name") or ""),
            seeders=parse_seeders(record.get("seeders")),
            info_hash=str(record.get("info_hash") or ""),
        )


@dataclass(frozen=True)
class SubtitleCandidate:
    """A subtitle file returned by the subtitle provider."""

    file_id: str
    file_name: Optional[str] = None
    release: Optional[str] = None
    language: Optional[str] = None


@dataclass(frozen=True)
class Match:
    release: Candidate
    subtitle: SubtitleCandidate
    score: float


def parse_seeders(value) -> int:
    """Seeder counts arrive as strings, ints or not at all."""
    if value is None or isinstance(value, bool):
        return 0
    leading = _LEADING_INT.match(str(value))
    if not leading:
        return 0
    return max(int(leading.group(1)), 0)


def quality_tier(name: str) -> int:
    lowered = (name or "").lower()
    for tag, tier in QUALITY_TIERS:
        if tag in lowered:
            return tier
    return 0


def normalize(text: str) -> str:
    return _NON_ALNUM.sub("", (text or "").lower())


def similarity(a: str, b: str) -> float:
    """Fraction of characters that are equal at the same position.

    Both strings are normalized first. This is not an edit distance: a single
    inserted character shifts everything after it out of alignment.
    """
    a, b = normalize(a), normalize(b)
    longest = max(len(a), len(b))
    if longest == 0:
        return 0.0
    matches = sum(1 for x, y in zip(a, b) if x == y)
    return matches / longest


def score(
    candidate: Candidate,
    query: Optional[str] = None,
    policy: ScoringPolicy = ScoringPolicy.QUALITY,
) -> float:
    seeder_bonus = candidate.seeders / SEEDER_DIVISOR
    if policy == ScoringPolicy.QUALITY:
        return quality_tier(candidate.name) * TIER_WEIGHT + seeder_bonus
    if policy == ScoringPolicy.SIMILARITY:
        if query is None:
            raise ValueError("similarity scoring needs a reference query")
        return similarity(candidate.name, query) * TIER_WEIGHT + seeder_bonus
    raise ValueError(f"Unknown scoring policy: {policy}")


def rank(
    candidates: Sequence[Candidate],
    min_seeders: int = 0,
    policy: ScoringPolicy = ScoringPolicy.QUALITY,
    query: Optional[str] = None,
) -> list:
    """Filter by seeders, score every survivor and sort best first.

    The sort is stable, so candidates with equal scores keep their order.
    """
    if not candidates:
        raise NoCandidatesError("No candidates to rank")

    eligible = [c for c in candidates if c.seeders >= min_seeders]
    if not eligible:
        raise ThresholdFilterEmptyError(
            f"None of {len(candidates)} torrents has at least {min_seeders} seeders"
        )

    scored = [replace(c, score=score(c, query, policy)) for c in eligible]
    scored.sort(key=lambda c: c.score, reverse=True)

    logger.debug(f"Scored {len(scored)} torrents with the {policy.value} policy:")
    for c in scored:
        logger.debug(f"  Name: {c.name}, Seeders: {c.seeders}, Score: {c.score:.2f}")
    return scored


def word_tokens(text: str) -> set:
    return {t for t in _NON_ALNUM_RUN.sub(" ", (text or "").lower()).split(" ") if t}


def word_similarity(a: str, b: str) -> float:
    """Shared words divided by the size of the larger word set."""
    words_a, words_b = word_tokens(a), word_tokens(b)
    return len(words_a & words_b) / max(len(words_a), len(words_b), 1)


def match_best(
    releases: Sequence[Candidate], subtitles: Sequence[SubtitleCandidate]
) -> Match:
    """Find the release/subtitle pair whose names share the most words.

    Subtitles without a file name never match. When nothing overlaps, the
    first release and the first subtitle are returned.
    """
    if not releases or not subtitles:
        raise EmptyCandidateSetError(
            f"Cannot match {len(releases)} releases against {len(subtitles)} subtitles"
        )

    best_release, best_subtitle, best_score = releases[0], subtitles[0], -1.0
    for release in releases:
        if not release.name:
            continue
        for subtitle in subtitles:
            if not subtitle.file_name:
                continue
            pair_score = word_similarity(release.name, subtitle.file_name)
            if pair_score > best_score:
                best_release, best_subtitle, best_score = release, subtitle, pair_score

    return Match(release=best_release, subtitle=best_subtitle, score=max(best_score, 0.0))
