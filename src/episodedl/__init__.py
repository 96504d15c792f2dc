"""
Making core functionality accessible at package level
"""

from .pipeline import EpisodeDownloader, EpisodeRequest
from .scoring import match_best, rank, score
from .cli import main

__version__ = "0.1.0"
__all__ = ["EpisodeDownloader", "EpisodeRequest", "match_best", "rank", "score", "main"]
