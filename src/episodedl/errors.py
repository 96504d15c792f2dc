"""Exceptions raised by the episode pipeline and its collaborators."""


class EpisodeDownloaderError(Exception):
    """Base class for every pipeline failure."""


class NotFoundError(EpisodeDownloaderError):
    """A search returned zero usable results."""


class NoCandidatesError(EpisodeDownloaderError):
    """The ranker was handed nothing to rank."""


class ThresholdFilterEmptyError(NoCandidatesError):
    """Results existed, but none passed the seeder threshold."""


class EmptyCandidateSetError(EpisodeDownloaderError):
    """The matcher was handed an empty release or subtitle collection."""


class ProviderAuthError(EpisodeDownloaderError):
    """Logging in to a subtitle or messaging provider failed."""


class TransferError(EpisodeDownloaderError):
    """A network request failed or returned a non-success status."""

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class SubprocessError(EpisodeDownloaderError):
    """ffmpeg exited with a non-zero status."""

    def __init__(self, message, returncode=None):
        super().__init__(message)
        self.returncode = returncode
