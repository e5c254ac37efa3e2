from __future__ import annotations

__all__ = [
    "AudiobookError",
    "TtsError",
    "TtsValidationError",
    "TtsTransientError",
    "AudioHandleReleased",
    "AssemblyError",
    "BatchFailedError",
    "TranslationError",
]


class AudiobookError(Exception):
    """Base class for pipeline errors."""


class TtsError(AudiobookError):
    pass


class TtsValidationError(TtsError):
    """
    Raised for input the provider would reject (empty text, oversized text,
    invalid prosody values). Never retried.
    """


class TtsTransientError(TtsError):
    """
    Raised for rate limiting, temporary unavailability or dropped connections.
    Callers may retry with backoff.
    """

    def __init__(self, message: str, *, rate_limited: bool = False) -> None:
        super().__init__(message)
        self.rate_limited = rate_limited


class AudioHandleReleased(AudiobookError):
    pass


class AssemblyError(AudiobookError):
    pass


class BatchFailedError(AudiobookError):
    def __init__(self, message: str, failed_ids=None) -> None:
        super().__init__(message)
        self.failed_ids = sorted(failed_ids or [])


class TranslationError(AudiobookError):
    pass
