"""
Error taxonomy for the delivery and playback endpoints.

No error here is fatal to a long-running server: each one is raised for a
single request, session, or variant and handled at that boundary.
"""

from typing import Optional


class TierStreamError(Exception):
    """Base class for all TierStream errors."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(message)
        self.message = message
        self.original_error = original_error


class ProtocolError(TierStreamError):
    """Malformed or unknown control command, or an ERROR reply from the server."""


class ControlConnectionError(TierStreamError, ConnectionError):
    """Accept, read or write failure on the control channel."""


class CatalogError(TierStreamError):
    """Catalog scan or variant generation failure."""


class TranscodeError(CatalogError):
    """The encoder ran but did not produce the requested variant."""


class TranscodeToolUnavailable(TranscodeError):
    """The external encoder is not installed or not runnable."""


class StreamLaunchError(TierStreamError):
    """Missing source file, unsupported protocol, or a process that would not start."""


class MeasurementUnavailable(TierStreamError):
    """The configured bandwidth meter cannot produce a measurement."""


class PlaybackHealthTimeout(TierStreamError):
    """The consumer never started decoding and was terminated."""

    def __init__(
        self,
        message: str,
        hint: str = "",
        reason: str = "",
        elapsed: float = 0.0,
        invalid_timing_streak: int = 0,
    ):
        super().__init__(message)
        self.hint = hint
        self.reason = reason
        self.elapsed = elapsed
        self.invalid_timing_streak = invalid_timing_streak

    def __str__(self) -> str:
        if self.hint:
            return f"{self.message} {self.hint}"
        return self.message
