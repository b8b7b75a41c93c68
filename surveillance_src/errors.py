"""Error taxonomy for the surveillance core."""

from typing import Optional


class SurveillanceError(Exception):
    """Base class for all surveillance core errors."""


class SourceError(SurveillanceError):
    """A provider call failed.

    Subclasses set ``retryable`` to tell the retry policy whether another
    attempt may succeed.
    """

    retryable: bool = False

    def __init__(self, source_id: str, message: str = ""):
        self.source_id = source_id
        super().__init__(f"{source_id}: {message}" if message else source_id)


class SourceUnavailable(SourceError):
    """Connection refused, DNS failure, HTTP 429/5xx."""

    retryable = True


class SourceTimeout(SourceError):
    """The provider did not answer in time."""

    retryable = True


class SourceAuthFailure(SourceError):
    """HTTP 401/403 or missing credentials."""


class SourceValidationError(SourceError):
    """The request was rejected (4xx) or the payload could not be parsed."""


class CircuitOpenSkipped(SourceError):
    """The call was not attempted because the circuit is open."""

    def __init__(self, source_id: str, next_retry_at: Optional[float] = None):
        self.next_retry_at = next_retry_at
        super().__init__(source_id, "circuit open, call skipped")


class DataQualityInsufficient(SurveillanceError):
    """Too few sources succeeded to produce a trustworthy result."""

    def __init__(self, message: str, source_status: Optional[dict] = None):
        self.source_status = dict(source_status or {})
        super().__init__(message)


class FusionStrategyUnsupported(SurveillanceError):
    """Unknown or non-executable fusion strategy."""


class AlgorithmConfigInvalid(SurveillanceError):
    """Unknown detection algorithm or invalid algorithm parameters."""


class SessionNotFound(SurveillanceError):
    """No monitoring session with the given id."""


class StreamAlreadyMonitored(SurveillanceError):
    """A stream is already owned by another running session."""

    def __init__(self, stream_key: str, session_id: str):
        self.stream_key = stream_key
        self.session_id = session_id
        super().__init__(f"Stream {stream_key} is already monitored by session {session_id}")
