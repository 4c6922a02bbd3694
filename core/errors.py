"""
Error taxonomy for the sentence relay.

Only UpstreamConnectionError is allowed to reach the client (as a single
error frame). The other kinds are delivered to an error-reporting side
channel: every pipeline component accepts an ``on_error`` callable and
keeps going after reporting.
"""
import logging
from typing import Callable, Optional

logger = logging.getLogger("lingo.errors")


class RelayError(Exception):
    """Base class for everything the relay reports."""


class UpstreamConnectionError(RelayError):
    """The upstream model stream could not be opened or broke off. Fatal for the request."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class UpstreamEnvelopeError(RelayError):
    """A single upstream record did not decode as an envelope. Recovered by re-buffering."""

    def __init__(self, message: str, record: str = "", attempts: int = 1):
        super().__init__(message)
        self.record = record
        self.attempts = attempts


class ParseRepair(RelayError):
    """The incremental parser corrected the document locally or at end of input."""

    def __init__(self, kind: str, detail: str, offset: int):
        super().__init__(f"{kind} at offset {offset}: {detail}")
        self.kind = kind
        self.detail = detail
        self.offset = offset


class SynthesisFailure(RelayError):
    """One audio synthesis task failed; only that path's audio frame is omitted."""

    def __init__(self, message: str, path=None):
        super().__init__(message)
        self.path = path


ErrorReporter = Callable[[RelayError], None]


def log_reporter(tag: str = "") -> ErrorReporter:
    """Default side channel: log each reported error with an optional request tag."""
    prefix = f"{tag} " if tag else ""

    def report(error: RelayError) -> None:
        if isinstance(error, (ParseRepair, UpstreamEnvelopeError)):
            logger.warning(f"{prefix}{type(error).__name__}: {error}")
        else:
            logger.error(f"{prefix}{type(error).__name__}: {error}")

    return report
