"""Error taxonomy for the PEroxide scan client.

Each failure mode of the scan lifecycle has a dedicated exception class so
that components can report precisely what went wrong.  Only
:class:`ScanInProgressError` is ever raised to callers of the
:class:`~peroxide.core.orchestrator.ScanOrchestrator`; every other kind is
caught by the component or the orchestrator and converted to a recovered
state:

+-----------------------+-------------------------------------------------+
| Error                 | Recovered state                                 |
+=======================+=================================================+
| TransportError        | ``UploadRejected`` with a dismissible notice    |
+-----------------------+-------------------------------------------------+
| StreamDecodeError     | message dropped, subscription continues         |
+-----------------------+-------------------------------------------------+
| StreamDisruption      | last known progress kept, dismissible notice    |
+-----------------------+-------------------------------------------------+
| FetchError            | ``FetchFailed`` with a dismissible notice       |
+-----------------------+-------------------------------------------------+
"""

from __future__ import annotations


class ScanClientError(Exception):
    """Base exception for all scan client errors."""


class TransportError(ScanClientError):
    """Raised when an upload fails at the network level or is refused.

    Attributes:
        status_code: HTTP status of the refusing response, or ``None`` when
            no response was received at all.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class StreamDecodeError(ScanClientError):
    """Raised for a single push message that cannot be decoded.

    Never surfaces to the user; the consumer drops the message with a warning.

    Attributes:
        raw: The undecodable ``data`` payload.
    """

    def __init__(self, message: str, raw: str = "") -> None:
        super().__init__(message)
        self.raw = raw


class StreamDisruption(ScanClientError):
    """The push channel was lost before it reported completion."""


class FetchError(ScanClientError):
    """A scan result could not be retrieved.

    Attributes:
        attempts: Number of attempts made before giving up.
    """

    def __init__(self, message: str, attempts: int = 0) -> None:
        super().__init__(message)
        self.attempts = attempts


class ScanInProgressError(ScanClientError):
    """Raised when a second scan is started before the first was reset."""
