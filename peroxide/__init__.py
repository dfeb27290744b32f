"""PEroxide scan client.

Drives a single file through the PEroxide scanning backend: upload with
progress, live scan-status events, and retrieval of the final result.

    from peroxide import ScanOrchestrator, UploadFile
"""

from peroxide.core.orchestrator import ScanOrchestrator
from peroxide.core.scan_state import ScanPhase, ScanSnapshot
from peroxide.services.event_stream import EventStreamConsumer
from peroxide.services.result_fetcher import ResultFetcher
from peroxide.services.transport import UploadFile, UploadTransport

__all__ = [
    "EventStreamConsumer",
    "ResultFetcher",
    "ScanOrchestrator",
    "ScanPhase",
    "ScanSnapshot",
    "UploadFile",
    "UploadTransport",
]
