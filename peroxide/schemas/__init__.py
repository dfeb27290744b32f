"""Wire-format schemas for the PEroxide scanning backend."""

from peroxide.schemas.scan import (
    FileInfo,
    OutcomeKind,
    PEAnalysis,
    ProgressEvent,
    ScanOutcome,
    ScanResult,
    ScanStats,
    Threat,
    UploadErrorBody,
    UploadResponse,
)

__all__ = [
    "FileInfo",
    "OutcomeKind",
    "PEAnalysis",
    "ProgressEvent",
    "ScanOutcome",
    "ScanResult",
    "ScanStats",
    "Threat",
    "UploadErrorBody",
    "UploadResponse",
]
