"""Pydantic schemas for the scanning backend's wire format.

These schemas decode the three JSON payloads exchanged with the backend:

* :class:`UploadResponse` / :class:`UploadErrorBody`: body of ``POST /api/upload``.
* :class:`ProgressEvent`: one ``data:`` frame of ``GET /api/scan-status/{id}``.
* :class:`ScanResult`: body of ``GET /api/scan-result/{id}``.

:class:`ScanOutcome` is the client-side tagged variant produced by the
:class:`~peroxide.services.result_fetcher.ResultFetcher` from a decoded
:class:`ScanResult` (or from a retrieval failure).

Usage::

    from peroxide.schemas.scan import ProgressEvent, ScanResult

    event = ProgressEvent.model_validate_json('{"progress": 40, "message": "Parsing headers"}')
    result = ScanResult.model_validate(response.json())
"""

from __future__ import annotations

from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Upload
# ---------------------------------------------------------------------------


class UploadResponse(BaseModel):
    """Successful upload acknowledgement carrying the opaque scan id."""

    model_config = ConfigDict(populate_by_name=True)

    scan_id: str = Field(..., alias="scanId", min_length=1)


class UploadErrorBody(BaseModel):
    """Structured error body returned when the backend refuses an upload."""

    error: str


# ---------------------------------------------------------------------------
# Scan status stream
# ---------------------------------------------------------------------------


class ProgressEvent(BaseModel):
    """One decoded progress message from the scan-status push channel.

    Attributes:
        fraction: Progress on a 0..100 scale.  The wire field is ``progress``.
            Regressions are allowed; values outside the scale are accepted
            here and clamped by the consumer of the event.
        message: Human-readable description of the current scan step.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    fraction: float = Field(..., alias="progress")
    message: str

    @property
    def is_complete(self) -> bool:
        return self.fraction >= 100


# ---------------------------------------------------------------------------
# Scan result
# ---------------------------------------------------------------------------

ResultStatus = Literal["safe", "unsafe", "suspicious", "scanning"]


class Threat(BaseModel):
    """A single indicator reported by the backend."""

    model_config = ConfigDict(populate_by_name=True)

    type: str
    details: str = ""
    severity: str = ""
    threat_id: str = Field(default="", alias="threatId")


class ScanStats(BaseModel):
    """Threat counts broken down by severity."""

    model_config = ConfigDict(populate_by_name=True)

    threats_found: int = Field(default=0, ge=0, alias="threatsFound")
    malicious: int = Field(default=0, ge=0)
    suspicious: int = Field(default=0, ge=0)
    neutral: int = Field(default=0, ge=0)


class FileInfo(BaseModel):
    """Metadata the backend computed for the uploaded file."""

    filename: str
    size: int = Field(..., ge=0)
    sha256: str = ""


class DosHeader(BaseModel):
    e_magic: str = ""
    e_lfanew: int = 0


class FileHeader(BaseModel):
    machine: str = ""
    number_of_sections: int = 0
    time_date_stamp: str = ""
    characteristics: list[str] = Field(default_factory=list)


class OptionalHeader(BaseModel):
    magic: str = ""
    address_of_entry_point: str = ""
    image_base: str = ""
    section_alignment: int = 0
    file_alignment: int = 0
    subsystem: str = ""
    dll_characteristics: list[str] = Field(default_factory=list)


class NtHeader(BaseModel):
    signature: str = ""
    file_header: FileHeader = Field(default_factory=FileHeader)
    optional_header: OptionalHeader = Field(default_factory=OptionalHeader)


class PEHeaders(BaseModel):
    dos_header: DosHeader = Field(default_factory=DosHeader)
    nt_header: NtHeader = Field(default_factory=NtHeader)


class PESection(BaseModel):
    name: str
    virtual_size: str = ""
    virtual_address: str = ""
    size_of_raw_data: str = ""
    pointer_to_raw_data: str = ""
    characteristics: list[str] = Field(default_factory=list)


class PEImport(BaseModel):
    dll: str
    functions: list[str] = Field(default_factory=list)


class PEExport(BaseModel):
    name: str
    ordinal: int = 0
    rva: str = ""


class PEAnalysis(BaseModel):
    """Static structural analysis of a PE image, when the backend provides it."""

    headers: PEHeaders = Field(default_factory=PEHeaders)
    sections: list[PESection] = Field(default_factory=list)
    imports: list[PEImport] = Field(default_factory=list)
    exports: list[PEExport] | None = None


class ScanResult(BaseModel):
    """Final artifact returned by ``GET /api/scan-result/{scan_id}``.

    Attributes:
        status: ``"safe"``, ``"unsafe"``, ``"suspicious"`` or ``"scanning"``.
            Any other value fails validation.
        threats: Indicators found in the file, in backend order.
        stats: Severity breakdown of *threats*.
        logs: Server-side scan log lines.
        file_info: Backend-computed file metadata, when available.
        pe_analysis: Structural analysis detail, when available.
    """

    status: ResultStatus
    threats: list[Threat] = Field(default_factory=list)
    stats: ScanStats = Field(default_factory=ScanStats)
    logs: list[str] = Field(default_factory=list)
    file_info: FileInfo | None = None
    pe_analysis: PEAnalysis | None = None


# ---------------------------------------------------------------------------
# Client-side outcome
# ---------------------------------------------------------------------------


class OutcomeKind(str, Enum):
    """Tag of the :class:`ScanOutcome` variant."""

    SAFE = "safe"
    UNSAFE = "unsafe"
    SUSPICIOUS = "suspicious"
    STILL_SCANNING = "scanning"
    ERROR_INFO = "error"


class ScanOutcome(BaseModel):
    """Immutable outcome of one scan job.

    Exactly one of :attr:`result` (for every kind except ``ERROR_INFO``) and
    :attr:`error` (for ``ERROR_INFO``) is populated.
    """

    model_config = ConfigDict(frozen=True)

    kind: OutcomeKind
    result: ScanResult | None = None
    error: str | None = None

    @classmethod
    def from_result(cls, result: ScanResult) -> "ScanOutcome":
        return cls(kind=OutcomeKind(result.status), result=result)

    @classmethod
    def failure(cls, cause: str) -> "ScanOutcome":
        return cls(kind=OutcomeKind.ERROR_INFO, error=cause)

    @property
    def is_terminal(self) -> bool:
        """``False`` only while the backend still reports the scan as running."""
        return self.kind is not OutcomeKind.STILL_SCANNING

    @property
    def is_error(self) -> bool:
        return self.kind is OutcomeKind.ERROR_INFO
