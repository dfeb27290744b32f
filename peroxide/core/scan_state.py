"""ScanState: the state object owned by the scan orchestrator.

:class:`ScanState` is created once per :class:`~peroxide.core.orchestrator.ScanOrchestrator`
and lives for the orchestrator's lifetime.  Only the orchestrator's
transition methods mutate it; the transport, event stream consumer and
result fetcher merely produce values that the orchestrator applies.
Renderers read immutable :class:`ScanSnapshot` copies.

Usage::

    from peroxide.core.scan_state import ScanPhase, ScanState

    state = ScanState()
    assert state.phase is ScanPhase.IDLE
    snap = state.snapshot()
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from peroxide.core.log_buffer import LogAggregator, LogLine
from peroxide.schemas.scan import ScanOutcome


class ScanPhase(str, Enum):
    """Lifecycle states of the orchestrator."""

    IDLE = "idle"
    UPLOADING = "uploading"
    AWAITING_EVENTS = "awaiting_events"
    SCANNING = "scanning"
    COMPLETED = "completed"
    UPLOAD_REJECTED = "upload_rejected"
    FETCH_FAILED = "fetch_failed"


class ErrorKind(str, Enum):
    """Which component produced an :class:`ErrorNotice`."""

    UPLOAD = "upload"
    STREAM = "stream"
    FETCH = "fetch"


@dataclass(frozen=True)
class ScanJob:
    """One server-side unit of work, identified by the backend's opaque id."""

    id: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class ScanProgress:
    """Latest progress shown to the user.

    Attributes:
        fraction: Backend-reported scan progress on a 0..100 scale.
        message: Backend-reported description of the current step.
        upload_fraction: Client-side upload progress on the same scale.
    """

    fraction: float = 0.0
    message: str = ""
    upload_fraction: float = 0.0


@dataclass(frozen=True)
class AttemptedFile:
    """Name and size of the file the user selected."""

    name: str
    size: int


@dataclass(frozen=True)
class ErrorNotice:
    """A dismissible, human-readable error shown alongside the file metadata."""

    kind: ErrorKind
    message: str
    file_name: str | None = None
    file_size: int | None = None


@dataclass(frozen=True)
class ScanSnapshot:
    """Immutable view of :class:`ScanState` handed to renderers."""

    phase: ScanPhase
    job: ScanJob | None
    progress: ScanProgress
    log: tuple[LogLine, ...]
    outcome: ScanOutcome | None
    error: ErrorNotice | None
    file: AttemptedFile | None

    @property
    def scan_id(self) -> str | None:
        return self.job.id if self.job is not None else None


@dataclass
class ScanState:
    """Mutable state of the single in-flight scan.

    Attributes:
        phase: Current lifecycle state.
        job: The live job, or ``None`` before upload acceptance and after reset.
        progress: Latest upload and scan progress.
        log: Append-only log for the live job.
        outcome: Result of the live job once retrieved.
        error: The current dismissible error, if any.
        file: The file being (or last) attempted.
        generation: Incremented on every reset.  Asynchronous completions
            capture it when they start and are discarded if it has changed.
    """

    phase: ScanPhase = ScanPhase.IDLE
    job: ScanJob | None = None
    progress: ScanProgress = field(default_factory=ScanProgress)
    log: LogAggregator = field(default_factory=LogAggregator)
    outcome: ScanOutcome | None = None
    error: ErrorNotice | None = None
    file: AttemptedFile | None = None
    generation: int = 0

    def snapshot(self) -> ScanSnapshot:
        return ScanSnapshot(
            phase=self.phase,
            job=self.job,
            progress=self.progress,
            log=self.log.snapshot(),
            outcome=self.outcome,
            error=self.error,
            file=self.file,
        )

    def is_pristine(self) -> bool:
        """``True`` when the state equals a freshly reset ``Idle`` state."""
        return (
            self.phase is ScanPhase.IDLE
            and self.job is None
            and self.progress == ScanProgress()
            and len(self.log) == 0
            and self.outcome is None
            and self.error is None
            and self.file is None
        )
