"""ScanOrchestrator: single-flight state machine driving one scan end to end.

:class:`ScanOrchestrator` owns the :class:`~peroxide.core.scan_state.ScanState`
and sequences the three protocol adapters:

1. **upload**: :class:`~peroxide.services.transport.UploadTransport` posts
   the file and yields a scan id.
2. **stream**: :class:`~peroxide.services.event_stream.EventStreamConsumer`
   delivers progress events, each applied to the progress display and the
   append-only log.
3. **fetch**: :class:`~peroxide.services.result_fetcher.ResultFetcher`
   retrieves the outcome once the stream reported 100%.

State machine::

    Idle ──start_scan──▶ Uploading ──Accepted──▶ AwaitingEvents ──event──▶ Scanning
                            │                                                 │
                            └──Rejected──▶ UploadRejected        outcome ──▶ Completed
                                                                 exhausted ─▶ FetchFailed

    reset(): any state ──▶ Idle

Every asynchronous completion (upload progress, pushed event, fetched
outcome) captures the state's ``generation`` when its step starts and is
discarded if :meth:`ScanOrchestrator.reset` has run since, so nothing from
a torn-down scan can leak into the next one.

An unexpected exception from a collaborator never escapes the scan task.  It
is logged and the scan comes to rest with an error notice for the step that
failed: an upload becomes ``UploadRejected``, a fetch becomes ``FetchFailed``
and a broken stream keeps its phase, as a lost stream does.

Each step runs in a named OpenTelemetry span under a root ``peroxide.scan``
span, and every transition is logged as a structured JSON entry.

Usage::

    orchestrator = ScanOrchestrator(
        transport=UploadTransport(settings),
        consumer=EventStreamConsumer(settings),
        fetcher=ResultFetcher(settings),
    )
    final = await orchestrator.run(UploadFile.from_path("sample.exe"))
    print(final.phase, final.outcome)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from typing import Any

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from peroxide.config import Settings, get_settings
from peroxide.core.errors import ScanInProgressError
from peroxide.core.log_buffer import LogLine, LogWindow
from peroxide.core.scan_state import (
    AttemptedFile,
    ErrorKind,
    ErrorNotice,
    ScanJob,
    ScanPhase,
    ScanProgress,
    ScanSnapshot,
    ScanState,
)
from peroxide.logging_config import log_event
from peroxide.schemas.scan import OutcomeKind, ProgressEvent, ScanOutcome
from peroxide.services.event_stream import EventStreamConsumer, EventSubscription
from peroxide.services.result_fetcher import ResultFetcher
from peroxide.services.transport import Accepted, UploadFile, UploadTransport

logger = logging.getLogger(__name__)

tracer = trace.get_tracer("peroxide.orchestrator")

StateListener = Callable[["ScanOrchestrator"], None]

# Legal forward transitions.  reset() bypasses this table.
_TRANSITIONS: dict[ScanPhase, frozenset[ScanPhase]] = {
    ScanPhase.IDLE: frozenset({ScanPhase.UPLOADING}),
    ScanPhase.UPLOADING: frozenset({ScanPhase.AWAITING_EVENTS, ScanPhase.UPLOAD_REJECTED}),
    ScanPhase.AWAITING_EVENTS: frozenset({ScanPhase.SCANNING}),
    ScanPhase.SCANNING: frozenset({ScanPhase.COMPLETED, ScanPhase.FETCH_FAILED}),
    ScanPhase.COMPLETED: frozenset(),
    ScanPhase.UPLOAD_REJECTED: frozenset(),
    ScanPhase.FETCH_FAILED: frozenset(),
}


def _clamp(fraction: float) -> float:
    return min(max(fraction, 0.0), 100.0)


class ScanOrchestrator:
    """Owns the lifecycle of exactly one in-flight scan.

    All collaborators are injected so they can be replaced by fakes in tests.

    Args:
        transport: Uploads the file.
        consumer: Opens the scan-status stream.
        fetcher: Retrieves the final result.
        settings: Supplies the log window geometry and the still-scanning
            re-poll budget.  Defaults to :func:`~peroxide.config.get_settings`.
    """

    def __init__(
        self,
        *,
        transport: UploadTransport,
        consumer: EventStreamConsumer,
        fetcher: ResultFetcher,
        settings: Settings | None = None,
    ) -> None:
        self._transport = transport
        self._consumer = consumer
        self._fetcher = fetcher
        self._settings = settings or get_settings()
        self._state = ScanState()
        self._task: asyncio.Task[None] | None = None
        self._subscription: EventSubscription | None = None
        self._listeners: list[StateListener] = []

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def phase(self) -> ScanPhase:
        return self._state.phase

    def snapshot(self) -> ScanSnapshot:
        """Return an immutable copy of the current state."""
        return self._state.snapshot()

    def log_window(
        self,
        row_height: int | None = None,
        viewport_height: int | None = None,
    ) -> LogWindow:
        """Return a windowing adapter over the live log."""
        return LogWindow(
            self._state.log,
            row_height=row_height or self._settings.log_row_height,
            viewport_height=viewport_height or self._settings.log_viewport_height,
        )

    def log_since(self, start: int) -> Sequence[LogLine]:
        """Return the log lines appended after the first *start* lines."""
        log = self._state.log
        return log.slice(start, len(log))

    def add_listener(self, listener: StateListener) -> None:
        """Register *listener* to be called after every state change."""
        self._listeners.append(listener)

    def remove_listener(self, listener: StateListener) -> None:
        self._listeners.remove(listener)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def start_scan(self, file: UploadFile) -> asyncio.Task[None]:
        """Accept *file* and start driving it through the pipeline.

        Must be called from within a running event loop.

        Returns:
            The task running the scan.  It completes when the scan reaches a
            resting state and is cancelled by :meth:`reset`.

        Raises:
            ScanInProgressError: If the orchestrator is not ``Idle``.
        """
        state = self._state
        if state.phase is not ScanPhase.IDLE:
            raise ScanInProgressError(
                f"A scan is already {state.phase.value}; reset before starting another"
            )
        state.error = None
        state.file = AttemptedFile(name=file.name, size=file.size)
        state.progress = ScanProgress()
        self._transition(ScanPhase.UPLOADING)

        self._task = asyncio.create_task(self._drive(file, state.generation))
        return self._task

    async def run(self, file: UploadFile) -> ScanSnapshot:
        """Run a complete scan of *file* and return the resting state.

        If :meth:`reset` is called while the scan runs, the returned snapshot
        is the ``Idle`` state.  Cancelling the caller resets the orchestrator.
        """
        task = self.start_scan(file)
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            self.reset()
            raise
        if not task.cancelled() and task.exception() is not None:
            raise task.exception()  # type: ignore[misc]
        return self.snapshot()

    def reset(self) -> None:
        """Tear down the current scan and return to ``Idle``.

        Closes any open subscription, cancels the running scan task and
        discards job, progress, log, outcome and errors in one step.  Calling
        it from a pristine ``Idle`` state is a no-op.
        """
        state = self._state
        if state.is_pristine() and self._task is None and self._subscription is None:
            return

        previous = state.phase
        scan_id = state.job.id if state.job is not None else None

        state.generation += 1
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            subscription.close_nowait()
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()

        state.phase = ScanPhase.IDLE
        state.job = None
        state.progress = ScanProgress()
        state.log.clear()
        state.outcome = None
        state.error = None
        state.file = None

        log_event(logger, "scan_reset", scan_id=scan_id, previous=previous.value)
        self._notify()

    def dismiss_error(self) -> None:
        """Clear the current error notice.

        Dismissing an upload rejection discards the rejected attempt and
        returns to ``Idle``; other notices are cleared in place.
        """
        state = self._state
        if state.error is None:
            return
        if state.phase is ScanPhase.UPLOAD_REJECTED:
            self.reset()
            return
        state.error = None
        self._notify()

    # ------------------------------------------------------------------
    # Scan driver
    # ------------------------------------------------------------------

    async def _drive(self, file: UploadFile, generation: int) -> None:
        stage = ErrorKind.UPLOAD
        with tracer.start_as_current_span("peroxide.scan") as root_span:
            root_span.set_attribute("file.name", file.name)
            root_span.set_attribute("file.size_bytes", file.size)
            try:
                scan_id = await self._upload(file, generation)
                if scan_id is None:
                    return
                root_span.set_attribute("scan.id", scan_id)

                stage = ErrorKind.STREAM
                if not await self._follow_stream(scan_id, generation):
                    return

                stage = ErrorKind.FETCH
                await self._fetch(scan_id, generation)
            except Exception as exc:
                root_span.record_exception(exc)
                root_span.set_status(Status(StatusCode.ERROR, str(exc)))
                if self._is_live(generation):
                    self._abort(stage, exc)
            finally:
                root_span.set_attribute("scan.final_phase", self._state.phase.value)

    async def _upload(self, file: UploadFile, generation: int) -> str | None:
        """Upload *file*; return the scan id, or ``None`` when the scan ends here."""
        with tracer.start_as_current_span("peroxide.upload") as span:
            outcome = await self._transport.upload(
                file, on_progress=lambda f: self._on_upload_progress(f, generation)
            )
            if not self._is_live(generation):
                return None
            if not isinstance(outcome, Accepted):
                span.set_status(Status(StatusCode.ERROR, outcome.reason))
                self._reject_upload(outcome.reason)
                return None
            return outcome.scan_id

    async def _follow_stream(self, scan_id: str, generation: int) -> bool:
        """Apply pushed events until the stream ends; ``True`` if it completed."""
        subscription = self._consumer.subscribe(scan_id)
        self._subscription = subscription
        try:
            self._state.job = ScanJob(id=scan_id)
            self._transition(ScanPhase.AWAITING_EVENTS)
            with tracer.start_as_current_span("peroxide.stream") as span:
                span.set_attribute("scan.id", scan_id)
                async for event in subscription:
                    self._apply_event(event, generation, scan_id)
                span.set_attribute("stream.events", subscription.events_received)
                span.set_attribute("stream.decode_errors", subscription.decode_errors)
                if subscription.disrupted is not None:
                    span.set_status(Status(StatusCode.ERROR, str(subscription.disrupted)))
        finally:
            await subscription.aclose()
            if self._subscription is subscription:
                self._subscription = None

        if not self._is_live(generation, scan_id):
            return False
        if not subscription.completed:
            self._stall(subscription)
            return False
        return True

    async def _fetch(self, scan_id: str, generation: int) -> None:
        with tracer.start_as_current_span("peroxide.fetch") as span:
            span.set_attribute("scan.id", scan_id)
            result = await self._fetcher.fetch_settled(
                scan_id, self._settings.still_scanning_repolls
            )
            if not self._is_live(generation, scan_id):
                return
            if result.is_error:
                span.set_status(Status(StatusCode.ERROR, result.error or "fetch failed"))
            self._apply_outcome(result)

    # ------------------------------------------------------------------
    # Completions (each guarded by a liveness check at the call site)
    # ------------------------------------------------------------------

    def _on_upload_progress(self, fraction: float, generation: int) -> None:
        if not self._is_live(generation) or self._state.phase is not ScanPhase.UPLOADING:
            return
        state = self._state
        state.progress = ScanProgress(
            fraction=state.progress.fraction,
            message=state.progress.message,
            upload_fraction=_clamp(fraction),
        )
        self._notify()

    def _reject_upload(self, reason: str) -> None:
        self._state.error = self._notice(ErrorKind.UPLOAD, reason)
        self._transition(ScanPhase.UPLOAD_REJECTED, reason=reason)

    def _apply_event(self, event: ProgressEvent, generation: int, scan_id: str) -> None:
        if not self._is_live(generation, scan_id):
            return
        state = self._state
        state.progress = ScanProgress(
            fraction=_clamp(event.fraction),
            message=event.message,
            upload_fraction=state.progress.upload_fraction,
        )
        state.log.append_event(event)
        if state.phase is ScanPhase.AWAITING_EVENTS:
            self._transition(ScanPhase.SCANNING)
        else:
            self._notify()

    def _stall(self, subscription: EventSubscription) -> None:
        """Keep the last progress visible after the stream ended early."""
        state = self._state
        if subscription.disrupted is None:
            return
        state.error = self._notice(ErrorKind.STREAM, str(subscription.disrupted))
        log_event(
            logger,
            "scan_stalled",
            level=logging.WARNING,
            scan_id=subscription.scan_id,
            phase=state.phase.value,
            progress=state.progress.fraction,
            reason=str(subscription.disrupted),
        )
        self._notify()

    def _apply_outcome(self, outcome: ScanOutcome) -> None:
        state = self._state
        state.outcome = outcome
        if outcome.kind is OutcomeKind.ERROR_INFO:
            state.error = self._notice(
                ErrorKind.FETCH, outcome.error or "Failed to fetch scan result"
            )
            self._transition(ScanPhase.FETCH_FAILED, error=outcome.error)
        elif outcome.kind is OutcomeKind.STILL_SCANNING:
            log_event(
                logger,
                "scan_result_pending",
                scan_id=state.job.id if state.job else None,
            )
            self._notify()
        else:
            self._transition(ScanPhase.COMPLETED, outcome=outcome.kind.value)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _is_live(self, generation: int, scan_id: str | None = None) -> bool:
        state = self._state
        if state.generation != generation:
            return False
        if scan_id is not None:
            return state.job is not None and state.job.id == scan_id
        return True

    def _transition(self, target: ScanPhase, **fields: Any) -> None:
        state = self._state
        if target not in _TRANSITIONS[state.phase]:
            raise RuntimeError(
                f"Illegal scan transition {state.phase.value} -> {target.value}"
            )
        previous = state.phase
        state.phase = target
        entry = {
            "scan_id": state.job.id if state.job else None,
            "file_name": state.file.name if state.file else None,
            "from": previous.value,
            "to": target.value,
        }
        entry.update(fields)
        log_event(logger, "scan_transition", **entry)
        self._notify()

    def _notice(self, kind: ErrorKind, message: str) -> ErrorNotice:
        file = self._state.file
        return ErrorNotice(
            kind=kind,
            message=message,
            file_name=file.name if file else None,
            file_size=file.size if file else None,
        )

    def _abort(self, stage: ErrorKind, exc: Exception) -> None:
        """Bring the scan to rest after an unexpected failure during *stage*."""
        logger.error("Scan %s step failed unexpectedly", stage.value, exc_info=exc)
        message = f"unexpected {stage.value} error: {exc}"
        state = self._state
        if state.phase is ScanPhase.UPLOADING:
            self._reject_upload(message)
        elif state.phase is ScanPhase.SCANNING and stage is ErrorKind.FETCH:
            self._apply_outcome(ScanOutcome.failure(message))
        else:
            state.error = self._notice(stage, message)
            self._notify()

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:  # noqa: BLE001
                logger.exception("Scan state listener %r failed", listener)
