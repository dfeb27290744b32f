"""Unit tests for peroxide/core/orchestrator.py (ScanOrchestrator).

The three collaborators are replaced by small in-process fakes so the state
machine can be driven deterministically.  The final test wires the real
transport, stream consumer and result fetcher to one ``httpx.MockTransport``.

Coverage targets
----------------
* Happy path: Idle -> Uploading -> AwaitingEvents -> Scanning -> Completed.
* Upload rejection keeps the attempted file's metadata and never subscribes.
* Fetch exhaustion ends in FetchFailed after exactly three attempts.
* A still-running backend leaves the orchestrator in Scanning.
* A lost stream keeps the last progress and records a stream notice.
* reset() is idempotent, cancels in-flight work and ignores late completions.
* Only one scan may be in flight at a time.
"""

from __future__ import annotations

import asyncio
import json
import logging
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from peroxide.config import Settings
from peroxide.core.errors import ScanInProgressError, StreamDisruption
from peroxide.core.orchestrator import ScanOrchestrator
from peroxide.core.scan_state import ErrorKind, ScanPhase
from peroxide.schemas.scan import OutcomeKind, ProgressEvent, ScanOutcome, ScanResult
from peroxide.services.event_stream import EventStreamConsumer
from peroxide.services.result_fetcher import ResultFetcher
from peroxide.services.transport import Accepted, Rejected, UploadFile, UploadTransport

_SAFE = {
    "status": "safe",
    "threats": [],
    "stats": {"threatsFound": 0, "malicious": 0, "suspicious": 0, "neutral": 0},
    "logs": [],
    "file_info": {"filename": "sample.exe", "size": 6, "sha256": "ab" * 32},
}


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeTransport:
    def __init__(self, outcome, progress: tuple[float, ...] = (40.0,)) -> None:
        self.outcome = outcome
        self.progress = progress
        self.uploads: list[UploadFile] = []

    async def upload(self, file, on_progress=None):
        self.uploads.append(file)
        if on_progress is not None:
            for fraction in self.progress:
                on_progress(fraction)
            on_progress(100.0)
        return self.outcome


class FakeSubscription:
    """Replays *events*, then blocks on *gate*, raises *failure* or ends with *disruption*."""

    def __init__(
        self,
        scan_id: str,
        events: list[ProgressEvent],
        disruption: str | None = None,
        gate: asyncio.Event | None = None,
        failure: Exception | None = None,
    ) -> None:
        self.scan_id = scan_id
        self._events = list(events)
        self._disruption = disruption
        self._gate = gate
        self._failure = failure
        self.completed = False
        self.disrupted: StreamDisruption | None = None
        self.events_received = 0
        self.decode_errors = 0
        self.closed = False
        self.aclose_calls = 0

    def __aiter__(self) -> "FakeSubscription":
        return self

    async def __anext__(self) -> ProgressEvent:
        if self.closed:
            raise StopAsyncIteration
        if not self._events:
            if self._gate is not None:
                await self._gate.wait()
            if self._failure is not None:
                raise self._failure
            if self._disruption is not None:
                self.disrupted = StreamDisruption(self._disruption)
            raise StopAsyncIteration
        event = self._events.pop(0)
        self.events_received += 1
        if event.is_complete:
            self.completed = True
            self.closed = True
        return event

    def close_nowait(self) -> None:
        self.closed = True

    async def aclose(self) -> None:
        self.closed = True
        self.aclose_calls += 1


class FakeConsumer:
    def __init__(self, **subscription_kwargs) -> None:
        self._kwargs = subscription_kwargs
        self.subscriptions: list[FakeSubscription] = []

    def subscribe(self, scan_id: str) -> FakeSubscription:
        subscription = FakeSubscription(scan_id, **self._kwargs)
        self.subscriptions.append(subscription)
        return subscription


class FakeFetcher:
    def __init__(self, outcome: ScanOutcome) -> None:
        self.outcome = outcome
        self.calls: list[tuple[str, int]] = []

    async def fetch_settled(self, scan_id: str, repolls: int) -> ScanOutcome:
        self.calls.append((scan_id, repolls))
        return self.outcome


def _events(*pairs: tuple[float, str]) -> list[ProgressEvent]:
    return [ProgressEvent(progress=fraction, message=message) for fraction, message in pairs]


_HAPPY_EVENTS = ((10, "starting"), (55, "scanning"), (100, "done"))


def _safe_outcome() -> ScanOutcome:
    return ScanOutcome.from_result(ScanResult.model_validate(_SAFE))


def _orchestrator(
    settings: Settings,
    *,
    transport=None,
    consumer=None,
    fetcher=None,
) -> ScanOrchestrator:
    return ScanOrchestrator(
        transport=transport or FakeTransport(Accepted("scan-1")),
        consumer=consumer or FakeConsumer(events=_events(*_HAPPY_EVENTS)),
        fetcher=fetcher or FakeFetcher(_safe_outcome()),
        settings=settings,
    )


def _sample() -> UploadFile:
    return UploadFile.from_bytes("sample.exe", b"MZ\x90\x00\x03\x00")


async def _wait_for_phase(orchestrator: ScanOrchestrator, phase: ScanPhase) -> None:
    for _ in range(200):
        if orchestrator.phase is phase:
            return
        await asyncio.sleep(0)
    raise AssertionError(f"orchestrator never reached {phase}; stuck in {orchestrator.phase}")


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


class TestCompletedScan:
    @pytest.mark.asyncio
    async def test_safe_scan_reaches_completed(self, settings: Settings) -> None:
        orchestrator = _orchestrator(settings)
        phases: list[ScanPhase] = []
        orchestrator.add_listener(lambda o: phases.append(o.phase))

        final = await orchestrator.run(_sample())

        assert final.phase is ScanPhase.COMPLETED
        assert final.scan_id == "scan-1"
        assert final.progress.fraction == 100
        assert final.progress.message == "done"
        assert [line.text for line in final.log] == ["starting", "scanning", "done"]
        assert final.outcome is not None
        assert final.outcome.kind is OutcomeKind.SAFE
        assert final.error is None

        distinct = [p for i, p in enumerate(phases) if i == 0 or phases[i - 1] is not p]
        assert distinct == [
            ScanPhase.UPLOADING,
            ScanPhase.AWAITING_EVENTS,
            ScanPhase.SCANNING,
            ScanPhase.COMPLETED,
        ]

    @pytest.mark.asyncio
    async def test_fetch_happens_once_with_configured_repolls(self) -> None:
        settings = Settings(still_scanning_repolls=2, _env_file=None)
        fetcher = FakeFetcher(_safe_outcome())
        orchestrator = _orchestrator(settings, fetcher=fetcher)

        await orchestrator.run(_sample())

        assert fetcher.calls == [("scan-1", 2)]

    @pytest.mark.asyncio
    async def test_upload_progress_is_reported_while_uploading(self, settings: Settings) -> None:
        transport = FakeTransport(Accepted("scan-1"), progress=(25.0, 80.0))
        orchestrator = _orchestrator(settings, transport=transport)
        seen: list[float] = []

        def listener(o: ScanOrchestrator) -> None:
            if o.phase is ScanPhase.UPLOADING:
                seen.append(o.snapshot().progress.upload_fraction)

        orchestrator.add_listener(listener)
        await orchestrator.run(_sample())

        assert seen == [0.0, 25.0, 80.0, 100.0]

    @pytest.mark.asyncio
    async def test_regressing_progress_shows_latest_value(self, settings: Settings) -> None:
        consumer = FakeConsumer(events=_events((50, "a"), (30, "b"), (100, "c")))
        orchestrator = _orchestrator(settings, consumer=consumer)
        fractions: list[float] = []

        def listener(o: ScanOrchestrator) -> None:
            snap = o.snapshot()
            if snap.phase is ScanPhase.SCANNING and (
                not fractions or fractions[-1] != snap.progress.fraction
            ):
                fractions.append(snap.progress.fraction)

        orchestrator.add_listener(listener)
        final = await orchestrator.run(_sample())

        assert fractions == [50, 30, 100]
        assert len(final.log) == 3

    @pytest.mark.asyncio
    async def test_out_of_range_progress_is_clamped(self, settings: Settings) -> None:
        consumer = FakeConsumer(events=_events((-5, "under"), (140, "over")))
        orchestrator = _orchestrator(settings, consumer=consumer)

        final = await orchestrator.run(_sample())

        assert final.progress.fraction == 100
        assert len(final.log) == 2

    @pytest.mark.asyncio
    async def test_log_window_covers_live_log(self, settings: Settings) -> None:
        orchestrator = _orchestrator(settings)
        await orchestrator.run(_sample())

        window = orchestrator.log_window()

        assert window.total_height == 3 * settings.log_row_height
        assert window.visible_range(0) == range(0, 3)

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_the_scan(self, settings: Settings) -> None:
        orchestrator = _orchestrator(settings)

        def broken(o: ScanOrchestrator) -> None:
            raise RuntimeError("renderer crashed")

        orchestrator.add_listener(broken)
        final = await orchestrator.run(_sample())

        assert final.phase is ScanPhase.COMPLETED


# ---------------------------------------------------------------------------
# Failure paths
# ---------------------------------------------------------------------------


class TestUploadRejected:
    @pytest.mark.asyncio
    async def test_rejection_keeps_file_metadata(self, settings: Settings) -> None:
        consumer = FakeConsumer(events=[])
        orchestrator = _orchestrator(
            settings,
            transport=FakeTransport(Rejected("quota exceeded", status_code=429)),
            consumer=consumer,
        )

        final = await orchestrator.run(_sample())

        assert final.phase is ScanPhase.UPLOAD_REJECTED
        assert final.job is None
        assert final.error is not None
        assert final.error.kind is ErrorKind.UPLOAD
        assert final.error.message == "quota exceeded"
        assert final.error.file_name == "sample.exe"
        assert final.error.file_size == 6
        assert consumer.subscriptions == []

    @pytest.mark.asyncio
    async def test_dismissing_rejection_returns_to_idle(self, settings: Settings) -> None:
        orchestrator = _orchestrator(
            settings, transport=FakeTransport(Rejected("transport failure"))
        )
        await orchestrator.run(_sample())

        orchestrator.dismiss_error()

        assert orchestrator.phase is ScanPhase.IDLE
        assert orchestrator.snapshot().file is None


class TestFetchFailed:
    @pytest.mark.asyncio
    async def test_three_failed_fetches_end_in_fetch_failed(self, settings: Settings) -> None:
        calls: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(500)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            orchestrator = _orchestrator(
                settings, fetcher=ResultFetcher(settings, http_client=client)
            )
            with patch(
                "peroxide.services.result_fetcher.asyncio.sleep", new_callable=AsyncMock
            ):
                final = await orchestrator.run(_sample())

        assert len(calls) == 3
        assert final.phase is ScanPhase.FETCH_FAILED
        assert final.outcome is not None
        assert final.outcome.kind is OutcomeKind.ERROR_INFO
        assert final.error is not None
        assert final.error.kind is ErrorKind.FETCH
        assert "after 3 attempts" in final.error.message

    @pytest.mark.asyncio
    async def test_dismissing_fetch_error_keeps_phase(self, settings: Settings) -> None:
        orchestrator = _orchestrator(
            settings, fetcher=FakeFetcher(ScanOutcome.failure("backend down"))
        )
        await orchestrator.run(_sample())

        orchestrator.dismiss_error()

        snap = orchestrator.snapshot()
        assert snap.phase is ScanPhase.FETCH_FAILED
        assert snap.error is None
        assert snap.outcome is not None and snap.outcome.is_error


class TestIncompleteScans:
    @pytest.mark.asyncio
    async def test_still_scanning_result_stays_in_scanning(self, settings: Settings) -> None:
        pending = ScanOutcome.from_result(ScanResult.model_validate({"status": "scanning"}))
        orchestrator = _orchestrator(settings, fetcher=FakeFetcher(pending))

        final = await orchestrator.run(_sample())

        assert final.phase is ScanPhase.SCANNING
        assert final.outcome is not None
        assert final.outcome.kind is OutcomeKind.STILL_SCANNING
        assert final.error is None

    @pytest.mark.asyncio
    async def test_lost_stream_keeps_last_progress(self, settings: Settings) -> None:
        consumer = FakeConsumer(
            events=_events((10, "starting"), (42, "imports")),
            disruption="stream ended before the scan completed",
        )
        fetcher = FakeFetcher(_safe_outcome())
        orchestrator = _orchestrator(settings, consumer=consumer, fetcher=fetcher)

        final = await orchestrator.run(_sample())

        assert final.phase is ScanPhase.SCANNING
        assert final.progress.fraction == 42
        assert final.error is not None
        assert final.error.kind is ErrorKind.STREAM
        assert fetcher.calls == []

    @pytest.mark.asyncio
    async def test_stream_lost_before_first_event(self, settings: Settings) -> None:
        consumer = FakeConsumer(events=[], disruption="stream refused with status 404")
        orchestrator = _orchestrator(settings, consumer=consumer)

        final = await orchestrator.run(_sample())

        assert final.phase is ScanPhase.AWAITING_EVENTS
        assert final.error is not None
        assert final.error.kind is ErrorKind.STREAM
        assert consumer.subscriptions[0].aclose_calls >= 1


# ---------------------------------------------------------------------------
# Single flight and reset
# ---------------------------------------------------------------------------


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_second_start_is_refused(self, settings: Settings) -> None:
        gate = asyncio.Event()
        consumer = FakeConsumer(events=_events((10, "starting")), gate=gate)
        orchestrator = _orchestrator(settings, consumer=consumer)

        orchestrator.start_scan(_sample())
        with pytest.raises(ScanInProgressError):
            orchestrator.start_scan(_sample())

        orchestrator.reset()

    @pytest.mark.asyncio
    async def test_start_refused_from_resting_state(self, settings: Settings) -> None:
        orchestrator = _orchestrator(settings)
        await orchestrator.run(_sample())

        with pytest.raises(ScanInProgressError):
            orchestrator.start_scan(_sample())

    def test_illegal_transition_raises(self, settings: Settings) -> None:
        orchestrator = _orchestrator(settings)

        with pytest.raises(RuntimeError, match="idle -> completed"):
            orchestrator._transition(ScanPhase.COMPLETED)


class TestReset:
    def test_reset_from_idle_is_a_noop(self, settings: Settings) -> None:
        orchestrator = _orchestrator(settings)
        notified: list[ScanPhase] = []
        orchestrator.add_listener(lambda o: notified.append(o.phase))

        orchestrator.reset()

        assert notified == []
        assert orchestrator.phase is ScanPhase.IDLE

    @pytest.mark.asyncio
    async def test_reset_is_idempotent(self, settings: Settings) -> None:
        orchestrator = _orchestrator(settings)
        await orchestrator.run(_sample())
        notified: list[ScanPhase] = []
        orchestrator.add_listener(lambda o: notified.append(o.phase))

        orchestrator.reset()
        first = orchestrator.snapshot()
        orchestrator.reset()

        assert first == orchestrator.snapshot()
        assert first.phase is ScanPhase.IDLE
        assert first.job is None
        assert first.log == ()
        assert first.outcome is None
        assert first.file is None
        assert notified == [ScanPhase.IDLE]

    @pytest.mark.asyncio
    async def test_reset_mid_stream_tears_down_and_ignores_late_events(
        self, settings: Settings
    ) -> None:
        gate = asyncio.Event()
        consumer = FakeConsumer(events=_events((10, "starting")), gate=gate)
        fetcher = FakeFetcher(_safe_outcome())
        orchestrator = _orchestrator(settings, consumer=consumer, fetcher=fetcher)

        task = orchestrator.start_scan(_sample())
        await _wait_for_phase(orchestrator, ScanPhase.SCANNING)
        stale_generation = orchestrator._state.generation

        orchestrator.reset()
        await asyncio.gather(task, return_exceptions=True)

        subscription = consumer.subscriptions[0]
        assert task.cancelled()
        assert subscription.closed
        assert subscription.aclose_calls >= 1
        assert fetcher.calls == []

        # A completion captured before the reset must not touch the new state.
        orchestrator._apply_event(
            ProgressEvent(progress=80, message="late"), stale_generation, "scan-1"
        )
        snap = orchestrator.snapshot()
        assert snap.phase is ScanPhase.IDLE
        assert snap.log == ()
        assert snap.progress.fraction == 0

    @pytest.mark.asyncio
    async def test_new_scan_after_reset(self, settings: Settings) -> None:
        orchestrator = _orchestrator(
            settings, transport=FakeTransport(Rejected("quota exceeded"))
        )
        await orchestrator.run(_sample())
        orchestrator.reset()

        orchestrator._transport = FakeTransport(Accepted("scan-2"))
        final = await orchestrator.run(_sample())

        assert final.phase is ScanPhase.COMPLETED
        assert final.scan_id == "scan-2"
        assert final.error is None

    @pytest.mark.asyncio
    async def test_cancelling_run_resets(self, settings: Settings) -> None:
        gate = asyncio.Event()
        consumer = FakeConsumer(events=_events((10, "starting")), gate=gate)
        orchestrator = _orchestrator(settings, consumer=consumer)

        runner = asyncio.create_task(orchestrator.run(_sample()))
        await _wait_for_phase(orchestrator, ScanPhase.SCANNING)
        runner.cancel()
        with pytest.raises(asyncio.CancelledError):
            await runner

        assert orchestrator.phase is ScanPhase.IDLE
        assert orchestrator.snapshot().job is None


# ---------------------------------------------------------------------------
# End to end over HTTP
# ---------------------------------------------------------------------------


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_real_components_over_mock_transport(self, settings: Settings) -> None:
        frames = "".join(
            f"data: {json.dumps({'progress': p, 'message': m})}\n\n" for p, m in _HAPPY_EVENTS
        )
        unsafe = dict(
            _SAFE,
            status="unsafe",
            stats={"threatsFound": 1, "malicious": 1, "suspicious": 0, "neutral": 0},
            threats=[
                {
                    "type": "packer",
                    "details": "UPX section names",
                    "severity": "malicious",
                    "threatId": "t-1",
                }
            ],
        )

        def handler(request: httpx.Request) -> httpx.Response:
            path = request.url.path
            if request.method == "POST" and path == "/api/upload":
                assert b"sample.exe" in request.content
                return httpx.Response(200, json={"scanId": "abc"})
            if path == "/api/scan-status/abc":
                return httpx.Response(
                    200,
                    content=frames.encode(),
                    headers={"Content-Type": "text/event-stream"},
                )
            if path == "/api/scan-result/abc":
                return httpx.Response(200, json=unsafe)
            return httpx.Response(404)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            orchestrator = ScanOrchestrator(
                transport=UploadTransport(settings, http_client=client),
                consumer=EventStreamConsumer(settings, http_client=client),
                fetcher=ResultFetcher(settings, http_client=client),
                settings=settings,
            )
            final = await orchestrator.run(_sample())

        assert final.phase is ScanPhase.COMPLETED
        assert final.scan_id == "abc"
        assert final.progress.upload_fraction == 100
        assert [line.text for line in final.log] == ["starting", "scanning", "done"]
        assert final.outcome is not None
        assert final.outcome.kind is OutcomeKind.UNSAFE
        assert final.outcome.result.threats[0].threat_id == "t-1"


# ---------------------------------------------------------------------------
# Listeners and transition log
# ---------------------------------------------------------------------------


class TestListeners:
    @pytest.mark.asyncio
    async def test_removed_listener_is_not_called(self, settings: Settings) -> None:
        orchestrator = _orchestrator(settings)
        kept: list[ScanPhase] = []
        dropped: list[ScanPhase] = []

        def dropped_listener(o: ScanOrchestrator) -> None:
            dropped.append(o.phase)

        orchestrator.add_listener(lambda o: kept.append(o.phase))
        orchestrator.add_listener(dropped_listener)
        orchestrator.remove_listener(dropped_listener)

        await orchestrator.run(_sample())

        assert dropped == []
        assert kept[-1] is ScanPhase.COMPLETED

    def test_removing_unknown_listener_raises(self, settings: Settings) -> None:
        with pytest.raises(ValueError):
            _orchestrator(settings).remove_listener(lambda o: None)

    @pytest.mark.asyncio
    async def test_log_since_returns_only_new_lines(self, settings: Settings) -> None:
        orchestrator = _orchestrator(settings)
        await orchestrator.run(_sample())

        assert [line.text for line in orchestrator.log_since(1)] == ["scanning", "done"]
        assert list(orchestrator.log_since(3)) == []

    @pytest.mark.asyncio
    async def test_transitions_are_logged_as_json(self, settings: Settings, caplog) -> None:
        orchestrator = _orchestrator(settings)

        with caplog.at_level(logging.INFO, logger="peroxide.core.orchestrator"):
            await orchestrator.run(_sample())

        entries = [
            json.loads(record.getMessage())
            for record in caplog.records
            if record.name == "peroxide.core.orchestrator"
            and record.getMessage().startswith("{")
        ]
        transitions = [e for e in entries if e["event"] == "scan_transition"]
        assert [(e["from"], e["to"]) for e in transitions] == [
            ("idle", "uploading"),
            ("uploading", "awaiting_events"),
            ("awaiting_events", "scanning"),
            ("scanning", "completed"),
        ]
        assert transitions[0]["scan_id"] is None
        assert all(e["scan_id"] == "scan-1" for e in transitions[1:])
        assert all(e["file_name"] == "sample.exe" for e in transitions)
        assert transitions[-1]["outcome"] == "safe"


# ---------------------------------------------------------------------------
# Unexpected collaborator failures
# ---------------------------------------------------------------------------


class TestUnexpectedFailures:
    @pytest.mark.asyncio
    async def test_transport_exception_rejects_upload(self, settings: Settings) -> None:
        transport = FakeTransport(Accepted("scan-1"))
        transport.upload = AsyncMock(side_effect=RuntimeError("disk on fire"))
        orchestrator = _orchestrator(settings, transport=transport)

        task = orchestrator.start_scan(_sample())
        await task

        assert task.exception() is None
        snap = orchestrator.snapshot()
        assert snap.phase is ScanPhase.UPLOAD_REJECTED
        assert snap.error is not None
        assert snap.error.kind is ErrorKind.UPLOAD
        assert "disk on fire" in snap.error.message
        assert snap.error.file_name == "sample.exe"

    @pytest.mark.asyncio
    async def test_subscribe_exception_rejects_upload(self, settings: Settings) -> None:
        consumer = FakeConsumer(events=[])
        consumer.subscribe = MagicMock(side_effect=RuntimeError("bad url"))
        orchestrator = _orchestrator(settings, consumer=consumer)

        final = await orchestrator.run(_sample())

        assert final.phase is ScanPhase.UPLOAD_REJECTED
        assert final.job is None
        assert final.error is not None
        assert final.error.message == "unexpected stream error: bad url"

    @pytest.mark.asyncio
    async def test_stream_exception_closes_subscription(self, settings: Settings) -> None:
        consumer = FakeConsumer(
            events=_events((10, "starting")), failure=RuntimeError("decoder bug")
        )
        fetcher = FakeFetcher(_safe_outcome())
        orchestrator = _orchestrator(settings, consumer=consumer, fetcher=fetcher)

        final = await orchestrator.run(_sample())

        subscription = consumer.subscriptions[0]
        assert subscription.aclose_calls >= 1
        assert final.phase is ScanPhase.SCANNING
        assert final.progress.fraction == 10
        assert final.error is not None
        assert final.error.kind is ErrorKind.STREAM
        assert "decoder bug" in final.error.message
        assert fetcher.calls == []

    @pytest.mark.asyncio
    async def test_fetch_exception_ends_in_fetch_failed(self, settings: Settings) -> None:
        fetcher = FakeFetcher(_safe_outcome())
        fetcher.fetch_settled = AsyncMock(side_effect=KeyError("status"))
        orchestrator = _orchestrator(settings, fetcher=fetcher)

        final = await orchestrator.run(_sample())

        assert final.phase is ScanPhase.FETCH_FAILED
        assert final.outcome is not None and final.outcome.is_error
        assert final.error is not None
        assert final.error.kind is ErrorKind.FETCH

    @pytest.mark.asyncio
    async def test_recovers_through_reset(self, settings: Settings) -> None:
        transport = FakeTransport(Accepted("scan-1"))
        transport.upload = AsyncMock(side_effect=RuntimeError("disk on fire"))
        orchestrator = _orchestrator(settings, transport=transport)
        await orchestrator.run(_sample())

        orchestrator.reset()
        orchestrator._transport = FakeTransport(Accepted("scan-2"))
        final = await orchestrator.run(_sample())

        assert final.phase is ScanPhase.COMPLETED
        assert final.scan_id == "scan-2"
