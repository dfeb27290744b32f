"""Command-line entry point: scan one file and print the outcome.

Usage::

    peroxide-scan sample.exe
    peroxide-scan --host scanner.internal --port 3001 sample.exe

Progress events are printed as they arrive, in the same ``[HH:MM:SS] text``
form the live log uses.  The exit status is 0 for a clean file, 1 when
threats or suspicious indicators were reported, and 2 for any failure
(upload rejected, stream lost, result unavailable).
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections.abc import Sequence
from pathlib import Path

import httpx

from peroxide.config import Settings, get_settings
from peroxide.core.orchestrator import ScanOrchestrator
from peroxide.core.outcome_view import describe_file, severity_chart, status_badge, status_summary
from peroxide.core.scan_state import ScanPhase, ScanSnapshot
from peroxide.logging_config import configure_logging
from peroxide.schemas.scan import OutcomeKind
from peroxide.services.event_stream import EventStreamConsumer
from peroxide.services.result_fetcher import ResultFetcher
from peroxide.services.transport import UploadFile, UploadTransport

logger = logging.getLogger(__name__)

EXIT_CLEAN = 0
EXIT_FLAGGED = 1
EXIT_FAILED = 2

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


async def scan_file(
    file: UploadFile,
    settings: Settings,
    http_client: httpx.AsyncClient | None = None,
    echo=print,
) -> ScanSnapshot:
    """Run one scan of *file* and return the resting state.

    Every new log line is passed to *echo* as it is appended.
    """
    orchestrator = ScanOrchestrator(
        transport=UploadTransport(settings, http_client=http_client),
        consumer=EventStreamConsumer(settings, http_client=http_client),
        fetcher=ResultFetcher(settings, http_client=http_client),
        settings=settings,
    )
    printed = 0

    def on_change(o: ScanOrchestrator) -> None:
        nonlocal printed
        for line in o.log_since(printed):
            echo(line.render())
            printed += 1

    orchestrator.add_listener(on_change)
    return await orchestrator.run(file)


def render_snapshot(snapshot: ScanSnapshot) -> list[str]:
    """Return the report lines for a resting *snapshot*."""
    lines: list[str] = []
    summary = describe_file(snapshot.outcome, snapshot.file)
    if summary is not None:
        lines.append(f"File:   {summary.name}")
        lines.append(f"Size:   {summary.size_label}")
        if summary.sha256:
            lines.append(f"SHA256: {summary.sha256}")

    if snapshot.error is not None:
        lines.append(f"Error:  {snapshot.error.message}")
        return lines

    outcome = snapshot.outcome
    if outcome is None:
        lines.append(f"Status: {snapshot.phase.value} ({snapshot.progress.fraction:.0f}%)")
        return lines

    lines.append(f"Status: {status_badge(outcome)} ({status_summary(outcome)})")
    if outcome.result is not None:
        for label, count in severity_chart(outcome.result.stats):
            lines.append(f"  {label}: {count}")
        for threat in outcome.result.threats:
            lines.append(f"  [{threat.severity}] {threat.type}: {threat.details}")
    return lines


def exit_code(snapshot: ScanSnapshot) -> int:
    if snapshot.phase is not ScanPhase.COMPLETED or snapshot.outcome is None:
        return EXIT_FAILED
    if snapshot.outcome.kind is OutcomeKind.SAFE:
        return EXIT_CLEAN
    return EXIT_FLAGGED


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Scan a PE file with the PEroxide backend")
    parser.add_argument("path", type=Path, help="File to upload and scan")
    parser.add_argument("--host", help="Backend host (default: PEROXIDE_API_HOST)")
    parser.add_argument("--port", type=int, help="Backend port (default: PEROXIDE_API_PORT)")
    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=_LOG_LEVELS,
        help="Logging level (default: PEROXIDE_LOG_LEVEL)",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    settings = get_settings()
    overrides = {}
    if args.host:
        overrides["api_host"] = args.host
    if args.port:
        overrides["api_port"] = args.port
    if overrides:
        settings = settings.model_copy(update=overrides)
    configure_logging(args.log_level)

    try:
        file = UploadFile.from_path(args.path)
    except OSError as exc:
        logger.error("Cannot read %s: %s", args.path, exc)
        return EXIT_FAILED

    snapshot = asyncio.run(scan_file(file, settings))
    for line in render_snapshot(snapshot):
        print(line)
    return exit_code(snapshot)


if __name__ == "__main__":
    sys.exit(main())
