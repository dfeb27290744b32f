"""Presentation helpers for scan outcomes.

Pure functions that turn a :class:`~peroxide.schemas.scan.ScanOutcome` into
the labels and figures a renderer shows: the status badge, the one-line
summary, the severity chart series and the file description.  They hold no
state and never touch the network.
"""

from __future__ import annotations

from dataclasses import dataclass

from peroxide.core.scan_state import AttemptedFile
from peroxide.schemas.scan import OutcomeKind, ScanOutcome, ScanStats

_BADGES = {
    OutcomeKind.SAFE: "✓ SAFE",
    OutcomeKind.UNSAFE: "⚠ THREATS DETECTED",
    OutcomeKind.SUSPICIOUS: "⚠ SUSPICIOUS",
    OutcomeKind.STILL_SCANNING: "SCANNING",
}

_SUMMARIES = {
    OutcomeKind.SAFE: "Clean - No threats detected",
    OutcomeKind.UNSAFE: "Threats detected",
    OutcomeKind.SUSPICIOUS: "Suspicious",
    OutcomeKind.STILL_SCANNING: "Scanning in progress",
}


@dataclass(frozen=True)
class FileSummary:
    name: str
    size: int
    sha256: str | None = None

    @property
    def size_label(self) -> str:
        return f"{format_size(self.size)} ({self.size:,} bytes)"


def status_badge(outcome: ScanOutcome) -> str:
    """Return the short badge text for *outcome*."""
    if outcome.kind is OutcomeKind.ERROR_INFO:
        return "ERROR"
    return _BADGES[outcome.kind]


def status_summary(outcome: ScanOutcome) -> str:
    """Return a one-line human description of *outcome*."""
    if outcome.kind is OutcomeKind.ERROR_INFO:
        return outcome.error or "Failed to fetch scan result"
    return _SUMMARIES[outcome.kind]


def severity_chart(stats: ScanStats) -> list[tuple[str, int]]:
    """Return ``(label, count)`` pairs for the severity chart, zeros dropped."""
    series = [
        ("Malicious", stats.malicious),
        ("Suspicious", stats.suspicious),
        ("Neutral", stats.neutral),
    ]
    return [(label, count) for label, count in series if count > 0]


def describe_file(outcome: ScanOutcome | None, fallback: AttemptedFile | None) -> FileSummary | None:
    """Describe the scanned file.

    The backend's ``file_info`` wins over the locally attempted file, whose
    name and size are used when the backend has not reported any.
    """
    info = outcome.result.file_info if outcome and outcome.result else None
    if info is not None:
        return FileSummary(name=info.filename, size=info.size, sha256=info.sha256 or None)
    if fallback is not None:
        return FileSummary(name=fallback.name, size=fallback.size)
    return None


def format_size(size: int) -> str:
    """Format *size* bytes as megabytes with two decimals."""
    return f"{size / (1024 * 1024):.2f} MB"
