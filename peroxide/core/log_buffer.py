"""Append-only scan log and its windowing adapter.

:class:`LogAggregator` holds the ordered sequence of :class:`LogLine` objects
derived 1:1 from decoded progress events.  Lines are never mutated or
removed individually; the whole sequence is cleared when the scan is reset.

:class:`LogWindow` sits between the aggregator and a renderer.  Given a
scroll offset it computes the bounded range of rows that intersect the
viewport (plus a small overscan) using a fixed row height, so that both the
cost of appending and the cost of rendering are independent of the total log
length.  Scans that emit thousands of lines render the same handful of rows.

Usage::

    from peroxide.core.log_buffer import LogAggregator, LogWindow

    log = LogAggregator()
    log.append_event(event)
    window = LogWindow(log, row_height=32, viewport_height=240)
    for index, line in window.visible_rows(scroll_offset=window.end_offset()):
        print(index, line.render())
"""

from __future__ import annotations

import math
from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from datetime import datetime

from peroxide.schemas.scan import ProgressEvent


@dataclass(frozen=True)
class LogLine:
    """One immutable log entry.

    Attributes:
        timestamp: Client-side capture time of the originating event.
        text: The event's message text.
    """

    timestamp: datetime
    text: str

    def render(self) -> str:
        """Format as ``[HH:MM:SS] text``."""
        return f"[{self.timestamp.strftime('%H:%M:%S')}] {self.text}"


class LogAggregator:
    """Ordered, append-only collection of :class:`LogLine` objects."""

    def __init__(self) -> None:
        self._lines: list[LogLine] = []

    def append(self, line: LogLine) -> None:
        self._lines.append(line)

    def append_event(self, event: ProgressEvent, now: datetime | None = None) -> LogLine:
        """Convert *event* to a :class:`LogLine`, append it and return it.

        Conversion never fails: malformed messages are filtered out by the
        event stream consumer before they reach the aggregator.
        """
        line = LogLine(timestamp=now or datetime.now(), text=event.message)
        self._lines.append(line)
        return line

    def snapshot(self) -> tuple[LogLine, ...]:
        """Return the current lines as an immutable ordered sequence."""
        return tuple(self._lines)

    def slice(self, start: int, stop: int) -> Sequence[LogLine]:
        return self._lines[start:stop]

    def clear(self) -> None:
        self._lines = []

    def __len__(self) -> int:
        return len(self._lines)

    def __getitem__(self, index: int) -> LogLine:
        return self._lines[index]

    def __iter__(self) -> Iterator[LogLine]:
        return iter(self._lines)


class LogWindow:
    """Fixed-row-height virtualization over a :class:`LogAggregator`.

    Args:
        log: The aggregator to window.  Read live, so appends are reflected
            immediately without notifying the window.
        row_height: Height of one row in pixels.  Must be positive.
        viewport_height: Height of the visible area in pixels.  Must be positive.
        overscan: Extra rows materialized above and below the viewport so
            that small scrolls do not show blank rows.
    """

    def __init__(
        self,
        log: LogAggregator,
        *,
        row_height: int = 32,
        viewport_height: int = 240,
        overscan: int = 2,
    ) -> None:
        if row_height <= 0 or viewport_height <= 0:
            raise ValueError("row_height and viewport_height must be positive")
        if overscan < 0:
            raise ValueError("overscan must not be negative")
        self._log = log
        self.row_height = row_height
        self.viewport_height = viewport_height
        self.overscan = overscan

    @property
    def total_height(self) -> int:
        """Height of the full (virtual) list in pixels."""
        return len(self._log) * self.row_height

    def end_offset(self) -> int:
        """Scroll offset that shows the newest rows at the bottom of the viewport."""
        return max(0, self.total_height - self.viewport_height)

    def clamp_offset(self, scroll_offset: int) -> int:
        return min(max(0, scroll_offset), self.end_offset())

    def visible_range(self, scroll_offset: int) -> range:
        """Return the indices of the rows to materialize at *scroll_offset*."""
        count = len(self._log)
        if count == 0:
            return range(0)
        offset = self.clamp_offset(scroll_offset)
        first = offset // self.row_height
        rows_in_view = math.ceil(self.viewport_height / self.row_height) + 1
        start = max(0, first - self.overscan)
        stop = min(count, first + rows_in_view + self.overscan)
        return range(start, stop)

    def visible_rows(self, scroll_offset: int) -> list[tuple[int, LogLine]]:
        """Return ``(index, line)`` pairs for the rows in :meth:`visible_range`."""
        rows = self.visible_range(scroll_offset)
        return list(zip(rows, self._log.slice(rows.start, rows.stop)))

    def row_top(self, index: int) -> int:
        """Pixel offset of the top edge of row *index*."""
        return index * self.row_height
