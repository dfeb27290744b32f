"""EventStreamConsumer: server-sent scan progress for one job.

:meth:`EventStreamConsumer.subscribe` opens ``GET /api/scan-status/{scan_id}``
as a Server-Sent Events stream and returns an :class:`EventSubscription`,
a lazy, non-restartable async iterator of
:class:`~peroxide.schemas.scan.ProgressEvent` objects.

Subscription contract
---------------------
* Each ``data:`` frame is decoded as ``{"progress": <number>, "message": <str>}``.
  Frames that fail to decode are dropped with a WARNING and counted in
  ``peroxide_stream_decode_errors_total``; they never end the subscription.
* The subscription closes itself as soon as it has yielded an event with
  ``progress >= 100``; it does not wait for the backend to hang up.
* A transport error, a non-200 status or the backend closing the stream
  before completion also ends iteration.  The cause is recorded on
  :attr:`EventSubscription.disrupted` instead of being raised, so the caller
  can keep the last known progress on screen.
* Events are yielded in transport order with no reordering or de-duplication.
* No read timeout is applied; a stalled scan is recognised by its last
  progress value, not by a timer.

Usage::

    consumer = EventStreamConsumer(settings)
    subscription = consumer.subscribe(scan_id)
    try:
        async for event in subscription:
            print(event.fraction, event.message)
    finally:
        await subscription.aclose()
    if subscription.disrupted is not None:
        print("stream lost:", subscription.disrupted)
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator

import httpx
from pydantic import ValidationError

from peroxide.config import Settings, get_settings
from peroxide.core.errors import StreamDecodeError, StreamDisruption
from peroxide.metrics import stream_decode_errors_total, stream_disruptions_total
from peroxide.schemas.scan import ProgressEvent

logger = logging.getLogger(__name__)

_SSE_HEADERS = {"Accept": "text/event-stream", "Cache-Control": "no-cache"}


# ---------------------------------------------------------------------------
# SSE framing
# ---------------------------------------------------------------------------


class _SSEDecoder:
    """Incremental decoder for the ``text/event-stream`` line format.

    Only the ``data`` field is significant for the scan-status channel;
    ``event``, ``id`` and ``retry`` fields and ``:`` comment lines are ignored.
    """

    def __init__(self) -> None:
        self._data: list[str] = []

    def feed(self, line: str) -> str | None:
        """Consume one line; return the event payload when *line* ends an event."""
        if not line:
            if not self._data:
                return None
            payload = "\n".join(self._data)
            self._data = []
            return payload
        if line.startswith(":"):
            return None
        name, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]
        if name == "data":
            self._data.append(value)
        return None


def decode_event(payload: str) -> ProgressEvent:
    """Decode one SSE ``data`` payload.

    Raises:
        StreamDecodeError: If *payload* is not a valid progress message.
    """
    try:
        return ProgressEvent.model_validate_json(payload)
    except ValidationError as exc:
        raise StreamDecodeError(f"Malformed scan-status message: {exc}", raw=payload) from exc


# ---------------------------------------------------------------------------
# EventSubscription
# ---------------------------------------------------------------------------


class EventSubscription:
    """One open scan-status stream.

    Attributes:
        scan_id: The job this subscription belongs to.
        completed: ``True`` once an event with ``fraction >= 100`` was yielded.
        disrupted: The :class:`~peroxide.core.errors.StreamDisruption` that
            ended the stream early, or ``None``.
        events_received: Number of events successfully decoded and yielded.
        decode_errors: Number of malformed messages dropped.
    """

    def __init__(
        self,
        scan_id: str,
        url: str,
        *,
        http_client: httpx.AsyncClient | None = None,
        connect_timeout: float = 30.0,
    ) -> None:
        self.scan_id = scan_id
        self.url = url
        self.completed = False
        self.disrupted: StreamDisruption | None = None
        self.events_received = 0
        self.decode_errors = 0
        self._http_client = http_client
        self._owned_client: httpx.AsyncClient | None = None
        self._timeout = httpx.Timeout(connect_timeout, read=None)
        self._response: httpx.Response | None = None
        self._lines: AsyncIterator[str] | None = None
        self._decoder = _SSEDecoder()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> "EventSubscription":
        return self

    async def __anext__(self) -> ProgressEvent:
        while True:
            if self._closed:
                raise StopAsyncIteration

            try:
                if self._lines is None:
                    await self._open()
                line = await self._lines.__anext__()  # type: ignore[union-attr]
            except StopAsyncIteration:
                await self._disrupt("stream ended before the scan completed")
                raise
            except StreamDisruption as exc:
                await self._disrupt(str(exc))
                raise StopAsyncIteration from exc
            except (httpx.HTTPError, httpx.StreamError) as exc:
                await self._disrupt(f"stream error: {exc}")
                raise StopAsyncIteration from exc

            # Closed by the owner while awaiting the line.
            if self._closed:
                raise StopAsyncIteration

            payload = self._decoder.feed(line)
            if payload is None:
                continue

            try:
                event = decode_event(payload)
            except StreamDecodeError as exc:
                self.decode_errors += 1
                stream_decode_errors_total.inc()
                logger.warning(
                    "Dropping malformed scan-status message for scan_id=%s: %r",
                    self.scan_id,
                    exc.raw,
                )
                continue

            self.events_received += 1
            logger.debug(
                "Scan-status event for scan_id=%s: %.1f%% %s",
                self.scan_id,
                event.fraction,
                event.message,
            )
            if event.is_complete:
                self.completed = True
                await self.aclose()
            return event

    def close_nowait(self) -> None:
        """Mark the subscription closed without awaiting network teardown.

        No further events are yielded after this call.  The owner must still
        await :meth:`aclose` to release the connection.
        """
        self._closed = True

    async def aclose(self) -> None:
        """Close the stream and release the connection.  Idempotent."""
        self._closed = True
        response, self._response = self._response, None
        self._lines = None
        if response is not None:
            await response.aclose()
        client, self._owned_client = self._owned_client, None
        if client is not None:
            await client.aclose()

    async def _open(self) -> None:
        client = self._http_client
        if client is None:
            client = self._owned_client = httpx.AsyncClient(timeout=self._timeout)
        request = client.build_request(
            "GET", self.url, headers=_SSE_HEADERS, timeout=self._timeout
        )
        logger.info("Opening scan-status stream for scan_id=%s", self.scan_id)
        self._response = await client.send(request, stream=True)
        if self._response.status_code != 200:
            raise StreamDisruption(
                f"scan-status stream refused with status {self._response.status_code}"
            )
        self._lines = self._response.aiter_lines()

    async def _disrupt(self, reason: str) -> None:
        if not self.completed and not self._closed:
            self.disrupted = StreamDisruption(reason)
            stream_disruptions_total.inc()
            logger.warning("Scan-status stream for scan_id=%s lost: %s", self.scan_id, reason)
        await self.aclose()


# ---------------------------------------------------------------------------
# EventStreamConsumer
# ---------------------------------------------------------------------------


class EventStreamConsumer:
    """Factory for :class:`EventSubscription` objects.

    Args:
        settings: Client settings used to build the stream URL.
        http_client: Optional shared :class:`httpx.AsyncClient`.  When
            ``None`` each subscription creates and owns its own client.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._http_client = http_client

    def subscribe(self, scan_id: str) -> EventSubscription:
        """Return a lazy subscription; the connection opens on first iteration."""
        return EventSubscription(
            scan_id,
            self._settings.api_url("scan-status", scan_id),
            http_client=self._http_client,
            connect_timeout=self._settings.http_timeout_seconds,
        )
