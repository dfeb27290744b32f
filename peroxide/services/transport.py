"""UploadTransport: single-file multipart upload with progress feedback.

:class:`UploadTransport` posts exactly one file to ``POST /api/upload`` and
reports progress while the request body is written.  It holds no state
across invocations; single-flight enforcement is the orchestrator's job.

Progress contract
-----------------
While bytes are in flight the reported fraction is clamped to at most 99.
100 is reported only once the backend has responded, so the user never sees
"complete" before the server acknowledged receipt.

Outcome contract
----------------
:meth:`UploadTransport.upload` never raises for network or server failures.
It returns :class:`Accepted` carrying the opaque scan id, or
:class:`Rejected` carrying a human-readable reason:

* no response at all → ``"transport failure"``
* non-200 with a JSON ``{"error": ...}`` body → the server's message
* non-200 with any other body → ``"upload failed with status <code>"``
* 200 with a JSON ``{"error": ...}`` body → the server's message
* 200 without a decodable ``scanId`` → ``"invalid response from server"``

Usage::

    from peroxide.services.transport import UploadFile, UploadTransport

    transport = UploadTransport(settings)
    outcome = await transport.upload(UploadFile.from_path("sample.exe"), on_progress=print)
    if isinstance(outcome, Accepted):
        print(outcome.scan_id)
"""

from __future__ import annotations

import io
import logging
import mimetypes
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Union

import httpx
from pydantic import ValidationError

from peroxide.config import Settings, get_settings
from peroxide.core.errors import TransportError
from peroxide.metrics import upload_rejections_total
from peroxide.schemas.scan import UploadErrorBody, UploadResponse

logger = logging.getLogger(__name__)

#: Highest fraction reported before the backend has responded.
_IN_FLIGHT_CEILING = 99.0

#: Multipart form field carrying the file.
_FORM_FIELD = "file"

_TRANSPORT_FAILURE = "transport failure"
_INVALID_RESPONSE = "invalid response from server"

ProgressCallback = Callable[[float], None]


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UploadFile:
    """One file selected for upload.

    Exactly one of *content* and *path* is set.  Use :meth:`from_path` or
    :meth:`from_bytes` rather than the constructor.
    """

    name: str
    size: int
    content: bytes | None = None
    path: Path | None = None
    content_type: str = "application/octet-stream"

    @classmethod
    def from_path(cls, path: str | Path, content_type: str | None = None) -> "UploadFile":
        p = Path(path)
        guessed, _ = mimetypes.guess_type(p.name)
        return cls(
            name=p.name,
            size=p.stat().st_size,
            path=p,
            content_type=content_type or guessed or "application/octet-stream",
        )

    @classmethod
    def from_bytes(
        cls, name: str, data: bytes, content_type: str = "application/octet-stream"
    ) -> "UploadFile":
        return cls(name=name, size=len(data), content=data, content_type=content_type)

    def open(self) -> BinaryIO:
        if self.content is not None:
            return io.BytesIO(self.content)
        if self.path is None:
            raise ValueError(f"UploadFile {self.name!r} has neither content nor path")
        return self.path.open("rb")


@dataclass(frozen=True)
class Accepted:
    """The backend accepted the upload and started a scan."""

    scan_id: str


@dataclass(frozen=True)
class Rejected:
    """The upload failed; *reason* is suitable for display."""

    reason: str
    status_code: int | None = None


UploadOutcome = Union[Accepted, Rejected]


# ---------------------------------------------------------------------------
# Progress-reporting request body
# ---------------------------------------------------------------------------


class _ProgressStream(httpx.AsyncByteStream):
    """Wraps a request body stream and reports the fraction of bytes sent."""

    def __init__(
        self,
        inner: httpx.AsyncByteStream,
        total: int,
        on_progress: ProgressCallback | None,
    ) -> None:
        self._inner = inner
        self._total = total
        self._on_progress = on_progress

    async def __aiter__(self) -> AsyncIterator[bytes]:
        sent = 0
        async for chunk in self._inner:
            yield chunk
            sent += len(chunk)
            if self._on_progress is not None and self._total > 0:
                self._on_progress(min(sent / self._total * 100, _IN_FLIGHT_CEILING))

    async def aclose(self) -> None:
        await self._inner.aclose()


# ---------------------------------------------------------------------------
# UploadTransport
# ---------------------------------------------------------------------------


class UploadTransport:
    """Uploads one file per call to the scanning backend.

    Args:
        settings: Client settings used to build the upload URL and timeout.
            Defaults to :func:`~peroxide.config.get_settings`.
        http_client: Optional shared :class:`httpx.AsyncClient`.  When
            ``None`` a new client is created for each upload.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._http_client = http_client

    async def upload(
        self,
        file: UploadFile,
        on_progress: ProgressCallback | None = None,
    ) -> UploadOutcome:
        """Upload *file* and return the backend's verdict on the request.

        Args:
            file: The single file to upload.
            on_progress: Called with fractions in ``[0, 99]`` while the body
                is written and with ``100`` once the backend has responded.

        Returns:
            :class:`Accepted` or :class:`Rejected`.  Never raises for
            network or server failures.
        """
        url = self._settings.api_url("upload")
        logger.info("Uploading %s (%d bytes) to %s", file.name, file.size, url)
        try:
            response = await self._send(url, file, on_progress)
        except httpx.RequestError as exc:
            logger.warning("Upload of %s failed before a response: %s", file.name, exc)
            upload_rejections_total.labels(reason="network_error").inc()
            return Rejected(_TRANSPORT_FAILURE)
        except OSError as exc:
            logger.warning("Could not read %s for upload: %s", file.name, exc)
            upload_rejections_total.labels(reason="network_error").inc()
            return Rejected(_TRANSPORT_FAILURE)

        if on_progress is not None:
            on_progress(100.0)

        try:
            scan_id = _parse_response(response)
        except TransportError as exc:
            logger.warning(
                "Upload of %s rejected (HTTP %d): %s", file.name, response.status_code, exc
            )
            upload_rejections_total.labels(reason="server_error").inc()
            return Rejected(str(exc), status_code=exc.status_code)

        logger.info("Upload of %s accepted: scan_id=%s", file.name, scan_id)
        return Accepted(scan_id)

    async def _send(
        self,
        url: str,
        file: UploadFile,
        on_progress: ProgressCallback | None,
    ) -> httpx.Response:
        """Execute the multipart POST.

        Raises :class:`httpx.RequestError` on a network-level failure.
        """
        timeout = self._settings.http_timeout_seconds
        with file.open() as fh:
            if self._http_client is not None:
                return await self._post(self._http_client, url, file, fh, on_progress, timeout)
            async with httpx.AsyncClient(timeout=timeout) as client:
                return await self._post(client, url, file, fh, on_progress, timeout)

    @staticmethod
    async def _post(
        client: httpx.AsyncClient,
        url: str,
        file: UploadFile,
        fh: BinaryIO,
        on_progress: ProgressCallback | None,
        timeout: float,
    ) -> httpx.Response:
        request = client.build_request(
            "POST",
            url,
            files={_FORM_FIELD: (file.name, fh, file.content_type)},
            timeout=timeout,
        )
        total = int(request.headers.get("Content-Length") or file.size)
        request.stream = _ProgressStream(request.stream, total, on_progress)
        response = await client.send(request)
        await response.aread()
        return response


def _parse_response(response: httpx.Response) -> str:
    """Return the scan id from an upload *response*.

    Raises:
        TransportError: When the backend refused the upload or replied with
            a body that does not carry a scan id.
    """
    status = response.status_code
    if status != 200:
        try:
            body = UploadErrorBody.model_validate_json(response.content)
        except ValidationError:
            body = None
        if body is None or not body.error.strip():
            raise TransportError(f"upload failed with status {status}", status_code=status)
        raise TransportError(body.error, status_code=status)

    try:
        payload = response.json()
    except ValueError:
        raise TransportError(_INVALID_RESPONSE, status_code=status)

    if isinstance(payload, dict) and payload.get("error"):
        raise TransportError(str(payload["error"]), status_code=status)

    try:
        return UploadResponse.model_validate(payload).scan_id
    except ValidationError:
        raise TransportError(_INVALID_RESPONSE, status_code=status)
