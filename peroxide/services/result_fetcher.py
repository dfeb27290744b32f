"""ResultFetcher: pull-based retrieval of a completed scan's result.

:meth:`ResultFetcher.fetch` requests ``GET /api/scan-result/{scan_id}`` and
decodes the body into a :class:`~peroxide.schemas.scan.ScanOutcome`.  It is
only invoked once the scan-status stream has reported completion.

Retry policy
------------
A network error, a non-2xx response or an undecodable body counts as a
failed attempt.  Up to ``max_attempts`` attempts are made in total (3 by
default), separated by an exponential back-off::

    delay = base_delay * 2 ** attempt

Each failed attempt increments ``peroxide_result_fetch_errors_total``.  Once
the budget is exhausted the failure is returned as an ``ERROR_INFO``
outcome; it is never raised to the caller.

The fetcher performs no mutation, so re-fetching the same scan id is safe.
A ``scanning`` status is returned as-is: the caller decides whether to keep
polling (see :meth:`ResultFetcher.fetch_settled`).
"""

from __future__ import annotations

import asyncio
import logging

import httpx
from pydantic import ValidationError

from peroxide.config import Settings, get_settings
from peroxide.core.errors import FetchError
from peroxide.metrics import result_fetch_errors_total
from peroxide.schemas.scan import OutcomeKind, ScanOutcome, ScanResult

logger = logging.getLogger(__name__)


class ResultFetcher:
    """Retrieves scan results with a bounded retry loop.

    Args:
        settings: Client settings (URL, timeout, retry budget and delay).
        http_client: Optional shared :class:`httpx.AsyncClient`.  When
            ``None`` a new client is created for each attempt.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._http_client = http_client

    @property
    def max_attempts(self) -> int:
        return self._settings.fetch_max_attempts

    async def fetch(self, scan_id: str) -> ScanOutcome:
        """Return the outcome for *scan_id*, retrying transient failures.

        Returns:
            A :class:`ScanOutcome`.  Its kind is ``ERROR_INFO`` when every
            attempt failed.
        """
        url = self._settings.api_url("scan-result", scan_id)
        attempts = self.max_attempts
        last_error = ""

        for attempt in range(attempts):
            try:
                result = await self._get(url)
                outcome = ScanOutcome.from_result(result)
                logger.info(
                    "Scan result retrieved: scan_id=%s status=%s attempt=%d",
                    scan_id,
                    outcome.kind.value,
                    attempt + 1,
                )
                return outcome
            except httpx.HTTPStatusError as exc:
                result_fetch_errors_total.labels(error_type="http_error").inc()
                last_error = f"result request failed with status {exc.response.status_code}"
            except httpx.RequestError as exc:
                result_fetch_errors_total.labels(error_type="network_error").inc()
                last_error = f"network error: {exc}"
            except ValueError as exc:
                # Covers both invalid JSON and pydantic ValidationError.
                result_fetch_errors_total.labels(error_type="decode_error").inc()
                last_error = _describe_decode_error(exc)

            logger.warning(
                "Scan result fetch failed for scan_id=%s attempt=%d/%d: %s",
                scan_id,
                attempt + 1,
                attempts,
                last_error,
            )
            if attempt < attempts - 1:
                delay = _backoff_delay(self._settings.fetch_retry_base_delay, attempt)
                logger.debug(
                    "Retrying scan result fetch for scan_id=%s in %.2fs", scan_id, delay
                )
                await asyncio.sleep(delay)

        error = FetchError(
            f"Failed to fetch scan result after {attempts} attempts: {last_error}",
            attempts=attempts,
        )
        logger.warning("%s (scan_id=%s)", error, scan_id)
        return ScanOutcome.failure(str(error))

    async def fetch_settled(self, scan_id: str, repolls: int) -> ScanOutcome:
        """Fetch, then re-fetch up to *repolls* times while the scan is still running.

        With ``repolls=0`` this is exactly :meth:`fetch`.
        """
        outcome = await self.fetch(scan_id)
        for poll in range(repolls):
            if outcome.kind is not OutcomeKind.STILL_SCANNING:
                break
            delay = _backoff_delay(self._settings.fetch_retry_base_delay, poll)
            logger.info(
                "Scan %s still running on the backend; re-polling in %.2fs (%d/%d)",
                scan_id,
                delay,
                poll + 1,
                repolls,
            )
            await asyncio.sleep(delay)
            outcome = await self.fetch(scan_id)
        return outcome

    async def _get(self, url: str) -> ScanResult:
        """Execute a single GET and decode the body.

        Raises :class:`httpx.HTTPStatusError` on a non-2xx response,
        :class:`httpx.RequestError` on a network-level failure and
        :class:`ValueError` when the body is not a valid scan result.
        """
        timeout = self._settings.http_timeout_seconds
        if self._http_client is not None:
            response = await self._http_client.get(url, timeout=timeout)
        else:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.get(url)
        response.raise_for_status()
        return ScanResult.model_validate(response.json())


def _describe_decode_error(exc: ValueError) -> str:
    if isinstance(exc, ValidationError):
        return f"invalid scan result: {exc.error_count()} validation error(s)"
    return "invalid scan result: body is not JSON"


def _backoff_delay(base: float, attempt: int) -> float:
    """Return the sleep duration before retry number *attempt* + 1.

    Formula: ``base * 2**attempt``
    """
    return base * (2**attempt)
