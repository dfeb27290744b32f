"""Prometheus counters for the PEroxide client.

Every failure mode of the scan lifecycle has a counter so that operators of
long-running embeddings (kiosks, batch submitters) can alert on sustained
backend trouble.  Counters are process-wide and registered on the default
``prometheus_client`` registry.
"""

from __future__ import annotations

from prometheus_client import Counter

#: Incremented for every rejected upload.
#: Labels: ``reason`` ("network_error" | "server_error").
upload_rejections_total = Counter(
    "peroxide_upload_rejections_total",
    "Total number of uploads rejected by the transport or the backend",
    ["reason"],
)

#: Incremented for every push message that could not be decoded.
stream_decode_errors_total = Counter(
    "peroxide_stream_decode_errors_total",
    "Total number of malformed scan-status messages dropped by the client",
)

#: Incremented when the scan-status stream is lost before completion.
stream_disruptions_total = Counter(
    "peroxide_stream_disruptions_total",
    "Total number of scan-status streams lost before reporting completion",
)

#: Incremented for every failed result retrieval attempt (including retries).
#: Labels: ``error_type`` ("http_error" | "network_error" | "decode_error").
result_fetch_errors_total = Counter(
    "peroxide_result_fetch_errors_total",
    "Total number of failed scan-result retrieval attempts",
    ["error_type"],
)
