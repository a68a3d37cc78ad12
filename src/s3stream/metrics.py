"""Prometheus metrics definitions for s3stream.

All metrics use the ``s3stream_`` prefix for namespace isolation. Nothing is
registered in the global prometheus_client registry until ``init_metrics()``
is called; until then the ``record_*`` helpers are no-ops, so applications
that do not scrape metrics pay nothing.
"""

from __future__ import annotations

from prometheus_client import Counter

# Flag indicating whether metrics have been initialised via init_metrics().
_initialized: bool = False

# ---------------------------------------------------------------------------
# Request counter  (labels: method, status)
# ---------------------------------------------------------------------------
requests_total: Counter | None = None

# ---------------------------------------------------------------------------
# Byte counters
# ---------------------------------------------------------------------------
bytes_sent_total: Counter | None = None
bytes_received_total: Counter | None = None

# ---------------------------------------------------------------------------
# Multipart upload counter  (labels: outcome)
# ---------------------------------------------------------------------------
multipart_uploads_total: Counter | None = None


def init_metrics() -> None:
    """Create and register all Prometheus metrics.

    Safe to call more than once; only the first call registers collectors.
    """
    global _initialized
    global requests_total, bytes_sent_total, bytes_received_total, multipart_uploads_total

    if _initialized:
        return

    requests_total = Counter(
        "s3stream_requests_total",
        "Total S3 requests by HTTP method and response status",
        ["method", "status"],
    )

    bytes_sent_total = Counter(
        "s3stream_bytes_sent_total",
        "Total bytes sent in request bodies",
    )

    bytes_received_total = Counter(
        "s3stream_bytes_received_total",
        "Total bytes received in object bodies",
    )

    multipart_uploads_total = Counter(
        "s3stream_multipart_uploads_total",
        "Multipart uploads by final outcome",
        ["outcome"],
    )

    _initialized = True


def record_request(method: str, status: int | str, sent: int = 0) -> None:
    """Count one finished request; status is "error" for transport failures."""
    if requests_total is not None:
        requests_total.labels(method=method, status=str(status)).inc()
    if bytes_sent_total is not None and sent:
        bytes_sent_total.inc(sent)


def record_received(size: int) -> None:
    if bytes_received_total is not None and size:
        bytes_received_total.inc(size)


def record_multipart(outcome: str) -> None:
    if multipart_uploads_total is not None:
        multipart_uploads_total.labels(outcome=outcome).inc()
