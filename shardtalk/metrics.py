"""
Prometheus metrics for the ShardTalk API and sync command.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Message write outcome counter (result)
- Sync outcome counter (result)

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# result: inserted, updated, unchanged, validation_error, unavailable, conflict
message_writes_total = Counter(
    "message_writes_total",
    "Total message write outcomes on POST /messages",
    labelnames=["result"]
)

# result: inserted, updated, unchanged
sync_messages_total = Counter(
    "sync_messages_total",
    "Total messages processed by ledger sync runs",
    labelnames=["result"]
)

# Using default buckets: .005, .01, .025, .05, .075, .1, .25, .5, .75, 1.0, 2.5, 5.0, 7.5, 10.0
request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Request path
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
    normalized_path = path.split("?")[0]
    # /totalmsg/<address> would otherwise create one label per address
    if normalized_path.startswith("/totalmsg/"):
        normalized_path = "/totalmsg/{address}"

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_message_write(result: str) -> None:
    """Record the outcome of a single message write."""
    message_writes_total.labels(result=result).inc()


def record_sync_counts(counts: dict) -> None:
    """Record inserted/updated/unchanged counts of one sync batch."""
    for result in ("inserted", "updated", "unchanged"):
        if counts.get(result):
            sync_messages_total.labels(result=result).inc(counts[result])


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
