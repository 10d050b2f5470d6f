"""
Prometheus metrics for the chat relay.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Message post outcome counter (result)
- Fan-out delivery counters and failure counter (reason)
- Active WebSocket connection gauge

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

# HTTP request counter with labels for method, path, and status code
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# Request latency histogram in seconds
request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# result: created, unauthorized, not_found, malformed, store_unavailable
messages_posted_total = Counter(
    "chat_messages_posted_total",
    "Total message post outcomes",
    labelnames=["result"]
)

deliveries_total = Counter(
    "chat_deliveries_total",
    "Messages enqueued to subscriber connections (live and catch-up)"
)

# reason: overflow, send_error
delivery_failures_total = Counter(
    "chat_delivery_failures_total",
    "Per-connection delivery failures",
    labelnames=["reason"]
)

catchup_messages_total = Counter(
    "chat_catchup_messages_total",
    "Messages replayed to connections on subscribe"
)

active_connections = Gauge(
    "chat_active_connections",
    "Currently open hub connections"
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
    # Normalize path to avoid high-cardinality labels
    normalized_path = path.split("?")[0]

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_post_outcome(result: str) -> None:
    """Record the outcome of a PostMessage call."""
    messages_posted_total.labels(result=result).inc()


def record_delivery(count: int = 1, catchup: bool = False) -> None:
    """Record messages enqueued to subscriber queues."""
    if count <= 0:
        return
    deliveries_total.inc(count)
    if catchup:
        catchup_messages_total.inc(count)


def record_delivery_failure(reason: str) -> None:
    """
    Record a per-connection delivery failure.

    Args:
        reason: "overflow" when the outbound queue was full,
            "send_error" when the transport write failed
    """
    delivery_failures_total.labels(reason=reason).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST
