"""
Prometheus metrics for the chat API.

This module provides:
- HTTP request counter (method, path, status)
- Send outcome counter (result)
- Histogram of messages returned per fetch
- Request latency histogram (method, path)

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

# result: created, forbidden, rate_limited, invalid_input, error
chat_send_total = Counter(
    "chat_send_total",
    "Total send outcomes",
    labelnames=["result"]
)

chat_fetch_messages = Histogram(
    "chat_fetch_messages",
    "Messages returned per fetch",
    buckets=(0, 1, 5, 10, 25, 50, 100, 200)
)

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
        path: Route template of the request, or "unmatched"
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
    http_requests_total.labels(
        method=method,
        path=path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=path
    ).observe(latency_seconds)


def record_send_outcome(result: str) -> None:
    """Record the outcome of a send request."""
    chat_send_total.labels(result=result).inc()


def record_fetch_size(count: int) -> None:
    chat_fetch_messages.observe(count)


def get_metrics() -> bytes:
    """Generate Prometheus exposition format metrics."""
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
