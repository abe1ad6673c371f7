"""
Prometheus metrics for the dashboard service.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Inbound webhook outcome counter (result)
- Sync run counter (mode, outcome) and fetched message counter
- Cache size gauges

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

# Inbound webhook outcome counter
# result: accepted, blocked, invalid_signature
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Total inbound webhook outcomes",
    labelnames=["result"]
)

# mode: full, incremental, repair
# outcome: success, failed, skipped
sync_runs_total = Counter(
    "sync_runs_total",
    "Sync attempts by mode and outcome",
    labelnames=["mode", "outcome"]
)

messages_fetched_total = Counter(
    "messages_fetched_total",
    "Messages received from the messaging API (before deduplication)"
)

cached_messages = Gauge("cached_messages", "Messages currently held in the cache")
cached_conversations = Gauge("cached_conversations", "Conversations currently held in the cache")


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
    # Per-contact routes collapse to their template
    for prefix in ("/api/conversation/", "/api/message/", "/api/check-blocked/"):
        if normalized_path.startswith(prefix):
            normalized_path = prefix + "{id}"
            break

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_webhook_outcome(result: str) -> None:
    webhook_requests_total.labels(result=result).inc()


def record_sync(mode: str, outcome: str) -> None:
    sync_runs_total.labels(mode=mode, outcome=outcome).inc()


def record_messages_fetched(count: int) -> None:
    messages_fetched_total.inc(count)


def record_cache_size(messages: int, conversations: int) -> None:
    cached_messages.set(messages)
    cached_conversations.set(conversations)


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
