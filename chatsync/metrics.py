"""
Prometheus metrics for the sync service.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Sync run outcome counter (outcome) and imported message counter
- Provider call counter (endpoint, status) and retry counter (reason)

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

# Using default buckets: .005, .01, .025, .05, .075, .1, .25, .5, .75, 1.0, 2.5, 5.0, 7.5, 10.0
request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# outcome: completed, partial, unauthorized, forbidden, no_credentials, provider_error, error
sync_runs_total = Counter(
    "sync_runs_total",
    "Total sync runs by outcome",
    labelnames=["outcome"]
)

sync_messages_imported_total = Counter(
    "sync_messages_imported_total",
    "Total messages written by sync runs"
)

# status: HTTP status code, or network_error when no response arrived
provider_requests_total = Counter(
    "provider_requests_total",
    "Total outbound calls to the messaging provider",
    labelnames=["endpoint", "status"]
)

# reason: rate_limited, network
provider_retries_total = Counter(
    "provider_retries_total",
    "Total retried provider calls",
    labelnames=["reason"]
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
    # Collapse per-subject paths to avoid high-cardinality labels
    if normalized_path.startswith("/subjects/"):
        normalized_path = "/subjects/{subject_id}/messages"

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_sync_outcome(outcome: str, messages_imported: int = 0) -> None:
    """Record how a sync run ended and how many messages it wrote."""
    sync_runs_total.labels(outcome=outcome).inc()
    if messages_imported:
        sync_messages_imported_total.inc(messages_imported)


def record_provider_request(endpoint: str, status: str) -> None:
    provider_requests_total.labels(endpoint=endpoint, status=status).inc()


def record_provider_retry(reason: str) -> None:
    provider_retries_total.labels(reason=reason).inc()


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
