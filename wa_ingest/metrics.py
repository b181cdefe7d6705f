"""
Prometheus metrics for the webhook API.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Webhook call outcome counter (result)
- Per-event ingestion outcome counter (event, result)

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

# result: accepted, invalid_signature, validation_error, invalid_object
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Total webhook call outcomes",
    labelnames=["result"]
)

# event: message, status, error
# result: created, duplicate, matched, miss, recorded, failed
webhook_events_total = Counter(
    "webhook_events_total",
    "Outcomes of individual events within webhook notifications",
    labelnames=["event", "result"]
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

def route_label(request) -> str:
    """
    Path label for a served request.

    Uses the matched route template (/data/messages/{wa_message_id}) so that
    per-message lookups share one series. Unmatched paths collapse to
    "unmatched".
    """
    route = request.scope.get("route")
    return getattr(route, "path", None) or "unmatched"


def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Route template from route_label()
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    request_latency_seconds.labels(method=method, path=path).observe(latency_seconds)


def record_webhook_outcome(result: str) -> None:
    """Record the outcome of one webhook call."""
    webhook_requests_total.labels(result=result).inc()


def record_event_outcome(event: str, result: str) -> None:
    """Record the outcome of one normalized event."""
    webhook_events_total.labels(event=event, result=result).inc()


def get_metrics() -> bytes:
    """Metrics in Prometheus text exposition format."""
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
