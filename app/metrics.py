"""
Prometheus metrics for the ingestion service.

This module provides:
- HTTP request counter (method, path, status)
- Webhook outcome counter (result)
- Request latency histogram (method, path)
- Counters for best-effort collaborators (profile lookups, media uploads)
- Trigger outbox counters (scheduled, delivered, failed)

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

# result: created, duplicate, connection, ignored, invalid_signature,
# validation_error, not_found, error
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Total webhook processing outcomes",
    labelnames=["result"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# result: found, missing, failed, skipped
profile_lookups_total = Counter(
    "profile_lookups_total",
    "Profile and group-info lookups by outcome",
    labelnames=["result"]
)

# result: passthrough, uploaded, failed
media_uploads_total = Counter(
    "media_uploads_total",
    "Attachment resolutions by outcome",
    labelnames=["result"]
)

triggers_scheduled_total = Counter(
    "triggers_scheduled_total",
    "Downstream triggers written to the outbox",
    labelnames=["kind"]
)

# result: delivered, retry, failed
outbox_deliveries_total = Counter(
    "outbox_deliveries_total",
    "Outbox delivery attempts by outcome",
    labelnames=["kind", "result"]
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
    if normalized_path.startswith("/conversations/"):
        # /conversations/<id>/claim -> /conversations/{id}/claim
        parts = normalized_path.split("/")
        if len(parts) > 2:
            parts[2] = "{id}"
        normalized_path = "/".join(parts)
    elif normalized_path.startswith("/media/"):
        # Stored object keys are unbounded
        normalized_path = "/media/{key}"

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


def record_profile_lookup(result: str) -> None:
    profile_lookups_total.labels(result=result).inc()


def record_media_outcome(result: str) -> None:
    media_uploads_total.labels(result=result).inc()


def record_trigger_scheduled(kind: str) -> None:
    triggers_scheduled_total.labels(kind=kind).inc()


def record_outbox_delivery(kind: str, result: str) -> None:
    outbox_deliveries_total.labels(kind=kind, result=result).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
