"""
Prometheus metrics for the webhook service.

- http_requests_total / request_latency_seconds: every HTTP request but /metrics
- webhook_requests_total: outcome of each POST /webhook call
- webhook_events_total: outcome of each event inside an accepted payload
- webhook_processing_seconds: background processing time per payload
- media_bytes_total: bytes copied into the media bucket

Metrics live in the default in-process registry of prometheus-client.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# result: received, invalid_signature, invalid_payload
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Total webhook request outcomes",
    labelnames=["result"]
)

# kind: message, status, media, error
# result: created, duplicate, failed, updated, orphaned, stored, stored_without_upload, logged
webhook_events_total = Counter(
    "webhook_events_total",
    "Total webhook events processed, by kind and outcome",
    labelnames=["kind", "result"]
)

webhook_processing_seconds = Histogram(
    "webhook_processing_seconds",
    "Time spent processing one accepted webhook payload",
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)
)

media_bytes_total = Counter(
    "media_bytes_total",
    "Bytes of media uploaded to durable storage"
)


def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    # Query strings would explode label cardinality
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


def record_webhook_outcome(result: str) -> None:
    """Record the outcome of one POST /webhook call."""
    webhook_requests_total.labels(result=result).inc()


def record_event_outcome(kind: str, result: str) -> None:
    """Record the outcome of one event inside a webhook payload."""
    webhook_events_total.labels(kind=kind, result=result).inc()


def record_webhook_processing(duration_seconds: float) -> None:
    webhook_processing_seconds.observe(duration_seconds)


def record_media_upload(size_bytes: int) -> None:
    media_bytes_total.inc(size_bytes)


def get_metrics() -> bytes:
    """Generate Prometheus exposition format metrics."""
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
