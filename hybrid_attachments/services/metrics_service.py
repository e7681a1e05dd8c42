"""
Prometheus metrics for the hybrid attachment service.

Tracks HTTP traffic, upload outcomes, outbox processing and remote store latency.
"""

import logging

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST, REGISTRY

logger = logging.getLogger(__name__)


# Define histogram buckets for response times (in seconds)
RESPONSE_TIME_BUCKETS = (
    0.005, 0.01, 0.025, 0.05, 0.075, 0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0
)

# Remote calls include two minute uploads
REMOTE_CALL_BUCKETS = (
    0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0
)


class MetricsCollector:
    """Owns the Prometheus collectors for the service."""

    def __init__(self, registry=REGISTRY):
        self.registry = registry

        self.http_requests_total = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status_code"],
            registry=registry,
        )
        self.http_request_duration_seconds = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint"],
            buckets=RESPONSE_TIME_BUCKETS,
            registry=registry,
        )
        self.attachment_uploads_total = Counter(
            "attachment_uploads_total",
            "Attachment uploads by resulting status",
            ["status"],
            registry=registry,
        )
        self.outbox_events_total = Counter(
            "outbox_events_total",
            "Outbox events handled by type and outcome",
            ["event_type", "outcome"],
            registry=registry,
        )
        self.remote_call_duration_seconds = Histogram(
            "remote_store_call_duration_seconds",
            "Remote object store call duration in seconds",
            ["operation", "outcome"],
            buckets=REMOTE_CALL_BUCKETS,
            registry=registry,
        )

    def record_request(self, method: str, endpoint: str, status_code: int, duration_seconds: float):
        self.http_requests_total.labels(
            method=method, endpoint=endpoint, status_code=str(status_code)
        ).inc()
        self.http_request_duration_seconds.labels(method=method, endpoint=endpoint).observe(duration_seconds)

    def record_upload(self, status: str):
        self.attachment_uploads_total.labels(status=status).inc()

    def record_outbox_event(self, event_type: str, outcome: str):
        self.outbox_events_total.labels(event_type=event_type, outcome=outcome).inc()

    def record_remote_call(self, operation: str, outcome: str, duration_seconds: float):
        self.remote_call_duration_seconds.labels(operation=operation, outcome=outcome).observe(duration_seconds)

    def export(self) -> bytes:
        """Render all metrics in Prometheus text exposition format."""
        return generate_latest(self.registry)


metrics_collector = MetricsCollector()

__all__ = ["MetricsCollector", "metrics_collector", "CONTENT_TYPE_LATEST"]
