"""Prometheus metrics for monitoring."""

from __future__ import annotations

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, Info, generate_latest

from mailflow.observability.logging import get_logger

logger = get_logger(__name__)

# Create a custom registry
REGISTRY = CollectorRegistry()


APP_INFO = Info(
    "mailflow",
    "Mailflow application info",
    registry=REGISTRY,
)

# Notification metrics
NOTIFICATIONS_TOTAL = Counter(
    "mailflow_notifications_total",
    "Notifications received from the delivery stream",
    ["outcome"],
    registry=REGISTRY,
)

NOTIFICATION_DURATION = Histogram(
    "mailflow_notification_duration_seconds",
    "Time spent handling one notification",
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
    registry=REGISTRY,
)

# Record metrics
RECORDS_TOTAL = Counter(
    "mailflow_records_total",
    "Processed records emitted",
    ["source", "result"],
    registry=REGISTRY,
)

WATERMARK = Gauge(
    "mailflow_watermark",
    "Current history watermark",
    ["session"],
    registry=REGISTRY,
)

# Polling metrics
POLL_CYCLES_TOTAL = Counter(
    "mailflow_poll_cycles_total",
    "Polling cycles executed",
    ["status"],
    registry=REGISTRY,
)

# Watch metrics
WATCH_OPERATIONS_TOTAL = Counter(
    "mailflow_watch_operations_total",
    "Watch registration operations",
    ["service_type", "operation"],
    registry=REGISTRY,
)

WATCH_EXPIRATION = Gauge(
    "mailflow_watch_expiration_timestamp_seconds",
    "Expiration of the active watch registration",
    ["service_type", "application_name"],
    registry=REGISTRY,
)

# Mailbox API metrics
API_REQUESTS_TOTAL = Counter(
    "mailflow_api_requests_total",
    "Backend API requests",
    ["api", "status"],
    registry=REGISTRY,
)


class MetricsCollector:
    """
    Collects and exposes metrics.

    Provides methods to update metrics and generate output.
    """

    def __init__(self) -> None:
        self._initialized = False

    def initialize(self, version: str = "0.1.0") -> None:
        """Initialize metrics with app info."""
        if self._initialized:
            return

        APP_INFO.info({
            "version": version,
            "name": "mailflow",
        })
        self._initialized = True

    # Notification metrics

    def record_notification(self, outcome: str, duration_seconds: float | None = None) -> None:
        """Record a handled notification (processed, seeded, malformed, failed)."""
        NOTIFICATIONS_TOTAL.labels(outcome=outcome).inc()
        if duration_seconds is not None:
            NOTIFICATION_DURATION.observe(duration_seconds)

    # Record metrics

    def record_result(self, source: str, result: str) -> None:
        """Record an emitted record (matched, filtered, failed)."""
        RECORDS_TOTAL.labels(source=source, result=result).inc()

    def set_watermark(self, session: str, watermark: int) -> None:
        """Update the watermark gauge."""
        WATERMARK.labels(session=session).set(watermark)

    # Polling metrics

    def record_poll_cycle(self, success: bool) -> None:
        """Record a polling cycle."""
        status = "success" if success else "failure"
        POLL_CYCLES_TOTAL.labels(status=status).inc()

    # Watch metrics

    def record_watch_operation(self, service_type: str, operation: str) -> None:
        """Record a watch operation (created, adopted, renewed, stopped, failed)."""
        WATCH_OPERATIONS_TOTAL.labels(
            service_type=service_type, operation=operation
        ).inc()

    def set_watch_expiration(
        self,
        service_type: str,
        application_name: str,
        timestamp: float,
    ) -> None:
        """Update the active watch expiration."""
        WATCH_EXPIRATION.labels(
            service_type=service_type, application_name=application_name
        ).set(timestamp)

    # API metrics

    def record_api_request(self, api: str, status: int | str) -> None:
        """Record a backend API request."""
        API_REQUESTS_TOTAL.labels(api=api, status=str(status)).inc()

    def get_metrics(self) -> bytes:
        """Generate metrics in Prometheus format."""
        return generate_latest(REGISTRY)


# Global metrics collector instance
_collector: MetricsCollector | None = None


def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector."""
    global _collector
    if _collector is None:
        _collector = MetricsCollector()
    return _collector
