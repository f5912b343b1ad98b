"""
Prometheus metrics for the Tipu backend.

Service operation timings come from ``@BaseService.measure_operation``;
payment and meeting outcomes are recorded by the services that produce them.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

# Custom registry so tests and multiple app instances do not collide with the default one
REGISTRY = CollectorRegistry()

service_operation_duration_seconds = Histogram(
    "tipu_service_operation_duration_seconds",
    "Service operation duration in seconds",
    ["service", "operation"],
    registry=REGISTRY,
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

service_operations_total = Counter(
    "tipu_service_operations_total",
    "Total number of service operations",
    ["service", "operation", "status"],
    registry=REGISTRY,
)

errors_total = Counter(
    "tipu_errors_total",
    "Total number of errors",
    ["service", "operation", "error_type"],
    registry=REGISTRY,
)

payments_confirmed_total = Counter(
    "tipu_payments_confirmed_total",
    "Bookings flipped to paid, by confirmation source",
    ["source"],  # webhook | scheduled | manual | repair
    registry=REGISTRY,
)

scheduled_payment_outcomes_total = Counter(
    "tipu_scheduled_payment_outcomes_total",
    "Outcomes of scheduled off-session charges",
    ["outcome"],  # succeeded | requires_action | failed | skipped
    registry=REGISTRY,
)

webhook_events_total = Counter(
    "tipu_webhook_events_total",
    "Stripe webhook events by type and handling result",
    ["event_type", "result"],
    registry=REGISTRY,
)

meeting_generation_total = Counter(
    "tipu_meeting_generation_total",
    "Meeting generation attempts by outcome",
    ["outcome"],  # created | existing | failed
    registry=REGISTRY,
)


class PrometheusMetrics:
    """Static helpers used by services to record metrics."""

    content_type = CONTENT_TYPE_LATEST

    @staticmethod
    def record_service_operation(
        service: str,
        operation: str,
        duration: float,
        status: str = "success",
        error_type: str | None = None,
    ) -> None:
        """
        Record service operation metrics from @measure_operation.

        Args:
            service: Service name (e.g., 'PaymentService')
            operation: Operation name (e.g., 'confirm_payment')
            duration: Operation duration in seconds
            status: 'success' or 'error'
            error_type: Exception class name when status is 'error'
        """
        service_operation_duration_seconds.labels(service=service, operation=operation).observe(
            duration
        )
        service_operations_total.labels(service=service, operation=operation, status=status).inc()
        if status == "error" and error_type:
            errors_total.labels(service=service, operation=operation, error_type=error_type).inc()

    @staticmethod
    def inc_payment_confirmed(source: str) -> None:
        payments_confirmed_total.labels(source=source).inc()

    @staticmethod
    def inc_scheduled_payment(outcome: str) -> None:
        scheduled_payment_outcomes_total.labels(outcome=outcome).inc()

    @staticmethod
    def inc_webhook_event(event_type: str, result: str) -> None:
        webhook_events_total.labels(event_type=event_type, result=result).inc()

    @staticmethod
    def inc_meeting_generation(outcome: str) -> None:
        meeting_generation_total.labels(outcome=outcome).inc()

    @staticmethod
    def get_metrics() -> bytes:
        """Metrics in Prometheus text exposition format."""
        return generate_latest(REGISTRY)


prometheus_metrics = PrometheusMetrics()
