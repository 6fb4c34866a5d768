"""
Metrics Collection with Prometheus.

Exposes reconciliation and gateway metrics for monitoring.
"""

from collections.abc import Callable
from enum import StrEnum

from prometheus_client import Counter, Gauge, Histogram, Info

from unipay.config import settings


class MetricLabels(StrEnum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    PAY_WAY = "pay_way"
    OPERATION = "operation"
    OUTCOME = "outcome"
    GATEWAY = "gateway"
    EVENT = "event"
    ERROR_TYPE = "error_type"


class ReconciliationMetrics:
    """
    Centralized metrics for the reconciliation service.

    Covers:
    - HTTP requests (rate, duration)
    - Receipt verification attempts and results
    - Reconciliation outcomes per gateway and operation
    - Lock contention and subscriber mismatches
    - Server notifications and acknowledgements
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "unipay_service",
            "Service information",
        )
        self.service_info.info(
            {
                "version": settings.api_version,
                "service_name": settings.service_name,
            }
        )

        # ====================================================================
        # HTTP Metrics
        # ====================================================================
        self.http_requests_total = Counter(
            "unipay_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "unipay_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "unipay_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Verification Metrics
        # ====================================================================
        self.verification_attempts_total = Counter(
            "unipay_verification_attempts_total",
            "Receipt verification attempts against gateway trust authorities",
            [MetricLabels.GATEWAY, MetricLabels.OUTCOME],
        )

        self.verification_duration_seconds = Histogram(
            "unipay_verification_duration_seconds",
            "Receipt verification duration in seconds, retries included",
            [MetricLabels.GATEWAY],
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
        )

        # ====================================================================
        # Reconciliation Metrics
        # ====================================================================
        self.reconciliations_total = Counter(
            "unipay_reconciliations_total",
            "Reconciliation results",
            [MetricLabels.PAY_WAY, MetricLabels.OPERATION, MetricLabels.OUTCOME],
        )

        self.lock_conflicts_total = Counter(
            "unipay_lock_conflicts_total",
            "Transactions rejected because another worker held the lock",
            [MetricLabels.PAY_WAY],
        )

        self.subscriber_mismatches_total = Counter(
            "unipay_subscriber_mismatches_total",
            "Renewals rejected by the subscription continuity check",
            [MetricLabels.PAY_WAY],
        )

        # ====================================================================
        # Notification Metrics
        # ====================================================================
        self.notifications_total = Counter(
            "unipay_notifications_total",
            "Server notifications by classified lifecycle event",
            [MetricLabels.GATEWAY, MetricLabels.EVENT],
        )

        self.acknowledgements_total = Counter(
            "unipay_acknowledgements_total",
            "Play Store purchase acknowledgements",
            ["purchase_type", "success"],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "unipay_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE, MetricLabels.OPERATION],
        )

    # ========================================================================
    # Helper Methods
    # ========================================================================

    def record_http_request(
        self, endpoint: str, method: str, status_code: int, duration: float
    ) -> None:
        """Record HTTP request metrics."""
        self.http_requests_total.labels(
            endpoint=endpoint, method=method, status_code=status_code
        ).inc()
        self.http_request_duration_seconds.labels(endpoint=endpoint, method=method).observe(
            duration
        )

    def record_verification_attempt(self, gateway: str, outcome: str) -> None:
        """Record one call to a gateway trust authority."""
        self.verification_attempts_total.labels(gateway=gateway, outcome=outcome).inc()

    def record_verification(self, gateway: str, duration: float) -> None:
        self.verification_duration_seconds.labels(gateway=gateway).observe(duration)

    def record_reconciliation(self, pay_way: str, operation: str, outcome: str) -> None:
        """Record a finished (or rejected) Invoke / Revoke."""
        self.reconciliations_total.labels(
            pay_way=pay_way, operation=operation, outcome=outcome
        ).inc()

    def record_lock_conflict(self, pay_way: str) -> None:
        self.lock_conflicts_total.labels(pay_way=pay_way).inc()

    def record_subscriber_mismatch(self, pay_way: str) -> None:
        self.subscriber_mismatches_total.labels(pay_way=pay_way).inc()

    def record_notification(self, gateway: str, event: str | None) -> None:
        """Record a classified notification; unrecognized ones count as "unknown"."""
        self.notifications_total.labels(gateway=gateway, event=event or "unknown").inc()

    def record_acknowledgement(self, purchase_type: str, success: bool) -> None:
        self.acknowledgements_total.labels(
            purchase_type=purchase_type, success=str(success)
        ).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = ReconciliationMetrics()


def get_metrics_handler() -> Callable[[], bytes]:
    """
    Get Prometheus metrics handler for FastAPI.

    Usage:
        handler = get_metrics_handler()
        return Response(content=handler(), media_type=CONTENT_TYPE_LATEST)
    """
    from prometheus_client import REGISTRY, generate_latest

    def metrics_endpoint() -> bytes:
        return generate_latest(REGISTRY)

    return metrics_endpoint
