"""
Metrics Collection with Prometheus.

Business metrics for the order -> license -> delivery -> refund path.
"""

import time
from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from fulfillment.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    OUTCOME = "outcome"
    PAYMENT_METHOD = "payment_method"
    ERROR_TYPE = "error_type"


class FulfillmentMetrics:
    """
    Centralized metrics for the fulfillment service.

    Covers:
    - HTTP requests (rate, duration)
    - Orders created and payments confirmed
    - Coupon redemptions and download credentials by outcome
    - Licenses issued and revoked
    - Refunds by status
    - Payment confirmation integrity failures
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        self.service_info = Info("fulfillment_service", "Service information")
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
            "fulfillment_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "fulfillment_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "fulfillment_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Order Metrics
        # ====================================================================
        self.orders_created_total = Counter(
            "fulfillment_orders_created_total",
            "Total orders created",
        )

        self.payments_confirmed_total = Counter(
            "fulfillment_payments_confirmed_total",
            "Orders moved to paid",
            [MetricLabels.PAYMENT_METHOD],
        )

        self.order_total_minor = Histogram(
            "fulfillment_order_total_minor",
            "Paid order totals in minor units (cents)",
            buckets=(0, 500, 1000, 2500, 5000, 10000, 25000, 50000, 100000),
        )

        self.orders_expired_total = Counter(
            "fulfillment_orders_expired_total",
            "Pending orders expired by the cleanup job",
        )

        self.integrity_failures_total = Counter(
            "fulfillment_integrity_failures_total",
            "Payment confirmations rolled back after the charge succeeded",
            ["step"],
        )

        # ====================================================================
        # Coupon, License, Delivery Metrics
        # ====================================================================
        self.coupon_redemptions_total = Counter(
            "fulfillment_coupon_redemptions_total",
            "Coupon validations and redemptions by outcome",
            [MetricLabels.OPERATION, MetricLabels.OUTCOME],
        )

        self.licenses_issued_total = Counter(
            "fulfillment_licenses_issued_total",
            "Licenses issued",
            ["tier"],
        )

        self.licenses_revoked_total = Counter(
            "fulfillment_licenses_revoked_total",
            "Licenses revoked by refunds",
        )

        self.download_credentials_total = Counter(
            "fulfillment_download_credentials_total",
            "Download credential issue/redeem attempts by outcome",
            [MetricLabels.OPERATION, MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Refund and Notification Metrics
        # ====================================================================
        self.refunds_total = Counter(
            "fulfillment_refunds_total",
            "Refund transitions by resulting status",
            ["status"],
        )

        self.outbox_dispatched_total = Counter(
            "fulfillment_outbox_dispatched_total",
            "Outbox events delivered to the notifier",
            ["success"],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "fulfillment_errors_total",
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

    def record_payment_confirmed(self, payment_method: str, total_minor: int) -> None:
        self.payments_confirmed_total.labels(payment_method=payment_method).inc()
        self.order_total_minor.observe(total_minor)

    def record_coupon(self, operation: str, outcome: str) -> None:
        self.coupon_redemptions_total.labels(operation=operation, outcome=outcome).inc()

    def record_download(self, operation: str, outcome: str) -> None:
        self.download_credentials_total.labels(operation=operation, outcome=outcome).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = FulfillmentMetrics()


class track_http_request:
    """
    Context manager for tracking HTTP requests.

    Usage:
        with track_http_request("/v1/orders", "POST") as tracker:
            response = await call_next(request)
            tracker.set_status_code(response.status_code)
    """

    def __init__(self, endpoint: str, method: str) -> None:
        self.endpoint = endpoint
        self.method = method
        self.status_code = 200
        self.start_time: float = 0.0

    def set_status_code(self, status_code: int) -> None:
        self.status_code = status_code

    def __enter__(self) -> "track_http_request":
        self.start_time = time.perf_counter()
        metrics.http_requests_in_progress.labels(
            endpoint=self.endpoint, method=self.method
        ).inc()
        return self

    def __exit__(self, exc_type: type, exc_val: Exception, exc_tb: object) -> None:
        duration = time.perf_counter() - self.start_time
        if exc_type is not None:
            self.status_code = 500
        metrics.record_http_request(self.endpoint, self.method, self.status_code, duration)
        metrics.http_requests_in_progress.labels(
            endpoint=self.endpoint, method=self.method
        ).dec()
