"""
Metrics Collection with Prometheus.

Exposes coordination-layer metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Histogram, Info, start_http_server

from app.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    OPERATION = "operation"
    OUTCOME = "outcome"
    WINDOW = "window"
    ERROR_TYPE = "error_type"


class CoordinationMetrics:
    """
    Centralized metrics for the coordination stores.

    Covers:
    - Store operations (rate, duration, success/failure)
    - Idempotency hits, misses and claims
    - Rate-limit decisions per window
    - Session lookups and rotations
    - CSRF token issue/consume outcomes
    - Quote job transitions and stuck-job recoveries
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "quickquote_service",
            "Service information",
        )
        self.service_info.info(
            {
                "version": settings.service_version,
                "service_name": settings.service_name,
            }
        )

        # ====================================================================
        # Store Operation Metrics
        # ====================================================================
        self.store_operations_total = Counter(
            "quickquote_store_operations_total",
            "Total store operations",
            [MetricLabels.OPERATION, "success"],
        )

        self.store_operation_duration_seconds = Histogram(
            "quickquote_store_operation_duration_seconds",
            "Store operation duration in seconds",
            [MetricLabels.OPERATION],
            buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 5.0, 10.0, 30.0),
        )

        # ====================================================================
        # Component Metrics
        # ====================================================================
        self.idempotency_lookups_total = Counter(
            "quickquote_idempotency_lookups_total",
            "Idempotency lookups by outcome (hit, miss, claimed, in_flight)",
            [MetricLabels.OUTCOME],
        )

        self.rate_limit_decisions_total = Counter(
            "quickquote_rate_limit_decisions_total",
            "Rate limit decisions by window and outcome",
            [MetricLabels.WINDOW, MetricLabels.OUTCOME],
        )

        self.session_events_total = Counter(
            "quickquote_session_events_total",
            "Session lookups and rotations by outcome",
            [MetricLabels.OPERATION, MetricLabels.OUTCOME],
        )

        self.csrf_events_total = Counter(
            "quickquote_csrf_events_total",
            "CSRF token events by outcome",
            [MetricLabels.OPERATION, MetricLabels.OUTCOME],
        )

        self.quote_job_transitions_total = Counter(
            "quickquote_quote_job_transitions_total",
            "Quote job status transitions",
            ["from_status", "to_status"],
        )

        self.quote_jobs_recovered_total = Counter(
            "quickquote_quote_jobs_recovered_total",
            "Stuck quote jobs recovered by the maintenance sweep",
        )

        self.maintenance_rows_total = Counter(
            "quickquote_maintenance_rows_total",
            "Rows affected by maintenance sweeps",
            ["sweep"],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "quickquote_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE, MetricLabels.OPERATION],
        )

    # ========================================================================
    # Helper Methods
    # ========================================================================

    def record_store_operation(self, operation: str, success: bool, duration: float) -> None:
        """Record store operation metrics."""
        self.store_operations_total.labels(operation=operation, success=str(success)).inc()
        self.store_operation_duration_seconds.labels(operation=operation).observe(duration)

    def record_idempotency(self, outcome: str) -> None:
        """Record an idempotency lookup or claim outcome."""
        self.idempotency_lookups_total.labels(outcome=outcome).inc()

    def record_rate_limit(self, window: str, allowed: bool) -> None:
        """Record a rate-limit decision for one window."""
        self.rate_limit_decisions_total.labels(
            window=window, outcome="allowed" if allowed else "rejected"
        ).inc()

    def record_session_event(self, operation: str, outcome: str) -> None:
        """Record a session lookup or rotation."""
        self.session_events_total.labels(operation=operation, outcome=outcome).inc()

    def record_csrf_event(self, operation: str, outcome: str) -> None:
        """Record a CSRF token event."""
        self.csrf_events_total.labels(operation=operation, outcome=outcome).inc()

    def record_job_transition(self, from_status: str, to_status: str) -> None:
        """Record a quote job status transition."""
        self.quote_job_transitions_total.labels(
            from_status=from_status, to_status=to_status
        ).inc()

    def record_maintenance(self, sweep: str, rows: int) -> None:
        """Record rows affected by a maintenance sweep."""
        self.maintenance_rows_total.labels(sweep=sweep).inc(rows)

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = CoordinationMetrics()


def start_metrics_server() -> None:
    """Expose /metrics on settings.metrics_port when metrics are enabled."""
    if settings.metrics_enabled:
        start_http_server(settings.metrics_port)
