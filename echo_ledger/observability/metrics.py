"""
Metrics Collection with Prometheus.

Exposes ledger and system metrics for monitoring.
"""

from decimal import Decimal
from enum import Enum

from prometheus_client import Counter, Histogram, Info, Gauge

from echo_ledger.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    PROVIDER = "provider"
    OUTCOME = "outcome"
    ERROR_TYPE = "error_type"


class LedgerMetrics:
    """
    Centralized metrics for the Echo Ledger API.

    Covers:
    - HTTP requests (rate, duration, errors)
    - x402 authentication outcomes
    - Ledger writes (rate, cost distribution)
    - Credit grant redemptions and mints
    - Token issuance and rotation
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "ledger_service",
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
            "ledger_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "ledger_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "ledger_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # x402 Authentication Metrics
        # ====================================================================
        self.x402_authentications_total = Counter(
            "ledger_x402_authentications_total",
            "Payment-request authentications by outcome",
            [MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Ledger Metrics
        # ====================================================================
        self.transactions_recorded_total = Counter(
            "ledger_transactions_recorded_total",
            "Total transactions written to the ledger",
            [MetricLabels.PROVIDER],
        )

        self.transaction_total_cost = Histogram(
            "ledger_transaction_total_cost",
            "Total cost per transaction (display units, float approximation)",
            buckets=(0.0001, 0.001, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 100.0),
        )

        # ====================================================================
        # Credit Metrics
        # ====================================================================
        self.grant_redemptions_total = Counter(
            "ledger_grant_redemptions_total",
            "Credit grant redemption attempts by outcome",
            [MetricLabels.OUTCOME],
        )

        self.credits_minted_total = Counter(
            "ledger_credits_minted_total",
            "Admin credit mints",
        )

        # ====================================================================
        # Token Metrics
        # ====================================================================
        self.tokens_issued_total = Counter(
            "ledger_tokens_issued_total",
            "New token lineages issued",
        )

        self.token_rotations_total = Counter(
            "ledger_token_rotations_total",
            "Refresh token rotations by outcome",
            [MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "ledger_errors_total",
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

    def record_x402_authentication(self, outcome: str) -> None:
        """Record an x402 authentication outcome (no_header, unknown_app, authenticated)."""
        self.x402_authentications_total.labels(outcome=outcome).inc()

    def record_transaction(self, provider: str, total_cost: Decimal) -> None:
        """Record a ledger write. Float conversion happens only here, for the histogram."""
        self.transactions_recorded_total.labels(provider=provider).inc()
        self.transaction_total_cost.observe(float(total_cost))

    def record_grant_redemption(self, outcome: str) -> None:
        """Record a grant redemption outcome (redeemed, already_redeemed, not_found)."""
        self.grant_redemptions_total.labels(outcome=outcome).inc()

    def record_token_rotation(self, outcome: str) -> None:
        """Record a refresh outcome (rotated, grace_rotated, stale, expired, unknown)."""
        self.token_rotations_total.labels(outcome=outcome).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = LedgerMetrics()
