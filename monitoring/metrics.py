"""
Prometheus metrics for order and settlement monitoring.

Tracks:
- Orders created
- Payment attempts by provider and outcome
- Settlements by terminal status and outcome
- Webhook events by provider and outcome
- Provider call latency
- Reconciliation sweeps
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Order metrics
orders_created_total = Counter(
    "orders_created_total",
    "Total number of orders created",
)

# Payment metrics
payments_created_total = Counter(
    "payments_created_total",
    "Total payment attempts",
    ["provider", "outcome"],  # created, provider_error, conflict
)

# Settlement metrics
settlements_total = Counter(
    "settlements_total",
    "Total settlement events",
    ["status", "outcome"],  # applied, duplicate, aborted
)

settlement_duration_seconds = Histogram(
    "settlement_duration_seconds",
    "Settlement transaction duration in seconds",
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Webhook metrics
webhook_events_total = Counter(
    "webhook_events_total",
    "Total webhook events received",
    ["provider", "outcome"],  # settled, ignored, rejected, failed, retry
)

# Provider metrics
provider_call_duration_seconds = Histogram(
    "provider_call_duration_seconds",
    "Payment provider call duration in seconds",
    ["provider", "operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

# Reconciliation metrics
reconciliation_payments_total = Counter(
    "reconciliation_payments_total",
    "Payments verified by the reconciliation worker",
    ["outcome"],  # settled, pending, failed
)

reconciliation_last_run_timestamp = Gauge(
    "reconciliation_last_run_timestamp",
    "Timestamp of last reconciliation run",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_order_created() -> None:
        orders_created_total.inc()

    @staticmethod
    def record_payment_created(provider: str, outcome: str) -> None:
        payments_created_total.labels(provider=provider, outcome=outcome).inc()

    @staticmethod
    def record_settlement(status: str, outcome: str, duration_seconds: float) -> None:
        """Record a settlement attempt."""
        settlements_total.labels(status=status, outcome=outcome).inc()
        settlement_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_webhook_event(provider: str, outcome: str) -> None:
        webhook_events_total.labels(provider=provider, outcome=outcome).inc()

    @staticmethod
    def record_provider_call(provider: str, operation: str, duration_seconds: float) -> None:
        provider_call_duration_seconds.labels(
            provider=provider, operation=operation
        ).observe(duration_seconds)

    @staticmethod
    def record_reconciliation(outcome: str) -> None:
        reconciliation_payments_total.labels(outcome=outcome).inc()

    @staticmethod
    def mark_reconciliation_run() -> None:
        reconciliation_last_run_timestamp.set(time.time())


# Export singleton instance
metrics = MetricsCollector()
