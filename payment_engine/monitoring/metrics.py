"""
Prometheus metrics for payment engine monitoring.

Tracks:
- Orders and payment attempts by method
- Settlement outcomes and latency
- Duplicate payment rejections
- Storage retries and exhausted settlements
- Stuck (stale processing) payments
- Refunds
"""
from prometheus_client import Counter, Gauge, Histogram

# Order / payment intake
orders_created_total = Counter(
    "orders_created_total",
    "Total number of orders created",
    ["currency"],
)

payments_created_total = Counter(
    "payments_created_total",
    "Total number of payment attempts accepted for settlement",
    ["method"],
)

payment_amount_minor_units = Histogram(
    "payment_amount_minor_units",
    "Payment amounts in minor currency units",
    buckets=(100, 500, 1000, 5000, 10000, 50000, 100000, 500000, 1000000),
)

duplicate_payments_rejected_total = Counter(
    "duplicate_payments_rejected_total",
    "Payment attempts rejected because another attempt is in flight",
)

# Settlement
settlements_total = Counter(
    "settlements_total",
    "Total settlements applied",
    ["status", "method"],  # status: success, failed
)

settlement_duration_seconds = Histogram(
    "settlement_duration_seconds",
    "Time from payment creation to terminal status in seconds",
    buckets=(0.1, 0.5, 1.0, 2.0, 3.0, 4.0, 5.0, 7.5, 10.0, 30.0),
)

settlement_conflicts_total = Counter(
    "settlement_conflicts_total",
    "Settlements skipped because the payment had already transitioned",
)

settlement_exhausted_total = Counter(
    "settlement_exhausted_total",
    "Settlements abandoned after the storage retry budget ran out",
)

stuck_payments = Gauge(
    "stuck_payments",
    "Processing payments older than the maximum settlement window",
)

# Storage
storage_retries_total = Counter(
    "storage_retries_total",
    "Store calls retried after a transient failure",
    ["operation"],
)

# Refunds
refunds_total = Counter(
    "refunds_total",
    "Total refunds completed",
    ["kind"],  # full, partial
)

refund_amount_minor_units = Histogram(
    "refund_amount_minor_units",
    "Refund amounts in minor currency units",
    buckets=(100, 500, 1000, 5000, 10000, 50000, 100000, 500000, 1000000),
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_order_created(currency: str) -> None:
        """Record an order creation."""
        orders_created_total.labels(currency=currency).inc()

    @staticmethod
    def record_payment_created(method: str, amount: int) -> None:
        """Record a payment attempt."""
        payments_created_total.labels(method=method).inc()
        payment_amount_minor_units.observe(amount)

    @staticmethod
    def record_duplicate_payment() -> None:
        """Record a rejected duplicate attempt."""
        duplicate_payments_rejected_total.inc()

    @staticmethod
    def record_settlement(status: str, method: str, duration_seconds: float) -> None:
        """Record a terminal settlement."""
        settlements_total.labels(status=status, method=method).inc()
        settlement_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_settlement_conflict() -> None:
        """Record a settlement that lost the compare-and-swap."""
        settlement_conflicts_total.inc()

    @staticmethod
    def record_settlement_exhausted() -> None:
        """Record an abandoned settlement."""
        settlement_exhausted_total.inc()

    @staticmethod
    def set_stuck_payments(count: int) -> None:
        """Set the stuck payment gauge."""
        stuck_payments.set(count)

    @staticmethod
    def record_storage_retry(operation: str) -> None:
        """Record a retried store call."""
        storage_retries_total.labels(operation=operation).inc()

    @staticmethod
    def record_refund(amount: int, full: bool) -> None:
        """Record a completed refund."""
        refunds_total.labels(kind="full" if full else "partial").inc()
        refund_amount_minor_units.observe(amount)


# Export singleton instance
metrics = MetricsCollector()
