"""
Prometheus metrics for ride payment monitoring.

Tracks:
- Provider API calls, durations and errors
- Ledger state transitions
- Capture attempts and queue depth
- Refunds, cancellations and earnings postings
- Outbox publishing
"""
from prometheus_client import Counter, Gauge, Histogram

# Provider API metrics
provider_api_requests_total = Counter(
    "provider_api_requests_total",
    "Total payment provider API requests",
    ["operation", "status"],  # status: success, error, timeout
)

provider_api_errors_total = Counter(
    "provider_api_errors_total",
    "Total payment provider API errors",
    ["error_type"],  # transient, terminal, rate_limit
)

provider_api_duration_seconds = Histogram(
    "provider_api_duration_seconds",
    "Payment provider API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

provider_circuit_breaker_state = Gauge(
    "provider_circuit_breaker_state",
    "Provider circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Ledger metrics
payment_transitions_total = Counter(
    "payment_transitions_total",
    "Total payment intent state transitions",
    ["from_status", "to_status"],
)

payment_amount_cents = Histogram(
    "payment_amount_cents",
    "Authorized payment amounts in cents",
    buckets=(500, 1000, 2000, 3000, 5000, 7500, 10000, 20000, 50000),
)

# Capture metrics
capture_attempts_total = Counter(
    "capture_attempts_total",
    "Total capture attempts by outcome",
    ["outcome"],  # succeeded, retried, failed, skipped
)

capture_queue_depth = Gauge(
    "capture_queue_depth",
    "Capture queue items by status",
    ["status"],
)

capture_tick_duration_seconds = Histogram(
    "capture_tick_duration_seconds",
    "Capture worker tick duration in seconds",
    buckets=(0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
)

# Refund / cancellation metrics
refunds_total = Counter(
    "refunds_total",
    "Total refunds by outcome",
    ["status"],
)

refund_amount_cents = Histogram(
    "refund_amount_cents",
    "Refund amounts in cents",
    buckets=(100, 500, 1000, 2000, 5000, 10000, 50000),
)

cancellations_total = Counter(
    "cancellations_total",
    "Total cancellations processed",
    ["actor_role", "refund_percentage"],
)

# Earnings metrics
earnings_posted_total = Counter(
    "earnings_posted_total",
    "Total earnings records posted",
    ["result"],  # created, duplicate
)

earnings_adjustments_total = Counter(
    "earnings_adjustments_total",
    "Total earnings reversal adjustments",
)

# Outbox metrics
outbox_events_published_total = Counter(
    "outbox_events_published_total",
    "Total outbox events published",
    ["event_type"],
)

outbox_queue_depth = Gauge(
    "outbox_queue_depth",
    "Number of unpublished events in outbox",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_provider_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record a provider API call."""
        provider_api_requests_total.labels(operation=operation, status=status).inc()
        provider_api_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_provider_error(error_type: str) -> None:
        """Record a classified provider error."""
        provider_api_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        provider_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_transition(from_status: str, to_status: str) -> None:
        payment_transitions_total.labels(from_status=from_status, to_status=to_status).inc()

    @staticmethod
    def record_authorization(amount_cents: int) -> None:
        payment_amount_cents.observe(amount_cents)

    @staticmethod
    def record_capture_attempt(outcome: str) -> None:
        capture_attempts_total.labels(outcome=outcome).inc()

    @staticmethod
    def set_capture_queue_depth(depth_by_status: dict[str, int]) -> None:
        for status, depth in depth_by_status.items():
            capture_queue_depth.labels(status=status).set(depth)

    @staticmethod
    def record_capture_tick(duration_seconds: float) -> None:
        capture_tick_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_refund(status: str, amount_cents: int) -> None:
        refunds_total.labels(status=status).inc()
        if status == "succeeded":
            refund_amount_cents.observe(amount_cents)

    @staticmethod
    def record_cancellation(actor_role: str, refund_percentage: int) -> None:
        cancellations_total.labels(
            actor_role=actor_role, refund_percentage=str(refund_percentage)
        ).inc()

    @staticmethod
    def record_earnings_posted(result: str) -> None:
        earnings_posted_total.labels(result=result).inc()

    @staticmethod
    def record_earnings_adjustment() -> None:
        earnings_adjustments_total.inc()

    @staticmethod
    def set_outbox_queue_depth(depth: int) -> None:
        """Set outbox queue depth."""
        outbox_queue_depth.set(depth)

    @staticmethod
    def record_outbox_event_published(event_type: str) -> None:
        """Record outbox event published."""
        outbox_events_published_total.labels(event_type=event_type).inc()


# Export singleton instance
metrics = MetricsCollector()
