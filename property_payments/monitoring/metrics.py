"""
Prometheus metrics for payment engine monitoring.

Tracks:
- Transaction creations and status transitions
- Gateway API calls, errors and circuit breaker state
- Webhook callbacks
- Refunds
- Per-transaction lock waits
- Verification worker passes
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Transaction metrics
transactions_created_total = Counter(
    "transactions_created_total",
    "Total number of transactions created",
    ["gateway", "currency", "type"],
)

transaction_amount_minor = Histogram(
    "transaction_amount_minor",
    "Transaction amounts in minor units",
    buckets=(10000, 100000, 1000000, 10000000, 100000000, 1000000000, 10000000000),
)

transaction_transitions_total = Counter(
    "transaction_transitions_total",
    "Total status transitions",
    ["from_status", "to_status"],
)

outcomes_discarded_total = Counter(
    "gateway_outcomes_discarded_total",
    "Gateway outcomes ignored because the record was not awaiting one",
    ["gateway", "reason"],
)

# Gateway API metrics
gateway_requests_total = Counter(
    "gateway_requests_total",
    "Total gateway API requests",
    ["gateway", "operation", "status"],
)

gateway_errors_total = Counter(
    "gateway_errors_total",
    "Total gateway errors",
    ["gateway", "error_type"],  # transient, permanent, timeout
)

gateway_request_duration_seconds = Histogram(
    "gateway_request_duration_seconds",
    "Gateway API call duration in seconds",
    ["gateway", "operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

# Circuit breaker metrics
gateway_circuit_breaker_state = Gauge(
    "gateway_circuit_breaker_state",
    "Gateway circuit breaker state (0=closed, 1=open, 2=half_open)",
    ["gateway"],
)

# Webhook metrics
webhook_events_received_total = Counter(
    "webhook_events_received_total",
    "Total webhook events received",
    ["gateway"],
)

webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook events processed",
    ["gateway", "status"],  # applied, ignored, rejected
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["gateway"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Refund metrics
refunds_total = Counter(
    "refunds_total",
    "Total refund attempts",
    ["gateway", "status"],  # refunded, failed
)

# Lock metrics
transaction_lock_acquisitions_total = Counter(
    "transaction_lock_acquisitions_total",
    "Total per-transaction lock acquisitions",
    ["backend", "status"],  # acquired, timeout
)

transaction_lock_wait_seconds = Histogram(
    "transaction_lock_wait_seconds",
    "Time spent waiting for a per-transaction lock",
    ["backend"],
    buckets=(0.001, 0.01, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0),
)

# Reference cache metrics
reference_cache_hits_total = Counter(
    "reference_cache_hits_total",
    "Total reference lookups during creation",
    ["source"],  # redis, database, miss
)

# Verification worker metrics
verification_pass_duration_seconds = Histogram(
    "verification_pass_duration_seconds",
    "Verification worker pass duration in seconds",
    buckets=(1, 5, 10, 30, 60, 120, 300),
)

verification_last_run_timestamp = Gauge(
    "verification_last_run_timestamp",
    "Timestamp of last verification pass",
)

verification_outcomes_total = Counter(
    "verification_outcomes_total",
    "Results of polling processing transactions",
    ["result"],  # completed, failed, undecided, error
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_transaction_created(
        gateway: str, currency: str, transaction_type: str, amount_minor: int
    ) -> None:
        """Record a new transaction."""
        transactions_created_total.labels(
            gateway=gateway, currency=currency, type=transaction_type
        ).inc()
        transaction_amount_minor.observe(amount_minor)

    @staticmethod
    def record_transition(from_status: str, to_status: str) -> None:
        transaction_transitions_total.labels(
            from_status=from_status, to_status=to_status
        ).inc()

    @staticmethod
    def record_outcome_discarded(gateway: str, reason: str) -> None:
        outcomes_discarded_total.labels(gateway=gateway, reason=reason).inc()

    @staticmethod
    def record_gateway_call(
        gateway: str, operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record gateway API call."""
        gateway_requests_total.labels(
            gateway=gateway, operation=operation, status=status
        ).inc()
        gateway_request_duration_seconds.labels(
            gateway=gateway, operation=operation
        ).observe(duration_seconds)

    @staticmethod
    def record_gateway_error(gateway: str, error_type: str) -> None:
        """Record gateway error."""
        gateway_errors_total.labels(gateway=gateway, error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(gateway: str, state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        gateway_circuit_breaker_state.labels(gateway=gateway).set(state_map.get(state, 0))

    @staticmethod
    def record_webhook_event(gateway: str, status: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_received_total.labels(gateway=gateway).inc()
        webhook_events_processed_total.labels(gateway=gateway, status=status).inc()
        webhook_processing_duration_seconds.labels(gateway=gateway).observe(duration_seconds)

    @staticmethod
    def record_refund(gateway: str, status: str) -> None:
        refunds_total.labels(gateway=gateway, status=status).inc()

    @staticmethod
    def record_lock(backend: str, status: str, wait_seconds: float = 0) -> None:
        """Record per-transaction lock acquisition."""
        transaction_lock_acquisitions_total.labels(backend=backend, status=status).inc()
        transaction_lock_wait_seconds.labels(backend=backend).observe(wait_seconds)

    @staticmethod
    def record_reference_lookup(source: str) -> None:
        reference_cache_hits_total.labels(source=source).inc()

    @staticmethod
    def record_verification_result(result: str) -> None:
        verification_outcomes_total.labels(result=result).inc()

    @staticmethod
    def set_verification_pass(duration_seconds: float) -> None:
        """Set verification worker metrics."""
        verification_pass_duration_seconds.observe(duration_seconds)
        verification_last_run_timestamp.set(time.time())


# Export singleton instance
metrics = MetricsCollector()
