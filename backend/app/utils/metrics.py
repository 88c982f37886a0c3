"""Prometheus metrics for the deferred request engine."""

from prometheus_client import Counter, Histogram

deferred_decisions_total = Counter(
    "deferred_decisions_total",
    "Deferral decisions taken by the middleware",
    ["outcome", "reason"],
)

deferred_enqueue_failures_total = Counter(
    "deferred_enqueue_failures_total",
    "Deferred tasks that could not be queued",
    ["lane"],
)

deferred_execution_latency_ms = Histogram(
    "deferred_execution_latency_ms",
    "Deferred request execution latency in milliseconds",
    ["lane", "outcome"],
    buckets=[50, 100, 250, 500, 1000, 2500, 5000, 15000, 60000, 300000],
)

deferred_executions_total = Counter(
    "deferred_executions_total",
    "Deferred request execution attempts",
    ["lane", "outcome"],
)

deferred_cleanup_deleted_total = Counter(
    "deferred_cleanup_deleted_total",
    "Deferred requests removed by the cleanup sweep",
)


class PrometheusDeferredMetrics:
    """Prometheus-based deferred request metrics implementation."""

    def inc_decision(self, outcome: str, reason: str) -> None:
        """Count a deferral decision."""
        deferred_decisions_total.labels(outcome=outcome, reason=reason).inc()

    def inc_enqueue_failure(self, lane: str) -> None:
        """Count a task that could not be queued."""
        deferred_enqueue_failures_total.labels(lane=lane).inc()

    def record_execution(self, lane: str, outcome: str, latency_ms: float) -> None:
        """Record one execution attempt."""
        deferred_executions_total.labels(lane=lane, outcome=outcome).inc()
        deferred_execution_latency_ms.labels(lane=lane, outcome=outcome).observe(latency_ms)

    def inc_cleanup_deleted(self, count: int) -> None:
        """Count records removed by the cleanup sweep."""
        if count > 0:
            deferred_cleanup_deleted_total.inc(count)
