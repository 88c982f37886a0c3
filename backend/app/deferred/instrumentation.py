"""Metrics and logging interfaces for the deferred request engine.

Both default to no-ops; the Prometheus and structured-logging
implementations live in ``backend.app.utils``.
"""

from uuid import UUID


class DeferredMetrics:
    """Interface for deferred request metrics."""

    def inc_decision(self, outcome: str, reason: str) -> None:
        """Count a deferral decision."""
        pass

    def inc_enqueue_failure(self, lane: str) -> None:
        """Count a task that could not be queued."""
        pass

    def record_execution(self, lane: str, outcome: str, latency_ms: float) -> None:
        """Record one execution attempt."""
        pass

    def inc_cleanup_deleted(self, count: int) -> None:
        """Count records removed by the cleanup sweep."""
        pass


class DeferredLogger:
    """Interface for structured deferred request logging."""

    def log_submitted(
        self, request_id: UUID, method: str, endpoint: str, lane: str, reason: str
    ) -> None:
        """Log a request converted to a deferred request."""
        pass

    def log_attempt(
        self,
        request_id: UUID,
        attempt: int,
        lane: str,
        outcome: str,
        latency_ms: float,
        error_reason: str | None = None,
    ) -> None:
        """Log the outcome of one execution attempt."""
        pass
