"""Structured logging for deferred request execution."""

import logging
from typing import Any
from uuid import UUID

logger = logging.getLogger(__name__)

# Outcomes that are not worth a warning
_QUIET_OUTCOMES = ("completed", "skipped", "cancelled")


class StructuredDeferredLogger:
    """Structured logger for deferred request lifecycle events."""

    def log_submitted(
        self, request_id: UUID, method: str, endpoint: str, lane: str, reason: str
    ) -> None:
        """Log a request converted to a deferred request."""
        log_data: dict[str, Any] = {
            "request_id": str(request_id),
            "http_method": method,
            "endpoint": endpoint,
            "lane": lane,
            "reason": reason,
        }
        logger.info(
            f"Deferred request accepted: {method} {endpoint}", extra={"structured": log_data}
        )

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
        log_data: dict[str, Any] = {
            "request_id": str(request_id),
            "attempt": attempt,
            "lane": lane,
            "outcome": outcome,
            "latency_ms": round(latency_ms, 2),
        }

        if error_reason:
            log_data["error_reason"] = error_reason

        log_msg = f"Deferred execution: {request_id} - {outcome}"

        if outcome in _QUIET_OUTCOMES:
            logger.info(log_msg, extra={"structured": log_data})
        else:
            logger.warning(log_msg, extra={"structured": log_data})
