"""Dispatcher - persists a deferred request and places it on its lane."""

import logging
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from backend.app.config import Settings
from backend.app.db.context import OrganizationContext
from backend.app.db.repositories import DeferredRequestRecord, DeferredRequestStore
from backend.app.deferred.errors import EnqueueError
from backend.app.deferred.instrumentation import DeferredLogger, DeferredMetrics
from backend.app.deferred.queue import TaskQueue
from backend.app.deferred.rules import CompiledRule
from backend.app.models.common import DeferredStatus, HttpMethod
from backend.app.models.deferred import DeferredTask
from backend.app.utils.clock import utcnow

logger = logging.getLogger(__name__)


@dataclass
class InboundRequest:
    """The parts of an HTTP request that are persisted for replay."""

    method: str
    path: str
    payload: Any | None = None
    query_params: dict[str, Any] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)


def filter_headers(headers: dict[str, str], allowlist: Iterable[str]) -> dict[str, str]:
    """Keep only allow-listed headers, with lower-case names."""
    allowed = {name.lower() for name in allowlist}
    return {k.lower(): v for k, v in headers.items() if k.lower() in allowed}


class Dispatcher:
    """Creates deferred request records and enqueues their tasks."""

    def __init__(
        self,
        store: DeferredRequestStore,
        queue: TaskQueue,
        settings: Settings,
        *,
        metrics: DeferredMetrics | None = None,
        event_logger: DeferredLogger | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize dispatcher.

        Args:
            store: Deferred request store
            queue: Lane-aware task queue
            settings: Application settings (defaults, header allow-list)
            metrics: Metrics recorder (optional, defaults to no-op)
            event_logger: Structured logger (optional, defaults to no-op)
            clock: Injectable clock returning aware UTC datetimes
        """
        self._store = store
        self._queue = queue
        self._settings = settings
        self._metrics = metrics or DeferredMetrics()
        self._event_logger = event_logger or DeferredLogger()
        self._clock = clock or utcnow

    async def submit(
        self,
        request: InboundRequest,
        rule: CompiledRule,
        ctx: OrganizationContext,
        reason: str = "",
    ) -> DeferredRequestRecord:
        """Persist a pending record and enqueue its task.

        An enqueue failure leaves the record pending for the reconciliation
        sweep; the record is returned either way.

        Raises:
            StoreUnavailableError: If the record cannot be persisted.
        """
        if ctx.user_id is None:
            raise ValueError("Cannot defer a request without a user")

        now = self._clock()
        method = HttpMethod(request.method.upper())
        ttl_seconds = rule.result_ttl_seconds or self._settings.deferred_default_result_ttl_seconds

        record = DeferredRequestRecord(
            request_id=uuid.uuid4(),
            org_id=None if ctx.is_global else ctx.org_id,
            user_id=ctx.user_id,
            http_method=method,
            endpoint=request.path.lstrip("/"),
            payload=None if method == HttpMethod.GET else request.payload,
            query_params=dict(request.query_params),
            headers=filter_headers(request.headers, self._settings.deferred_header_allowlist),
            status=DeferredStatus.pending,
            priority=rule.priority,
            timeout_seconds=rule.timeout_seconds,
            expires_at=now + timedelta(seconds=ttl_seconds),
            created_at=now,
            updated_at=now,
            max_attempts=self._settings.deferred_max_attempts,
            is_superadmin=ctx.is_superadmin,
        )

        await self._store.create(record)
        self._event_logger.log_submitted(
            record.request_id, method.value, record.endpoint, record.priority.value, reason
        )

        await self.enqueue(record)
        return record

    async def enqueue(self, record: DeferredRequestRecord) -> bool:
        """Enqueue a task for the record's next attempt.

        Returns:
            True if the task was queued
        """
        task = DeferredTask(
            request_id=record.request_id,
            org_id=record.org_id,
            user_id=record.user_id,
            priority=record.priority,
            timeout_seconds=record.timeout_seconds,
            expected_attempts=record.attempts,
            is_superadmin=record.is_superadmin,
        )

        try:
            await self._queue.put(task)
        except EnqueueError as e:
            self._metrics.inc_enqueue_failure(record.priority.value)
            logger.error(
                "Failed to enqueue deferred request; left pending for reconciliation",
                extra={
                    "structured": {
                        "request_id": str(record.request_id),
                        "lane": record.priority.value,
                        "error": str(e),
                    }
                },
            )
            return False

        return True
