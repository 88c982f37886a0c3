"""Deferred request service layer and component wiring."""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncEngine
from starlette.types import ASGIApp

from backend.app.config import Settings
from backend.app.db.context import OrganizationContext
from backend.app.db.engine import create_async_engine_from_settings, create_session_factory
from backend.app.db.inmemory import InMemoryDeferredRequestStore, InMemoryEndpointRuleRepository
from backend.app.db.models import Base
from backend.app.db.repositories import (
    DeferredRequestRecord,
    DeferredRequestStore,
    EndpointRuleRepository,
)
from backend.app.db.sql_repositories import SqlDeferredRequestStore, SqlEndpointRuleRepository
from backend.app.deferred.dispatcher import Dispatcher
from backend.app.deferred.errors import (
    DeferredRequestForbiddenError,
    DeferredRequestNotFoundError,
    InvalidTransitionError,
)
from backend.app.deferred.instrumentation import DeferredMetrics
from backend.app.deferred.maintenance import DeferredMaintenance, MaintenanceLoop
from backend.app.deferred.queue import TaskQueue, build_task_queue
from backend.app.deferred.replay import AsgiReplayer, Replayer
from backend.app.deferred.rules import RuleCache, load_static_rules
from backend.app.deferred.worker import DeferredWorker, LoggingFailureNotifier, WorkerPool
from backend.app.models.common import DeferredStatus
from backend.app.utils.clock import utcnow
from backend.app.utils.logging import StructuredDeferredLogger
from backend.app.utils.metrics import PrometheusDeferredMetrics

logger = logging.getLogger(__name__)

CANNOT_CANCEL = "CANNOT_CANCEL"
CANNOT_RETRY = "CANNOT_RETRY"


def can_access(record: DeferredRequestRecord, ctx: OrganizationContext) -> bool:
    """Superadmins see every request; other users only their own."""
    return ctx.is_superadmin or (ctx.user_id is not None and record.user_id == ctx.user_id)


class DeferredRequestService:
    """Polling and management operations on deferred requests."""

    def __init__(
        self,
        store: DeferredRequestStore,
        dispatcher: Dispatcher,
        pool: WorkerPool | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._pool = pool
        self._clock = clock or utcnow

    async def get_for(self, request_id: UUID, ctx: OrganizationContext) -> DeferredRequestRecord:
        """Fetch a record the caller may see.

        Raises:
            DeferredRequestNotFoundError: If no such record exists.
            DeferredRequestForbiddenError: If the caller is not the owner or a superadmin.
        """
        record = await self._store.get(request_id)
        if record is None:
            raise DeferredRequestNotFoundError(request_id)
        if not can_access(record, ctx):
            raise DeferredRequestForbiddenError(request_id)
        return record

    async def list_for(
        self,
        ctx: OrganizationContext,
        *,
        statuses: list[DeferredStatus] | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[DeferredRequestRecord]:
        """List the caller's own records, newest first."""
        if ctx.user_id is None:
            return []
        return await self._store.list_for_user(
            ctx.user_id, statuses=statuses, limit=limit, offset=offset
        )

    async def cancel(self, request_id: UUID, ctx: OrganizationContext) -> DeferredRequestRecord:
        """Cancel a pending or processing request.

        Raises:
            InvalidTransitionError: If the request already finished.
        """
        record = await self.get_for(request_id, ctx)

        cancelled = await self._store.cancel(request_id, self._clock())
        if cancelled is None:
            current = await self._store.get(request_id) or record
            raise InvalidTransitionError(
                CANNOT_CANCEL, f"Cannot cancel a request with status '{current.status.value}'"
            )

        if self._pool is not None and self._pool.abandon(request_id):
            logger.info(
                "Abandoning in-flight deferred execution",
                extra={"structured": {"request_id": str(request_id)}},
            )

        logger.info(
            "Deferred request cancelled",
            extra={
                "structured": {
                    "request_id": str(request_id),
                    "previous_status": record.status.value,
                    "user_id": str(ctx.user_id),
                }
            },
        )
        return cancelled

    async def retry(self, request_id: UUID, ctx: OrganizationContext) -> DeferredRequestRecord:
        """Put a failed request with attempts left back on its lane.

        Raises:
            InvalidTransitionError: If the request is not failed or has no attempts left.
        """
        record = await self.get_for(request_id, ctx)

        reset = await self._store.reset_for_retry(request_id, self._clock())
        if reset is None:
            if record.status == DeferredStatus.failed:
                detail = f"No attempts left ({record.attempts}/{record.max_attempts})"
            else:
                detail = f"Only failed requests can be retried (status '{record.status.value}')"
            raise InvalidTransitionError(CANNOT_RETRY, detail)

        await self._dispatcher.enqueue(reset)
        logger.info(
            "Deferred request queued for manual retry",
            extra={"structured": {"request_id": str(request_id), "attempts": reset.attempts}},
        )
        return reset

    async def report_progress(
        self, request_id: UUID, progress: int, message: str | None = None
    ) -> bool:
        """Record progress for a processing request; progress is clamped to 0-100."""
        clamped = max(0, min(100, int(progress)))
        return await self._store.update_progress(request_id, clamped, message, self._clock())


@dataclass
class DeferredServices:
    """Components of the deferred request engine for one application."""

    settings: Settings
    store: DeferredRequestStore
    rule_repository: EndpointRuleRepository
    rule_cache: RuleCache
    queue: TaskQueue
    dispatcher: Dispatcher
    worker: DeferredWorker
    pool: WorkerPool
    maintenance: DeferredMaintenance
    maintenance_loop: MaintenanceLoop
    requests: DeferredRequestService
    metrics: DeferredMetrics = field(default_factory=DeferredMetrics)
    engine: AsyncEngine | None = None

    async def create_schema(self) -> None:
        """Create tables directly (SQL backend, tests and local development)."""
        if self.engine is None:
            return
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        await self.pool.stop()
        await self.maintenance_loop.stop()
        await self.queue.close()
        if self.engine is not None:
            await self.engine.dispose()


def build_deferred_services(
    settings: Settings,
    app: ASGIApp | None = None,
    *,
    replayer: Replayer | None = None,
    store: DeferredRequestStore | None = None,
    rule_repository: EndpointRuleRepository | None = None,
    queue: TaskQueue | None = None,
    clock: Callable[[], datetime] | None = None,
) -> DeferredServices:
    """Wire the deferred request engine from settings.

    Static rules are compiled here so that a malformed configured pattern
    stops the application at startup.

    Raises:
        InvalidEndpointPatternError: If a configured pattern is malformed.
    """
    if replayer is None:
        if app is None:
            raise ValueError("Either app or replayer is required")
        replayer = AsgiReplayer(app)

    engine: AsyncEngine | None = None
    if store is None or rule_repository is None:
        if settings.deferred_store_backend == "sql":
            engine = create_async_engine_from_settings(settings)
            session_factory = create_session_factory(engine)
            store = store or SqlDeferredRequestStore(session_factory)
            rule_repository = rule_repository or SqlEndpointRuleRepository(session_factory)
        else:
            store = store or InMemoryDeferredRequestStore()
            rule_repository = rule_repository or InMemoryEndpointRuleRepository()

    metrics = PrometheusDeferredMetrics()
    event_logger = StructuredDeferredLogger()
    queue = queue or build_task_queue(settings)

    rule_cache = RuleCache(
        rule_repository,
        load_static_rules(settings),
        ttl_seconds=settings.deferred_rule_cache_ttl_seconds,
    )
    dispatcher = Dispatcher(
        store, queue, settings, metrics=metrics, event_logger=event_logger, clock=clock
    )
    worker = DeferredWorker(
        store, replayer, metrics=metrics, event_logger=event_logger, clock=clock
    )
    notifier = LoggingFailureNotifier(settings.deferred_notify_superadmins_on_failure)
    pool = WorkerPool(
        worker,
        queue,
        store,
        concurrency=settings.deferred_lane_concurrency,
        retry_backoff_seconds=settings.deferred_retry_backoff_seconds,
        notifier=notifier,
    )
    maintenance = DeferredMaintenance(
        store, dispatcher, queue, metrics=metrics, notifier=notifier, clock=clock
    )
    maintenance_loop = MaintenanceLoop(
        maintenance,
        interval_seconds=settings.deferred_maintenance_interval_seconds,
        retention_days=settings.deferred_cleanup_retention_days,
        grace_seconds=settings.deferred_reconcile_grace_seconds,
    )

    return DeferredServices(
        settings=settings,
        store=store,
        rule_repository=rule_repository,
        rule_cache=rule_cache,
        queue=queue,
        dispatcher=dispatcher,
        worker=worker,
        pool=pool,
        maintenance=maintenance,
        maintenance_loop=maintenance_loop,
        requests=DeferredRequestService(store, dispatcher, pool, clock),
        metrics=metrics,
        engine=engine,
    )
