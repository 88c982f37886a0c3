"""Maintenance operations: expiry cleanup, reconciliation, lane status."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from backend.app.db.repositories import DeferredRequestStore
from backend.app.deferred.dispatcher import Dispatcher
from backend.app.deferred.errors import StoreUnavailableError
from backend.app.deferred.instrumentation import DeferredMetrics
from backend.app.deferred.queue import TaskQueue
from backend.app.deferred.worker import FailureNotifier, LoggingFailureNotifier
from backend.app.models.common import DeferredStatus, ExecutionErrorCode
from backend.app.utils.clock import utcnow

logger = logging.getLogger(__name__)


@dataclass
class LaneStatus:
    """Snapshot of queued work and stored records."""

    # queue name -> waiting tasks
    lanes: dict[str, int] = field(default_factory=dict)
    statuses: dict[str, int] = field(default_factory=dict)


class DeferredMaintenance:
    """Housekeeping for deferred request records."""

    def __init__(
        self,
        store: DeferredRequestStore,
        dispatcher: Dispatcher,
        queue: TaskQueue,
        *,
        metrics: DeferredMetrics | None = None,
        notifier: FailureNotifier | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._queue = queue
        self._metrics = metrics or DeferredMetrics()
        self._notifier = notifier or LoggingFailureNotifier()
        self._clock = clock or utcnow

    async def cleanup(self, retention_days: int, dry_run: bool = False) -> int:
        """Delete records that expired more than ``retention_days`` ago.

        Records are removed whatever their status; pending or processing
        records removed here are logged as abandoned work.

        Args:
            retention_days: Days to keep records after expires_at
            dry_run: Count matching records without deleting them

        Returns:
            Number of records deleted (or that would be deleted)
        """
        if retention_days < 0:
            raise ValueError("retention_days must not be negative")

        cutoff = self._clock() - timedelta(days=retention_days)

        if dry_run:
            count = await self._store.count_expired(cutoff)
            logger.info(
                "Deferred cleanup dry run",
                extra={"structured": {"cutoff": cutoff.isoformat(), "would_delete": count}},
            )
            return count

        result = await self._store.purge_expired(cutoff)
        for request_id in result.non_terminal_ids:
            logger.warning(
                "Purged deferred request that never finished",
                extra={"structured": {"request_id": str(request_id)}},
            )

        self._metrics.inc_cleanup_deleted(result.deleted)
        logger.info(
            "Deferred cleanup finished",
            extra={"structured": {"cutoff": cutoff.isoformat(), "deleted": result.deleted}},
        )
        return result.deleted

    async def reconcile(self, grace_seconds: int, limit: int = 100) -> int:
        """Re-enqueue work that no worker will finish on its own.

        Pending records that were never picked up are enqueued again.
        Processing records whose attempt outlived its timeout plus the grace
        period belong to a worker that stopped mid-attempt: the attempt is
        failed with JOB_FAILED and the next one is enqueued while attempts
        remain. A late result from the stopped worker is then discarded
        because its attempt is no longer current.

        Duplicate deliveries are harmless: only one can claim the attempt.

        Returns:
            Number of tasks enqueued
        """
        now = self._clock()
        stale = await self._store.list_stale_pending(
            created_before=now - timedelta(seconds=grace_seconds), now=now, limit=limit
        )

        enqueued = 0
        for record in stale:
            if await self._dispatcher.enqueue(record):
                enqueued += 1

        if stale:
            logger.info(
                "Deferred reconciliation re-enqueued pending requests",
                extra={"structured": {"found": len(stale), "enqueued": enqueued}},
            )
        return enqueued + await self._recover_stalled(now, grace_seconds, limit)

    async def _recover_stalled(self, now: datetime, grace_seconds: int, limit: int) -> int:
        candidates = await self._store.list_stale_processing(
            started_before=now - timedelta(seconds=grace_seconds), limit=limit
        )

        recovered = 0
        enqueued = 0
        for record in candidates:
            started_at = record.started_at or record.updated_at
            deadline = started_at + timedelta(
                seconds=record.timeout_seconds + grace_seconds
            )
            if deadline >= now:
                continue

            failed = await self._store.fail(
                record.request_id,
                record.attempts,
                error_code=ExecutionErrorCode.JOB_FAILED,
                error_message="Worker stopped before recording a result",
                now=now,
            )
            if not failed:
                continue
            recovered += 1

            current = await self._store.get(record.request_id)
            if current is None:
                continue
            if current.attempts < current.max_attempts:
                if await self._dispatcher.enqueue(current):
                    enqueued += 1
            else:
                await self._notifier.notify_exhausted(current)

        if recovered:
            logger.warning(
                "Deferred reconciliation recovered stalled attempts",
                extra={"structured": {"recovered": recovered, "enqueued": enqueued}},
            )
        return enqueued

    async def lane_status(self) -> LaneStatus:
        """Waiting tasks per lane and records per status."""
        status = LaneStatus()
        for lane, name in self._queue.lanes.items():
            status.lanes[name] = await self._queue.depth(lane)

        counts = await self._store.count_by_status()
        status.statuses = {s.value: counts.get(s, 0) for s in DeferredStatus}
        return status


class MaintenanceLoop:
    """Runs cleanup and reconciliation on a fixed interval."""

    def __init__(
        self,
        maintenance: DeferredMaintenance,
        *,
        interval_seconds: float,
        retention_days: int,
        grace_seconds: int,
        sleep_fn: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._maintenance = maintenance
        self._interval_seconds = interval_seconds
        self._retention_days = retention_days
        self._grace_seconds = grace_seconds
        self._sleep = sleep_fn or asyncio.sleep
        self._task: asyncio.Task[None] | None = None

    async def run_once(self) -> None:
        """One cleanup pass followed by one reconciliation pass."""
        await self._maintenance.cleanup(self._retention_days)
        await self._maintenance.reconcile(self._grace_seconds)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="deferred-maintenance")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None

    async def _run(self) -> None:
        while True:
            await self._sleep(self._interval_seconds)
            try:
                await self.run_once()
            except StoreUnavailableError:
                logger.exception("Deferred maintenance skipped: store unavailable")
