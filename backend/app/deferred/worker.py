"""Deferred request worker and lane consumer pool.

The worker executes one delivery of a task: it claims the record with a
compare-and-set, replays the stored request under a hard timeout and
records the outcome with another compare-and-set bound to the same attempt
number. A delivery that loses either race changes nothing.

The pool runs dedicated consumers per lane, schedules automatic retries
with backoff, and keeps a registry of in-flight executions so that a
cancelled request can be abandoned in this process.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Protocol
from uuid import UUID

from backend.app.db.context import OrganizationContext
from backend.app.db.repositories import DeferredRequestRecord, DeferredRequestStore
from backend.app.deferred.errors import EnqueueError, StoreUnavailableError
from backend.app.deferred.instrumentation import DeferredLogger, DeferredMetrics
from backend.app.deferred.queue import TaskQueue
from backend.app.deferred.replay import Replayer
from backend.app.models.common import ExecutionErrorCode, Priority
from backend.app.models.deferred import DeferredTask
from backend.app.utils.clock import utcnow

logger = logging.getLogger(__name__)


class AttemptStatus(str, Enum):
    """What happened to one delivery."""

    completed = "completed"
    failed = "failed"
    skipped = "skipped"  # duplicate or stale delivery
    discarded = "discarded"  # result arrived after the record left processing
    cancelled = "cancelled"  # abandoned in flight


@dataclass
class AttemptOutcome:
    """Result of processing one delivery."""

    task: DeferredTask
    status: AttemptStatus
    attempt: int = 0
    max_attempts: int = 0
    error_code: ExecutionErrorCode | None = None

    @property
    def can_retry(self) -> bool:
        return self.status == AttemptStatus.failed and self.attempt < self.max_attempts

    @property
    def exhausted(self) -> bool:
        return self.status == AttemptStatus.failed and self.attempt >= self.max_attempts


class FailureNotifier(Protocol):
    """Alerting hook for requests that ran out of attempts."""

    async def notify_exhausted(self, record: DeferredRequestRecord) -> None:
        ...


class LoggingFailureNotifier:
    """Reports exhausted requests to the error log for superadmin alerting."""

    def __init__(self, enabled: bool = True) -> None:
        self._enabled = enabled

    async def notify_exhausted(self, record: DeferredRequestRecord) -> None:
        if not self._enabled:
            return

        logger.error(
            "Deferred request failed permanently",
            extra={
                "structured": {
                    "request_id": str(record.request_id),
                    "user_id": str(record.user_id),
                    "org_id": str(record.org_id) if record.org_id else None,
                    "http_method": record.http_method.value,
                    "endpoint": record.endpoint,
                    "attempts": record.attempts,
                    "error_code": record.error_code,
                    "error_message": record.error_message,
                    "notify": "superadmins",
                }
            },
        )


class DeferredWorker:
    """Executes deferred tasks."""

    def __init__(
        self,
        store: DeferredRequestStore,
        replayer: Replayer,
        *,
        metrics: DeferredMetrics | None = None,
        event_logger: DeferredLogger | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize worker.

        Args:
            store: Deferred request store
            replayer: Executes the stored request
            metrics: Metrics recorder (optional, defaults to no-op)
            event_logger: Structured logger (optional, defaults to no-op)
            clock: Injectable clock returning aware UTC datetimes
        """
        self._store = store
        self._replayer = replayer
        self._metrics = metrics or DeferredMetrics()
        self._event_logger = event_logger or DeferredLogger()
        self._clock = clock or utcnow

    async def process(self, task: DeferredTask) -> AttemptOutcome:
        """Process one delivery of a task.

        Raises:
            StoreUnavailableError: If the store cannot be reached.
            asyncio.CancelledError: If the execution is abandoned.
        """
        start_time = time.monotonic()
        lane = task.priority.value

        record = await self._store.begin_attempt(
            task.request_id, task.expected_attempts, self._clock()
        )
        if record is None:
            logger.debug(
                "Ignoring deferred delivery",
                extra={
                    "structured": {
                        "request_id": str(task.request_id),
                        "expected_attempts": task.expected_attempts,
                    }
                },
            )
            return AttemptOutcome(task=task, status=AttemptStatus.skipped)

        attempt = record.attempts
        outcome = AttemptOutcome(
            task=task,
            status=AttemptStatus.failed,
            attempt=attempt,
            max_attempts=record.max_attempts,
        )

        try:
            outcome.status, outcome.error_code, error_reason = await self._execute(record, task)
        except asyncio.CancelledError:
            elapsed_ms = (time.monotonic() - start_time) * 1000
            self._metrics.record_execution(lane, AttemptStatus.cancelled.value, elapsed_ms)
            raise
        except StoreUnavailableError:
            raise
        except Exception as e:
            logger.exception(
                "Deferred worker crashed",
                extra={"structured": {"request_id": str(task.request_id), "attempt": attempt}},
            )
            recorded = await self._store.fail(
                task.request_id,
                attempt,
                error_code=ExecutionErrorCode.JOB_FAILED,
                error_message=f"{type(e).__name__}: {e}",
                now=self._clock(),
            )
            outcome.status = AttemptStatus.failed if recorded else AttemptStatus.discarded
            outcome.error_code = ExecutionErrorCode.JOB_FAILED
            error_reason = type(e).__name__

        elapsed_ms = (time.monotonic() - start_time) * 1000
        self._metrics.record_execution(lane, outcome.status.value, elapsed_ms)
        self._event_logger.log_attempt(
            task.request_id, attempt, lane, outcome.status.value, elapsed_ms, error_reason
        )
        return outcome

    async def _execute(
        self, record: DeferredRequestRecord, task: DeferredTask
    ) -> tuple[AttemptStatus, ExecutionErrorCode | None, str | None]:
        attempt = record.attempts
        ctx = OrganizationContext.for_task(task.org_id, task.user_id, task.is_superadmin)

        try:
            response = await asyncio.wait_for(
                self._replayer.replay(record, ctx), timeout=task.timeout_seconds
            )
        except TimeoutError:
            return await self._fail(
                record,
                attempt,
                ExecutionErrorCode.TIMEOUT,
                f"Execution exceeded {task.timeout_seconds}s timeout",
            )
        except StoreUnavailableError:
            raise
        except Exception as e:
            return await self._fail(
                record, attempt, ExecutionErrorCode.EXECUTION_ERROR, f"{type(e).__name__}: {e}"
            )

        if response.status_code >= 500:
            return await self._fail(
                record,
                attempt,
                ExecutionErrorCode.EXECUTION_ERROR,
                f"Replayed request returned HTTP {response.status_code}",
            )

        recorded = await self._store.complete(
            record.request_id,
            attempt,
            result=response.body,
            status_code=response.status_code,
            now=self._clock(),
        )
        if not recorded:
            return AttemptStatus.discarded, None, "late_result"
        return AttemptStatus.completed, None, None

    async def _fail(
        self,
        record: DeferredRequestRecord,
        attempt: int,
        code: ExecutionErrorCode,
        message: str,
    ) -> tuple[AttemptStatus, ExecutionErrorCode | None, str | None]:
        recorded = await self._store.fail(
            record.request_id, attempt, error_code=code, error_message=message, now=self._clock()
        )
        if not recorded:
            return AttemptStatus.discarded, code, "late_result"
        return AttemptStatus.failed, code, code.value


class WorkerPool:
    """Lane consumers with retry scheduling and in-flight cancellation."""

    def __init__(
        self,
        worker: DeferredWorker,
        queue: TaskQueue,
        store: DeferredRequestStore,
        *,
        concurrency: dict[str, int] | None = None,
        retry_backoff_seconds: list[float] | None = None,
        notifier: FailureNotifier | None = None,
        sleep_fn: Callable[[float], Awaitable[None]] | None = None,
        poll_timeout: float = 1.0,
    ) -> None:
        """Initialize pool.

        Args:
            worker: Executes one delivery
            queue: Lane-aware task queue
            store: Deferred request store (read for failure notifications)
            concurrency: Consumers per lane name (high/default/low)
            retry_backoff_seconds: Delay before attempt n+1, indexed by n-1;
                the last value repeats
            notifier: Called when a request runs out of attempts
            sleep_fn: Injectable sleep function (default: asyncio.sleep)
            poll_timeout: Seconds a consumer blocks on an empty lane
        """
        self._worker = worker
        self._queue = queue
        self._store = store
        self._concurrency = concurrency or {"high": 2, "default": 2, "low": 1}
        self._backoff = retry_backoff_seconds or [0.0]
        self._notifier = notifier or LoggingFailureNotifier()
        self._sleep = sleep_fn or asyncio.sleep
        self._poll_timeout = poll_timeout

        self._consumers: list[asyncio.Task[None]] = []
        self._in_flight: dict[UUID, asyncio.Task[AttemptOutcome]] = {}
        self._retries: set[asyncio.Task[None]] = set()
        self._running = False
        self._failure: BaseException | None = None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def in_flight(self) -> list[UUID]:
        return list(self._in_flight)

    @property
    def failure(self) -> BaseException | None:
        """Error that stopped a consumer, if any."""
        return self._failure

    async def start(self, lanes: list[Priority] | None = None) -> None:
        """Start the lane consumers (all lanes unless given)."""
        if self._running:
            return

        self._running = True
        self._failure = None
        for lane in lanes or self._queue.lanes.lanes:
            for index in range(max(0, self._concurrency.get(lane.value, 1))):
                consumer = asyncio.create_task(
                    self._consume(lane), name=f"deferred-{lane.value}-{index}"
                )
                consumer.add_done_callback(self._on_consumer_done)
                self._consumers.append(consumer)

        logger.info(
            "Deferred worker pool started",
            extra={"structured": {"consumers": len(self._consumers), "lanes": self._concurrency}},
        )

    async def stop(self) -> None:
        """Stop consumers and pending retry timers."""
        self._running = False
        pending = [*self._consumers, *self._retries]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._consumers.clear()
        self._retries.clear()
        logger.info("Deferred worker pool stopped")

    async def wait(self) -> None:
        """Block until the consumers exit.

        Raises:
            StoreUnavailableError: If a consumer stopped because the store
                could not be reached.
        """
        await asyncio.gather(*self._consumers, return_exceptions=True)
        if self._failure is not None:
            raise self._failure

    def abandon(self, request_id: UUID) -> bool:
        """Cancel the in-flight execution of a request in this process.

        Returns:
            True if an execution was running here
        """
        execution = self._in_flight.get(request_id)
        if execution is None or execution.done():
            return False
        execution.cancel()
        return True

    async def run_task(self, task: DeferredTask) -> AttemptOutcome:
        """Process one delivery and apply the retry policy.

        Raises:
            StoreUnavailableError: If the store cannot be reached.
        """
        execution = asyncio.ensure_future(self._worker.process(task))
        self._in_flight[task.request_id] = execution
        try:
            outcome = await execution
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if execution.cancelled() and (current is None or current.cancelling() == 0):
                logger.info(
                    "Abandoned cancelled deferred request",
                    extra={"structured": {"request_id": str(task.request_id)}},
                )
                return AttemptOutcome(task=task, status=AttemptStatus.cancelled)
            raise
        finally:
            if self._in_flight.get(task.request_id) is execution:
                del self._in_flight[task.request_id]

        if outcome.can_retry:
            self._schedule_retry(task, outcome.attempt)
        elif outcome.exhausted:
            record = await self._store.get(task.request_id)
            if record is not None:
                await self._notifier.notify_exhausted(record)

        return outcome

    async def drain(self, timeout: float = 30.0) -> None:
        """Run until every lane is empty and nothing is in flight.

        When consumers are not running, queued tasks are processed inline.
        """
        await asyncio.wait_for(self._drain(), timeout=timeout)

    async def _drain(self) -> None:
        idle_checks = 0
        while idle_checks < 2:
            if self._retries:
                await asyncio.gather(*list(self._retries), return_exceptions=True)

            processed = False
            if not self._running:
                processed = await self._process_available()

            if not processed and await self._is_idle():
                idle_checks += 1
            else:
                idle_checks = 0
            await asyncio.sleep(0.01)

    async def _process_available(self) -> bool:
        processed = False
        for lane in self._queue.lanes.lanes:
            while await self._queue.depth(lane) > 0:
                task = await self._queue.get(lane, timeout=self._poll_timeout)
                if task is None:
                    break
                await self.run_task(task)
                processed = True
        return processed

    async def _is_idle(self) -> bool:
        if self._in_flight or self._retries:
            return False
        for lane in self._queue.lanes.lanes:
            if await self._queue.depth(lane) > 0:
                return False
        return True

    async def _consume(self, lane: Priority) -> None:
        while self._running:
            task = await self._queue.get(lane, timeout=self._poll_timeout)
            if task is None:
                continue

            try:
                await self.run_task(task)
            except StoreUnavailableError:
                logger.critical(
                    "Deferred store unavailable; stopping consumer",
                    extra={"structured": {"lane": lane.value, "request_id": str(task.request_id)}},
                )
                raise

    def _on_consumer_done(self, consumer: asyncio.Task[None]) -> None:
        if consumer.cancelled() or consumer.exception() is None:
            return
        # One dead consumer stops the pool; the remaining consumers finish their
        # current task and exit
        if self._failure is None:
            self._failure = consumer.exception()
        self._running = False

    def _schedule_retry(self, task: DeferredTask, attempt: int) -> None:
        delay = self._backoff[min(attempt - 1, len(self._backoff) - 1)]
        retry = task.model_copy(update={"expected_attempts": attempt})
        timer = asyncio.create_task(self._requeue_after(retry, delay))
        self._retries.add(timer)
        timer.add_done_callback(self._retries.discard)

    async def _requeue_after(self, task: DeferredTask, delay: float) -> None:
        if delay > 0:
            await self._sleep(delay)
        try:
            await self._queue.put(task)
        except EnqueueError as e:
            # Record stays failed with attempts left; the retry endpoint can resume it
            logger.error(
                "Failed to requeue deferred retry",
                extra={"structured": {"request_id": str(task.request_id), "error": str(e)}},
            )
        else:
            logger.info(
                "Deferred request requeued for retry",
                extra={
                    "structured": {
                        "request_id": str(task.request_id),
                        "next_attempt": task.expected_attempts + 1,
                        "delay_seconds": delay,
                    }
                },
            )
