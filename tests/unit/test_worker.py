"""Unit tests for the deferred worker and lane consumer pool."""

import asyncio
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Any
from unittest.mock import AsyncMock

import pytest

from backend.app.db.context import OrganizationContext
from backend.app.db.inmemory import InMemoryDeferredRequestStore
from backend.app.db.repositories import DeferredRequestRecord
from backend.app.deferred.errors import StoreUnavailableError
from backend.app.deferred.queue import InMemoryTaskQueue
from backend.app.deferred.replay import ReplayResponse
from backend.app.deferred.worker import AttemptStatus, DeferredWorker, WorkerPool
from backend.app.models.common import DeferredStatus, ExecutionErrorCode
from backend.app.models.deferred import DeferredTask
from backend.app.utils.clock import utcnow

RecordFactory = Callable[..., DeferredRequestRecord]


def _task(record: DeferredRequestRecord, **overrides: Any) -> DeferredTask:
    fields: dict[str, Any] = {
        "request_id": record.request_id,
        "org_id": record.org_id,
        "user_id": record.user_id,
        "priority": record.priority,
        "timeout_seconds": record.timeout_seconds,
        "expected_attempts": record.attempts,
    }
    fields.update(overrides)
    return DeferredTask(**fields)


async def _stored(
    store: InMemoryDeferredRequestStore, request_id: uuid.UUID
) -> DeferredRequestRecord:
    record = await store.get(request_id)
    assert record is not None
    return record


class CancellingReplayer:
    """Cancels the record while the replay is in progress."""

    def __init__(self, store: InMemoryDeferredRequestStore) -> None:
        self.store = store

    async def replay(
        self, record: DeferredRequestRecord, ctx: OrganizationContext
    ) -> ReplayResponse:
        await self.store.cancel(record.request_id, utcnow())
        return ReplayResponse(status_code=200, body={"late": True})


class BrokenStore(InMemoryDeferredRequestStore):
    """Store whose completion write raises an unexpected error."""

    async def complete(
        self,
        request_id: uuid.UUID,
        attempt: int,
        *,
        result: Any,
        status_code: int,
        now: datetime,
    ) -> bool:
        raise RuntimeError("serializer exploded")


class UnreachableStore(InMemoryDeferredRequestStore):
    """Store whose claim fails as if the database went away."""

    async def begin_attempt(
        self, request_id: uuid.UUID, expected_attempts: int, now: datetime
    ) -> DeferredRequestRecord | None:
        raise StoreUnavailableError("connection refused")


@pytest.mark.asyncio
async def test_successful_execution_completes_record(
    make_record: RecordFactory, replayer: Any
) -> None:
    store = InMemoryDeferredRequestStore()
    record = make_record()
    await store.create(record)
    replayer.status_code = 201
    replayer.body = {"report_id": "r-1"}

    outcome = await DeferredWorker(store, replayer).process(_task(record))

    assert outcome.status == AttemptStatus.completed
    stored = await _stored(store, record.request_id)
    assert stored.status == DeferredStatus.completed
    assert stored.result == {"report_id": "r-1"}
    assert stored.result_status_code == 201
    assert stored.attempts == 1


@pytest.mark.asyncio
async def test_replay_runs_under_the_captured_context(
    make_record: RecordFactory, replayer: Any, org_id: uuid.UUID, user_id: uuid.UUID
) -> None:
    store = InMemoryDeferredRequestStore()
    record = make_record()
    await store.create(record)

    await DeferredWorker(store, replayer).process(_task(record))

    _, ctx = replayer.calls[0]
    assert ctx.org_id == org_id
    assert ctx.user_id == user_id
    assert not ctx.is_global


@pytest.mark.asyncio
async def test_client_errors_are_completed_results(
    make_record: RecordFactory, replayer: Any
) -> None:
    store = InMemoryDeferredRequestStore()
    record = make_record()
    await store.create(record)
    replayer.status_code = 422
    replayer.body = {"errors": [{"detail": "bad input"}]}

    outcome = await DeferredWorker(store, replayer).process(_task(record))

    assert outcome.status == AttemptStatus.completed
    stored = await _stored(store, record.request_id)
    assert stored.result_status_code == 422


@pytest.mark.asyncio
async def test_server_error_fails_attempt(
    make_record: RecordFactory, replayer: Any
) -> None:
    store = InMemoryDeferredRequestStore()
    record = make_record()
    await store.create(record)
    replayer.status_code = 503

    outcome = await DeferredWorker(store, replayer).process(_task(record))

    assert outcome.status == AttemptStatus.failed
    assert outcome.error_code == ExecutionErrorCode.EXECUTION_ERROR
    assert outcome.can_retry
    stored = await _stored(store, record.request_id)
    assert stored.status == DeferredStatus.failed
    assert stored.error_code == "EXECUTION_ERROR"
    assert "503" in (stored.error_message or "")


@pytest.mark.asyncio
async def test_replay_exception_fails_attempt(make_record: RecordFactory, replayer: Any) -> None:
    store = InMemoryDeferredRequestStore()
    record = make_record()
    await store.create(record)

    replayer.error = ValueError("boom")

    outcome = await DeferredWorker(store, replayer).process(_task(record))

    assert outcome.error_code == ExecutionErrorCode.EXECUTION_ERROR
    stored = await _stored(store, record.request_id)
    assert stored.error_message == "ValueError: boom"


@pytest.mark.asyncio
async def test_timeout_fails_attempt(make_record: RecordFactory, replayer: Any) -> None:
    store = InMemoryDeferredRequestStore()
    record = make_record(timeout_seconds=1)
    await store.create(record)
    replayer.delay = 5

    outcome = await DeferredWorker(store, replayer).process(_task(record))

    assert outcome.status == AttemptStatus.failed
    assert outcome.error_code == ExecutionErrorCode.TIMEOUT
    stored = await _stored(store, record.request_id)
    assert stored.error_code == "TIMEOUT"


@pytest.mark.asyncio
async def test_duplicate_delivery_is_skipped(
    make_record: RecordFactory, replayer: Any
) -> None:
    store = InMemoryDeferredRequestStore()
    record = make_record()
    await store.create(record)
    worker = DeferredWorker(store, replayer)

    first = await worker.process(_task(record))
    second = await worker.process(_task(record))

    assert first.status == AttemptStatus.completed
    assert second.status == AttemptStatus.skipped
    assert len(replayer.calls) == 1


@pytest.mark.asyncio
async def test_cancelled_record_is_not_executed(
    make_record: RecordFactory, replayer: Any
) -> None:
    store = InMemoryDeferredRequestStore()
    record = make_record()
    await store.create(record)
    await store.cancel(record.request_id, utcnow())

    outcome = await DeferredWorker(store, replayer).process(_task(record))

    assert outcome.status == AttemptStatus.skipped
    assert replayer.calls == []


@pytest.mark.asyncio
async def test_late_result_after_cancel_is_discarded(make_record: RecordFactory) -> None:
    store = InMemoryDeferredRequestStore()
    record = make_record()
    await store.create(record)

    outcome = await DeferredWorker(store, CancellingReplayer(store)).process(_task(record))

    assert outcome.status == AttemptStatus.discarded
    stored = await _stored(store, record.request_id)
    assert stored.status == DeferredStatus.cancelled
    assert stored.result is None


@pytest.mark.asyncio
async def test_unexpected_worker_error_records_job_failed(
    make_record: RecordFactory, replayer: Any
) -> None:
    store = BrokenStore()
    record = make_record()
    await store.create(record)

    outcome = await DeferredWorker(store, replayer).process(_task(record))

    assert outcome.status == AttemptStatus.failed
    assert outcome.error_code == ExecutionErrorCode.JOB_FAILED
    stored = await _stored(store, record.request_id)
    assert stored.error_code == "JOB_FAILED"
    assert "serializer exploded" in (stored.error_message or "")


@pytest.mark.asyncio
async def test_pool_retries_until_exhausted_and_notifies(
    make_record: RecordFactory, replayer: Any
) -> None:
    store = InMemoryDeferredRequestStore()
    queue = InMemoryTaskQueue()
    notifier = AsyncMock()
    replayer.status_code = 500
    pool = WorkerPool(
        DeferredWorker(store, replayer),
        queue,
        store,
        retry_backoff_seconds=[0.0],
        notifier=notifier,
        poll_timeout=0.05,
    )
    record = make_record(max_attempts=3)
    await store.create(record)
    await queue.put(_task(record))

    await pool.drain(timeout=5)

    stored = await _stored(store, record.request_id)
    assert stored.status == DeferredStatus.failed
    assert stored.attempts == 3
    assert len(replayer.calls) == 3
    notifier.notify_exhausted.assert_awaited_once()
    assert notifier.notify_exhausted.await_args.args[0].request_id == record.request_id


@pytest.mark.asyncio
async def test_pool_retry_uses_backoff(make_record: RecordFactory, replayer: Any) -> None:
    store = InMemoryDeferredRequestStore()
    queue = InMemoryTaskQueue()
    delays: list[float] = []
    replayer.status_code = 500

    async def fake_sleep(seconds: float) -> None:
        delays.append(seconds)

    pool = WorkerPool(
        DeferredWorker(store, replayer),
        queue,
        store,
        retry_backoff_seconds=[5.0, 30.0],
        notifier=AsyncMock(),
        sleep_fn=fake_sleep,
        poll_timeout=0.05,
    )
    record = make_record(max_attempts=3)
    await store.create(record)
    await queue.put(_task(record))

    await pool.drain(timeout=5)

    assert delays == [5.0, 30.0]


@pytest.mark.asyncio
async def test_abandon_cancels_in_flight_execution(
    make_record: RecordFactory, replayer: Any
) -> None:
    store = InMemoryDeferredRequestStore()
    replayer.delay = 10
    pool = WorkerPool(
        DeferredWorker(store, replayer),
        InMemoryTaskQueue(),
        store,
        notifier=AsyncMock(),
    )
    record = make_record()
    await store.create(record)

    running = asyncio.create_task(pool.run_task(_task(record)))
    while record.request_id not in pool.in_flight:
        await asyncio.sleep(0.01)
    await store.cancel(record.request_id, utcnow())

    assert pool.abandon(record.request_id)
    outcome = await asyncio.wait_for(running, timeout=2)

    assert outcome.status == AttemptStatus.cancelled
    assert pool.in_flight == []
    assert not pool.abandon(record.request_id)
    stored = await _stored(store, record.request_id)
    assert stored.status == DeferredStatus.cancelled


@pytest.mark.asyncio
async def test_started_pool_consumes_lanes(
    make_record: RecordFactory, replayer: Any
) -> None:
    store = InMemoryDeferredRequestStore()
    queue = InMemoryTaskQueue()
    pool = WorkerPool(
        DeferredWorker(store, replayer),
        queue,
        store,
        concurrency={"high": 1, "default": 1, "low": 1},
        poll_timeout=0.05,
    )
    record = make_record()
    await store.create(record)

    await pool.start()
    try:
        assert pool.running
        await queue.put(_task(record))
        await pool.drain(timeout=5)
    finally:
        await pool.stop()

    assert not pool.running
    stored = await _stored(store, record.request_id)
    assert stored.status == DeferredStatus.completed


@pytest.mark.asyncio
async def test_scoped_superadmin_replays_as_superadmin(
    make_record: RecordFactory, replayer: Any
) -> None:
    store = InMemoryDeferredRequestStore()
    record = make_record(is_superadmin=True)
    await store.create(record)

    await DeferredWorker(store, replayer).process(_task(record, is_superadmin=True))

    ctx = replayer.calls[0][1]
    assert ctx.org_id == record.org_id
    assert ctx.is_superadmin
    assert not ctx.is_global


@pytest.mark.asyncio
async def test_concurrent_deliveries_execute_once(
    make_record: RecordFactory, replayer: Any
) -> None:
    store = InMemoryDeferredRequestStore()
    worker = DeferredWorker(store, replayer)
    replayer.delay = 0.05
    record = make_record()
    await store.create(record)
    task = _task(record)

    outcomes = await asyncio.gather(worker.process(task), worker.process(task))

    assert sorted(o.status.value for o in outcomes) == ["completed", "skipped"]
    assert len(replayer.calls) == 1
    stored = await _stored(store, record.request_id)
    assert stored.status == DeferredStatus.completed
    assert stored.attempts == 1


@pytest.mark.asyncio
async def test_store_outage_stops_the_pool(make_record: RecordFactory, replayer: Any) -> None:
    store = UnreachableStore()
    queue = InMemoryTaskQueue()
    pool = WorkerPool(
        DeferredWorker(store, replayer),
        queue,
        store,
        concurrency={"high": 1, "default": 1, "low": 0},
        poll_timeout=0.05,
    )
    record = make_record()
    await store.create(record)

    await pool.start()
    try:
        await queue.put(_task(record))
        with pytest.raises(StoreUnavailableError):
            await asyncio.wait_for(pool.wait(), timeout=2)

        assert not pool.running
        assert isinstance(pool.failure, StoreUnavailableError)
    finally:
        await pool.stop()

    assert replayer.calls == []


@pytest.mark.asyncio
async def test_stopped_pool_wait_returns_without_failure(replayer: Any) -> None:
    store = InMemoryDeferredRequestStore()
    pool = WorkerPool(
        DeferredWorker(store, replayer),
        InMemoryTaskQueue(),
        store,
        concurrency={"high": 1, "default": 0, "low": 0},
        poll_timeout=0.05,
    )

    await pool.start()
    await pool.stop()
    await pool.wait()

    assert pool.failure is None
