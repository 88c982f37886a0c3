"""Unit tests for priority lanes."""

import uuid
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from backend.app.config import Settings
from backend.app.deferred.errors import EnqueueError
from backend.app.deferred.queue import (
    InMemoryTaskQueue,
    LaneMap,
    RedisTaskQueue,
    build_task_queue,
)
from backend.app.models.common import Priority
from backend.app.models.deferred import DeferredTask


def _task(priority: Priority = Priority.default) -> DeferredTask:
    return DeferredTask(
        request_id=uuid.uuid4(),
        org_id=uuid.uuid4(),
        user_id=uuid.uuid4(),
        priority=priority,
        timeout_seconds=300,
    )


def test_lane_names() -> None:
    lanes = LaneMap()

    assert lanes.name_for(Priority.high) == "deferred-high"
    assert lanes.name_for(Priority.default) == "deferred"
    assert lanes.name_for(Priority.low) == "deferred-low"
    assert lanes.lanes == [Priority.high, Priority.default, Priority.low]


def test_lane_names_from_settings() -> None:
    lanes = LaneMap({"high": "urgent"})

    assert lanes.name_for(Priority.high) == "urgent"
    assert lanes.name_for(Priority.low) == "deferred-low"


@pytest.mark.asyncio
async def test_in_memory_lanes_are_separate() -> None:
    queue = InMemoryTaskQueue()
    high = _task(Priority.high)
    low = _task(Priority.low)

    await queue.put(low)
    await queue.put(high)

    assert await queue.depth(Priority.high) == 1
    assert await queue.depth(Priority.low) == 1
    assert await queue.get(Priority.high, timeout=0.1) == high
    assert await queue.get(Priority.default, timeout=0.01) is None
    assert await queue.get(Priority.low, timeout=0.1) == low


@pytest.mark.asyncio
async def test_redis_put_uses_lane_list() -> None:
    client = AsyncMock()
    queue = RedisTaskQueue(client)
    task = _task(Priority.high)

    await queue.put(task)

    client.lpush.assert_awaited_once()
    name, payload = client.lpush.await_args.args
    assert name == "deferred-high"
    assert DeferredTask.model_validate_json(payload) == task


@pytest.mark.asyncio
async def test_redis_get_decodes_task() -> None:
    task = _task()
    client = AsyncMock()
    client.brpop.return_value = ["deferred", task.model_dump_json()]
    queue = RedisTaskQueue(client)

    assert await queue.get(Priority.default, timeout=1) == task
    client.brpop.assert_awaited_once_with(["deferred"], timeout=1)


@pytest.mark.asyncio
async def test_redis_get_timeout_and_malformed_payload() -> None:
    client = AsyncMock()
    queue = RedisTaskQueue(client)

    client.brpop.return_value = None
    assert await queue.get(Priority.low) is None

    client.brpop.return_value = ["deferred-low", "{not json"]
    assert await queue.get(Priority.low) is None


@pytest.mark.asyncio
async def test_redis_errors_become_enqueue_errors() -> None:
    client = AsyncMock()
    client.lpush.side_effect = RedisConnectionError("refused")
    queue = RedisTaskQueue(client)

    with pytest.raises(EnqueueError):
        await queue.put(_task())


@pytest.mark.asyncio
async def test_redis_depth() -> None:
    client = AsyncMock()
    client.llen.return_value = 7
    queue = RedisTaskQueue(client)

    assert await queue.depth(Priority.default) == 7
    client.llen.assert_awaited_once_with("deferred")


def test_build_task_queue_selects_backend() -> None:
    assert isinstance(build_task_queue(Settings(redis_url=None)), InMemoryTaskQueue)
    assert isinstance(
        build_task_queue(Settings(redis_url="redis://localhost:6379/0")), RedisTaskQueue
    )
