"""Priority lanes for deferred tasks.

Each priority maps to its own named queue so that workers bound to the
high lane never wait behind low-priority work.
"""

import asyncio
import logging
import math
from typing import Protocol

import redis.asyncio as aioredis
from pydantic import ValidationError
from redis.exceptions import RedisError

from backend.app.config import Settings
from backend.app.deferred.errors import EnqueueError
from backend.app.models.common import Priority
from backend.app.models.deferred import DeferredTask

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_NAMES = {
    Priority.high: "deferred-high",
    Priority.default: "deferred",
    Priority.low: "deferred-low",
}


class LaneMap:
    """Priority -> queue name mapping."""

    def __init__(self, queue_names: dict[str, str] | None = None) -> None:
        names = dict(DEFAULT_QUEUE_NAMES)
        for key, value in (queue_names or {}).items():
            names[Priority(key)] = value
        self._names = names

    def name_for(self, priority: Priority) -> str:
        return self._names[priority]

    @property
    def lanes(self) -> list[Priority]:
        """Lanes in descending priority."""
        return [Priority.high, Priority.default, Priority.low]

    def items(self) -> list[tuple[Priority, str]]:
        return [(lane, self._names[lane]) for lane in self.lanes]


class TaskQueue(Protocol):
    """Lane-aware task queue."""

    lanes: LaneMap

    async def put(self, task: DeferredTask) -> None:
        """Place a task on the lane for its priority.

        Raises:
            EnqueueError: If the task cannot be queued.
        """
        ...

    async def get(self, lane: Priority, timeout: float = 1.0) -> DeferredTask | None:
        """Take the next task from a lane, or None after ``timeout`` seconds."""
        ...

    async def depth(self, lane: Priority) -> int:
        """Number of tasks waiting on a lane."""
        ...

    async def close(self) -> None:
        """Release broker resources."""
        ...


class InMemoryTaskQueue:
    """Process-local lanes backed by asyncio queues."""

    def __init__(self, lanes: LaneMap | None = None) -> None:
        self.lanes = lanes or LaneMap()
        self._queues: dict[str, asyncio.Queue[DeferredTask]] = {
            name: asyncio.Queue() for _, name in self.lanes.items()
        }

    async def put(self, task: DeferredTask) -> None:
        self._queues[self.lanes.name_for(task.priority)].put_nowait(task)

    async def get(self, lane: Priority, timeout: float = 1.0) -> DeferredTask | None:
        queue = self._queues[self.lanes.name_for(lane)]
        try:
            return await asyncio.wait_for(queue.get(), timeout=timeout)
        except TimeoutError:
            return None

    async def depth(self, lane: Priority) -> int:
        return self._queues[self.lanes.name_for(lane)].qsize()

    async def close(self) -> None:
        pass


class RedisTaskQueue:
    """Redis list lanes (LPUSH to enqueue, BRPOP to consume)."""

    def __init__(self, client: aioredis.Redis, lanes: LaneMap | None = None) -> None:
        self._client = client
        self.lanes = lanes or LaneMap()

    @classmethod
    def from_url(cls, url: str, lanes: LaneMap | None = None) -> "RedisTaskQueue":
        return cls(aioredis.from_url(url, decode_responses=True), lanes)

    async def put(self, task: DeferredTask) -> None:
        name = self.lanes.name_for(task.priority)
        try:
            await self._client.lpush(name, task.model_dump_json())
        except RedisError as e:
            raise EnqueueError(f"Failed to enqueue on {name}: {type(e).__name__}") from e

    async def get(self, lane: Priority, timeout: float = 1.0) -> DeferredTask | None:
        name = self.lanes.name_for(lane)
        item = await self._client.brpop([name], timeout=max(1, math.ceil(timeout)))
        if item is None:
            return None

        _, raw = item
        try:
            return DeferredTask.model_validate_json(raw)
        except ValidationError:
            logger.error(
                "Dropping malformed deferred task",
                extra={"structured": {"queue": name, "payload": str(raw)[:200]}},
            )
            return None

    async def depth(self, lane: Priority) -> int:
        return int(await self._client.llen(self.lanes.name_for(lane)))

    async def close(self) -> None:
        await self._client.aclose()


def build_task_queue(settings: Settings) -> TaskQueue:
    """Redis lanes when redis_url is configured, process-local lanes otherwise."""
    lanes = LaneMap(settings.deferred_queue_names)
    if settings.redis_url:
        return RedisTaskQueue.from_url(settings.redis_url, lanes)
    return InMemoryTaskQueue(lanes)
