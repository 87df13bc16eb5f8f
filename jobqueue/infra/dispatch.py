"""
Fast priority dispatch queue between the batch loader and the worker pool.

Two backends share the ``DispatchQueue`` protocol:

- ``RedisDispatchQueue`` for multi-process deployments. Items live in a hash
  keyed by job id (dedup on enqueue); a ready sorted set orders them by
  priority then enqueue time; pulled items sit in an in-flight sorted set
  scored by their visibility deadline and are redelivered once it passes.
- ``InMemoryDispatchQueue`` for single-process runs and tests.

Delivery is at-least-once. The queue is not durable; the record store is.
"""

import asyncio
import heapq
import itertools
import json
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Protocol

import redis.asyncio as aioredis
from fastapi import Depends
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from jobqueue.config.logging import get_logger
from jobqueue.config.settings import DispatchBackend, Settings, get_settings
from jobqueue.v1.core.exceptions import DispatchUnavailable

logger = get_logger(__name__)

MAX_PRIORITY = 20
# Enqueue time in ms stays below this for the foreseeable future
PRIORITY_STRIDE = 10**13


def now_ms() -> int:
    return int(time.time() * 1000)


def ready_score(priority: int, enqueued_at: int) -> int:
    """Lower score pops first: higher priority, then earlier enqueue."""
    return (MAX_PRIORITY - priority) * PRIORITY_STRIDE + enqueued_at


@dataclass
class DispatchItem:
    """A claimed job travelling through the dispatch queue."""

    job_id: str
    type: str
    payload: dict[str, Any]
    priority: int
    attempts: int = 0
    backoff: dict[str, Any] = field(default_factory=dict)
    batch_id: str | None = None
    enqueued_at: int = field(default_factory=now_ms)

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str | bytes) -> "DispatchItem":
        return cls(**json.loads(raw))


class DispatchQueue(Protocol):
    """Protocol for dispatch queue backends."""

    async def enqueue(
        self,
        job_id: str,
        type: str,
        payload: dict[str, Any],
        priority: int,
        attempts: int = 0,
        backoff: dict[str, Any] | None = None,
        delay_ms: int = 0,
        batch_id: str | None = None,
    ) -> bool:
        """Add an item. Returns False when the job id is already queued."""
        ...

    async def pull(self, timeout: float) -> DispatchItem | None:
        """Take the most urgent ready item, waiting up to ``timeout`` seconds."""
        ...

    async def ack(self, item: DispatchItem) -> None:
        """Acknowledge a pulled item so it is never redelivered."""
        ...

    async def release(self, item: DispatchItem, delay_ms: int = 0) -> None:
        """Return a pulled item to the queue, optionally delayed."""
        ...

    async def size(self) -> int:
        """Number of items waiting for delivery (ready and delayed)."""
        ...

    async def ping(self) -> bool:
        ...

    async def close(self) -> None:
        ...


class InMemoryDispatchQueue:
    """Single-process dispatch queue with the same semantics as the Redis one."""

    def __init__(self, visibility_timeout_ms: int = 300_000):
        self.visibility_timeout_ms = visibility_timeout_ms
        self._items: dict[str, DispatchItem] = {}
        self._ready: list[tuple[int, int, str]] = []
        self._delayed: list[tuple[int, int, str]] = []
        self._inflight: dict[str, int] = {}
        self._seq = itertools.count()
        self._cond = asyncio.Condition()

    def _push_ready(self, item: DispatchItem) -> None:
        heapq.heappush(
            self._ready, (-item.priority, next(self._seq), item.job_id)
        )

    def _promote(self) -> None:
        now = now_ms()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, job_id = heapq.heappop(self._delayed)
            if job_id in self._items:
                self._push_ready(self._items[job_id])
        for job_id, deadline in list(self._inflight.items()):
            if deadline <= now:
                del self._inflight[job_id]
                self._push_ready(self._items[job_id])
                logger.info("Dispatch item redelivered", job_id=job_id)

    def _pop_ready(self) -> DispatchItem | None:
        while self._ready:
            _, _, job_id = heapq.heappop(self._ready)
            item = self._items.get(job_id)
            if item is None or job_id in self._inflight:
                continue
            self._inflight[job_id] = now_ms() + self.visibility_timeout_ms
            return item
        return None

    async def enqueue(
        self,
        job_id: str,
        type: str,
        payload: dict[str, Any],
        priority: int,
        attempts: int = 0,
        backoff: dict[str, Any] | None = None,
        delay_ms: int = 0,
        batch_id: str | None = None,
    ) -> bool:
        async with self._cond:
            if job_id in self._items:
                return False
            item = DispatchItem(
                job_id=job_id,
                type=type,
                payload=payload,
                priority=priority,
                attempts=attempts,
                backoff=backoff or {},
                batch_id=batch_id,
            )
            self._items[job_id] = item
            if delay_ms > 0:
                heapq.heappush(
                    self._delayed, (now_ms() + delay_ms, next(self._seq), job_id)
                )
            else:
                self._push_ready(item)
            self._cond.notify_all()
            return True

    async def pull(self, timeout: float) -> DispatchItem | None:
        deadline = time.monotonic() + timeout
        async with self._cond:
            while True:
                self._promote()
                item = self._pop_ready()
                if item is not None:
                    return item
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                wait = remaining
                if self._delayed:
                    wait = min(wait, max(0.0, (self._delayed[0][0] - now_ms()) / 1000))
                if self._inflight:
                    nearest = min(self._inflight.values())
                    wait = min(wait, max(0.0, (nearest - now_ms()) / 1000))
                try:
                    await asyncio.wait_for(self._cond.wait(), timeout=wait)
                except TimeoutError:
                    pass

    async def ack(self, item: DispatchItem) -> None:
        async with self._cond:
            self._inflight.pop(item.job_id, None)
            self._items.pop(item.job_id, None)

    async def release(self, item: DispatchItem, delay_ms: int = 0) -> None:
        async with self._cond:
            if self._inflight.pop(item.job_id, None) is None:
                return
            if delay_ms > 0:
                heapq.heappush(
                    self._delayed, (now_ms() + delay_ms, next(self._seq), item.job_id)
                )
            else:
                self._push_ready(item)
            self._cond.notify_all()

    async def size(self) -> int:
        return len(self._items) - len(self._inflight)

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        self._items.clear()
        self._ready.clear()
        self._delayed.clear()
        self._inflight.clear()


# KEYS: items, ready, delayed
# ARGV: job_id, item json, ready score, due_at (0 = no delay)
ENQUEUE_SCRIPT = """
if redis.call('HSETNX', KEYS[1], ARGV[1], ARGV[2]) == 0 then
  return 0
end
if tonumber(ARGV[4]) > 0 then
  redis.call('ZADD', KEYS[3], ARGV[4], ARGV[1])
else
  redis.call('ZADD', KEYS[2], ARGV[3], ARGV[1])
end
return 1
"""

# KEYS: items, ready, inflight, delayed
# ARGV: now ms, visibility ms, max priority, priority stride
PULL_SCRIPT = """
local now = tonumber(ARGV[1])
local function promote(key)
  local due = redis.call('ZRANGEBYSCORE', key, '-inf', now, 'LIMIT', 0, 100)
  for _, id in ipairs(due) do
    redis.call('ZREM', key, id)
    local raw = redis.call('HGET', KEYS[1], id)
    if raw then
      local item = cjson.decode(raw)
      local score = (tonumber(ARGV[3]) - item.priority) * tonumber(ARGV[4]) + item.enqueued_at
      redis.call('ZADD', KEYS[2], string.format('%.0f', score), id)
    end
  end
end
promote(KEYS[4])
promote(KEYS[3])
while true do
  local head = redis.call('ZRANGE', KEYS[2], 0, 0)
  if #head == 0 then
    return false
  end
  local id = head[1]
  redis.call('ZREM', KEYS[2], id)
  local raw = redis.call('HGET', KEYS[1], id)
  if raw then
    redis.call('ZADD', KEYS[3], now + tonumber(ARGV[2]), id)
    return raw
  end
end
"""


class RedisDispatchQueue:
    """Redis-backed dispatch queue shared by every loader and worker process."""

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        *,
        name: str = "jobqueue:main",
        visibility_timeout_ms: int = 300_000,
        poll_interval_s: float = 0.25,
        client: Any = None,
    ) -> None:
        self.name = name
        self.visibility_timeout_ms = visibility_timeout_ms
        self.poll_interval_s = poll_interval_s
        self._redis = client or aioredis.from_url(redis_url, decode_responses=True)
        self._enqueue = self._redis.register_script(ENQUEUE_SCRIPT)
        self._pull = self._redis.register_script(PULL_SCRIPT)

    @property
    def items_key(self) -> str:
        return f"{self.name}:items"

    @property
    def ready_key(self) -> str:
        return f"{self.name}:ready"

    @property
    def inflight_key(self) -> str:
        return f"{self.name}:inflight"

    @property
    def delayed_key(self) -> str:
        return f"{self.name}:delayed"

    async def _call(self, operation: str, coro):
        try:
            return await coro
        except (RedisConnectionError, RedisTimeoutError, OSError) as e:
            logger.warning(
                "Dispatch queue unavailable", operation=operation, error=str(e)
            )
            raise DispatchUnavailable(
                details={"operation": operation, "error": str(e)}
            ) from e

    async def enqueue(
        self,
        job_id: str,
        type: str,
        payload: dict[str, Any],
        priority: int,
        attempts: int = 0,
        backoff: dict[str, Any] | None = None,
        delay_ms: int = 0,
        batch_id: str | None = None,
    ) -> bool:
        item = DispatchItem(
            job_id=job_id,
            type=type,
            payload=payload,
            priority=priority,
            attempts=attempts,
            backoff=backoff or {},
            batch_id=batch_id,
        )
        due_at = item.enqueued_at + delay_ms if delay_ms > 0 else 0
        added = await self._call(
            "enqueue",
            self._enqueue(
                keys=[self.items_key, self.ready_key, self.delayed_key],
                args=[
                    job_id,
                    item.to_json(),
                    ready_score(priority, item.enqueued_at),
                    due_at,
                ],
            ),
        )
        return bool(added)

    async def pull(self, timeout: float) -> DispatchItem | None:
        deadline = time.monotonic() + timeout
        while True:
            raw = await self._call(
                "pull",
                self._pull(
                    keys=[
                        self.items_key,
                        self.ready_key,
                        self.inflight_key,
                        self.delayed_key,
                    ],
                    args=[
                        now_ms(),
                        self.visibility_timeout_ms,
                        MAX_PRIORITY,
                        PRIORITY_STRIDE,
                    ],
                ),
            )
            if raw:
                return DispatchItem.from_json(raw)
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(self.poll_interval_s, remaining))

    async def ack(self, item: DispatchItem) -> None:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.zrem(self.inflight_key, item.job_id)
            pipe.hdel(self.items_key, item.job_id)
            await self._call("ack", pipe.execute())

    async def release(self, item: DispatchItem, delay_ms: int = 0) -> None:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.zrem(self.inflight_key, item.job_id)
            if delay_ms > 0:
                pipe.zadd(self.delayed_key, {item.job_id: now_ms() + delay_ms})
            else:
                pipe.zadd(
                    self.ready_key,
                    {item.job_id: ready_score(item.priority, item.enqueued_at)},
                )
            await self._call("release", pipe.execute())

    async def size(self) -> int:
        async with self._redis.pipeline(transaction=False) as pipe:
            pipe.zcard(self.ready_key)
            pipe.zcard(self.delayed_key)
            ready, delayed = await self._call("size", pipe.execute())
        return ready + delayed

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except (RedisConnectionError, RedisTimeoutError, OSError):
            return False

    async def close(self) -> None:
        await self._redis.aclose()


def create_dispatch_queue(settings: Settings) -> DispatchQueue:
    """Build the dispatch queue backend selected in settings."""
    if settings.dispatch_backend == DispatchBackend.MEMORY:
        return InMemoryDispatchQueue(
            visibility_timeout_ms=settings.dispatch_visibility_timeout_ms
        )
    return RedisDispatchQueue(
        settings.redis_url,
        name=settings.dispatch_queue_name,
        visibility_timeout_ms=settings.dispatch_visibility_timeout_ms,
        poll_interval_s=min(0.25, settings.job_poll_interval_ms / 1000),
    )


# Global dispatch queue instance
_dispatch_queue: DispatchQueue | None = None


def get_dispatch_queue(settings: Settings = Depends(get_settings)) -> DispatchQueue:
    """Get or create the global dispatch queue instance."""
    global _dispatch_queue
    if _dispatch_queue is None:
        _dispatch_queue = create_dispatch_queue(settings)
    return _dispatch_queue


# Convenience type alias for dependency injection
DispatchDep = Depends(get_dispatch_queue)
