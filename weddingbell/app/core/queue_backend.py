"""
Priority queue backends for the notification dispatcher.

Each lane is an independent queue with delayed visibility: a job is stored
together with the time it becomes available, and ``dequeue`` only returns
jobs whose time has come, oldest first.

Delivery is at-least-once. ``dequeue`` leases the job for the visibility
timeout instead of deleting it; ``ack`` deletes it once it has been handled.
A lease that runs out without an ack puts the job back in its lane, so a job
whose worker died is handed out again.

Two implementations share the same interface:
- ``RedisQueueBackend``: one sorted set per lane scored by availability time,
  one scored by lease deadline, plus a hash holding the serialized jobs.
  Leasing runs as a single Lua script, so it is safe across processes.
- ``InMemoryQueueBackend``: a heap per lane, for tests and single-process runs.

Backend failures are raised as ``QueueBackendError`` and never retried here.
"""

import asyncio
import heapq
import itertools
import json
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

from redis.exceptions import RedisError

from weddingbell.app.core.database import RedisManager
from weddingbell.app.core.exceptions import ErrorCode, QueueBackendError
from weddingbell.app.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_VISIBILITY_TIMEOUT = 300.0

# KEYS: queue, processing, jobs. ARGV: now, lease deadline.
# Returns {requeued expired leases, payload of the leased job or nothing}.
LEASE_SCRIPT = """
local now = tonumber(ARGV[1])
local expired = redis.call('ZRANGEBYSCORE', KEYS[2], '-inf', now)
for _, job_id in ipairs(expired) do
    redis.call('ZREM', KEYS[2], job_id)
    redis.call('ZADD', KEYS[1], now, job_id)
end
while true do
    local ids = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', now, 'LIMIT', 0, 1)
    if #ids == 0 then
        return {#expired}
    end
    redis.call('ZREM', KEYS[1], ids[1])
    local payload = redis.call('HGET', KEYS[3], ids[1])
    if payload then
        redis.call('ZADD', KEYS[2], ARGV[2], ids[1])
        return {#expired, payload}
    end
end
"""


class QueueBackend(ABC):
    """Interface shared by the queue backends."""

    @abstractmethod
    async def enqueue(self, lane: str, job: Dict[str, Any], available_at: Optional[float] = None) -> None:
        """Store ``job`` in ``lane``, visible from ``available_at`` (epoch seconds). Drops any lease on it."""

    @abstractmethod
    async def dequeue(self, lane: str, now: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """Lease the oldest visible job from ``lane``, or None."""

    @abstractmethod
    async def ack(self, lane: str, job_id: str) -> None:
        """Delete a leased job once it has been handled."""

    @abstractmethod
    async def remove(self, lane: str, job_id: str) -> bool:
        """Remove a job before it is dequeued. True if it was still queued."""

    @abstractmethod
    async def size(self, lane: str) -> int:
        """Number of jobs in ``lane``, visible, delayed or leased."""

    @abstractmethod
    async def ping(self) -> bool:
        """Check backend availability."""


class InMemoryQueueBackend(QueueBackend):
    """Heap-backed queue for a single process."""

    def __init__(self, visibility_timeout: float = DEFAULT_VISIBILITY_TIMEOUT):
        self.visibility_timeout = visibility_timeout
        self._heaps: Dict[str, List[Tuple[float, int, str]]] = {}
        self._jobs: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._leases: Dict[str, Dict[str, float]] = {}
        self._sequence = itertools.count()
        self._lock = asyncio.Lock()

    def _push(self, lane: str, job_id: str, available_at: float) -> None:
        heapq.heappush(self._heaps.setdefault(lane, []), (available_at, next(self._sequence), job_id))

    async def enqueue(self, lane: str, job: Dict[str, Any], available_at: Optional[float] = None) -> None:
        available_at = time.time() if available_at is None else available_at
        async with self._lock:
            self._jobs.setdefault(lane, {})[job["id"]] = job
            self._leases.get(lane, {}).pop(job["id"], None)
            self._push(lane, job["id"], available_at)

    async def dequeue(self, lane: str, now: Optional[float] = None) -> Optional[Dict[str, Any]]:
        now = time.time() if now is None else now
        async with self._lock:
            leases = self._leases.setdefault(lane, {})
            for job_id, deadline in list(leases.items()):
                if deadline <= now:
                    del leases[job_id]
                    self._push(lane, job_id, now)
                    logger.warning("Lease expired, job requeued", lane=lane, job_id=job_id)

            heap = self._heaps.get(lane)
            jobs = self._jobs.get(lane, {})
            while heap and heap[0][0] <= now:
                _, _, job_id = heapq.heappop(heap)
                # Entries of removed or already leased jobs are skipped lazily
                if job_id in jobs and job_id not in leases:
                    leases[job_id] = now + self.visibility_timeout
                    return jobs[job_id]
            return None

    async def ack(self, lane: str, job_id: str) -> None:
        async with self._lock:
            self._leases.get(lane, {}).pop(job_id, None)
            self._jobs.get(lane, {}).pop(job_id, None)

    async def remove(self, lane: str, job_id: str) -> bool:
        async with self._lock:
            if job_id in self._leases.get(lane, {}):
                return False
            return self._jobs.get(lane, {}).pop(job_id, None) is not None

    async def size(self, lane: str) -> int:
        return len(self._jobs.get(lane, {}))

    async def ping(self) -> bool:
        return True


class RedisQueueBackend(QueueBackend):
    """Sorted-set queue shared by every process connected to the same Redis."""

    def __init__(self, redis_manager: RedisManager, visibility_timeout: float = DEFAULT_VISIBILITY_TIMEOUT):
        self.redis_manager = redis_manager
        self.visibility_timeout = visibility_timeout
        self._lease_script = None

    def _keys(self, lane: str) -> Tuple[str, str, str]:
        return (
            self.redis_manager.key("queue", lane),
            self.redis_manager.key("queue", lane, "processing"),
            self.redis_manager.key("queue", lane, "jobs"),
        )

    def _error(self, message: str, lane: str, operation: str, error: RedisError, **kwargs) -> QueueBackendError:
        return QueueBackendError(f"{message}: {error}", lane=lane, operation=operation, **kwargs)

    async def enqueue(self, lane: str, job: Dict[str, Any], available_at: Optional[float] = None) -> None:
        available_at = time.time() if available_at is None else available_at
        queue_key, processing_key, jobs_key = self._keys(lane)
        try:
            client = self.redis_manager.get_client()
            async with client.pipeline(transaction=True) as pipe:
                pipe.hset(jobs_key, job["id"], json.dumps(job, default=str))
                pipe.zrem(processing_key, job["id"])
                pipe.zadd(queue_key, {job["id"]: available_at})
                await pipe.execute()
        except RedisError as e:
            raise self._error(f"Failed to enqueue job in lane {lane}", lane, "enqueue", e) from e

    async def dequeue(self, lane: str, now: Optional[float] = None) -> Optional[Dict[str, Any]]:
        now = time.time() if now is None else now
        try:
            client = self.redis_manager.get_client()
            if self._lease_script is None:
                self._lease_script = client.register_script(LEASE_SCRIPT)
            result = await self._lease_script(
                keys=list(self._keys(lane)),
                args=[now, now + self.visibility_timeout],
                client=client
            )
        except RedisError as e:
            raise self._error(f"Failed to dequeue from lane {lane}", lane, "dequeue", e) from e

        requeued = int(result[0])
        if requeued:
            logger.warning("Expired leases requeued", lane=lane, count=requeued)
        if len(result) < 2:
            return None
        return json.loads(result[1])

    async def ack(self, lane: str, job_id: str) -> None:
        _, processing_key, jobs_key = self._keys(lane)
        try:
            client = self.redis_manager.get_client()
            async with client.pipeline(transaction=True) as pipe:
                pipe.zrem(processing_key, job_id)
                pipe.hdel(jobs_key, job_id)
                await pipe.execute()
        except RedisError as e:
            raise self._error(
                f"Failed to acknowledge job in lane {lane}", lane, "ack", e,
                error_code=ErrorCode.QUEUE_OPERATION_FAILED
            ) from e

    async def remove(self, lane: str, job_id: str) -> bool:
        queue_key, _, jobs_key = self._keys(lane)
        try:
            client = self.redis_manager.get_client()
            # A leased job keeps its payload until acknowledged
            removed = await client.zrem(queue_key, job_id)
            if removed:
                await client.hdel(jobs_key, job_id)
            return bool(removed)
        except RedisError as e:
            raise self._error(
                f"Failed to remove job from lane {lane}", lane, "remove", e,
                error_code=ErrorCode.QUEUE_OPERATION_FAILED
            ) from e

    async def size(self, lane: str) -> int:
        _, _, jobs_key = self._keys(lane)
        try:
            return await self.redis_manager.get_client().hlen(jobs_key)
        except RedisError as e:
            raise self._error(
                f"Failed to read size of lane {lane}", lane, "size", e,
                error_code=ErrorCode.QUEUE_OPERATION_FAILED
            ) from e

    async def ping(self) -> bool:
        try:
            return bool(await self.redis_manager.get_client().ping())
        except RedisError:
            return False
