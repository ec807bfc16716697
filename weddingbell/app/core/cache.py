"""
Key/value caches used by the preference store and the orchestrator.

Entries may carry their own TTL; entries without a TTL live until they are
invalidated explicitly or evicted for space.

- ``InMemoryCache`` wraps a cachetools ``TLRUCache`` (per-item expiry, LRU eviction).
- ``RedisCache`` stores JSON values so every process sees the same entries.
"""

import asyncio
import json
import math
from abc import ABC, abstractmethod
from typing import Any, List, Optional, Tuple

from cachetools import TLRUCache

from weddingbell.app.core.database import RedisManager


def _time_to_use(key: str, value: Tuple[Any, Optional[float]], now: float) -> float:
    _, ttl = value
    return now + ttl if ttl is not None else math.inf


class Cache(ABC):
    """Interface shared by the caches. TTLs are in seconds."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        ...

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        ...

    @abstractmethod
    async def set_if_absent(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        """Store ``value`` only if ``key`` is missing. True if stored."""

    @abstractmethod
    async def append(self, key: str, item: Any, ttl: Optional[float] = None) -> int:
        """Append ``item`` to the list at ``key`` and return the new length."""

    @abstractmethod
    async def get_list(self, key: str) -> List[Any]:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...


class InMemoryCache(Cache):
    """Process-local cache."""

    def __init__(self, maxsize: int = 10000):
        self._cache: TLRUCache = TLRUCache(maxsize=maxsize, ttu=_time_to_use)
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[Any]:
        entry = self._cache.get(key)
        return entry[0] if entry is not None else None

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        self._cache[key] = (value, ttl)

    async def set_if_absent(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        async with self._lock:
            if self._cache.get(key) is not None:
                return False
            self._cache[key] = (value, ttl)
            return True

    async def append(self, key: str, item: Any, ttl: Optional[float] = None) -> int:
        async with self._lock:
            entry = self._cache.get(key)
            items = list(entry[0]) if entry is not None else []
            items.append(item)
            # Keep the original expiry window when the list already exists
            self._cache[key] = (items, entry[1] if entry is not None else ttl)
            return len(items)

    async def get_list(self, key: str) -> List[Any]:
        entry = self._cache.get(key)
        return list(entry[0]) if entry is not None else []

    async def delete(self, key: str) -> None:
        self._cache.pop(key, None)

    def clear(self) -> None:
        self._cache.clear()


class RedisCache(Cache):
    """Shared cache backed by Redis."""

    def __init__(self, redis_manager: RedisManager):
        self.redis_manager = redis_manager

    def _key(self, key: str) -> str:
        return self.redis_manager.key("cache", key)

    @staticmethod
    def _px(ttl: Optional[float]) -> Optional[int]:
        return int(ttl * 1000) if ttl is not None else None

    async def get(self, key: str) -> Optional[Any]:
        raw = await self.redis_manager.get_client().get(self._key(key))
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        await self.redis_manager.get_client().set(
            self._key(key), json.dumps(value, default=str), px=self._px(ttl)
        )

    async def set_if_absent(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        stored = await self.redis_manager.get_client().set(
            self._key(key), json.dumps(value, default=str), px=self._px(ttl), nx=True
        )
        return bool(stored)

    async def append(self, key: str, item: Any, ttl: Optional[float] = None) -> int:
        client = self.redis_manager.get_client()
        list_key = self._key(key)
        length = await client.rpush(list_key, json.dumps(item, default=str))
        if length == 1 and ttl is not None:
            await client.pexpire(list_key, self._px(ttl))
        return length

    async def get_list(self, key: str) -> List[Any]:
        raw_items = await self.redis_manager.get_client().lrange(self._key(key), 0, -1)
        return [json.loads(raw) for raw in raw_items]

    async def delete(self, key: str) -> None:
        await self.redis_manager.get_client().delete(self._key(key))
