"""Shared key/value stores backing rate limits and caches.

Two implementations sit behind one interface: Redis for multi-instance
deployments and a bounded in-process map for single-instance or local runs.
The choice is made once at startup by :func:`build_store`.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from typing import Callable, Optional

import structlog
from redis.asyncio import Redis, from_url as redis_from_url

LOGGER = structlog.get_logger("lexgate.stores")


class SharedStore:
    name = "abstract"

    async def get(self, key: str) -> Optional[str]:  # pragma: no cover - interface
        raise NotImplementedError

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def delete(self, key: str) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def incr(self, key: str, ttl_seconds: int) -> int:  # pragma: no cover - interface
        """Atomically increment ``key``; the first increment starts its expiry."""
        raise NotImplementedError

    async def ping(self) -> bool:  # pragma: no cover - interface
        raise NotImplementedError

    async def close(self) -> None:
        return None

    def status(self) -> dict[str, object]:
        return {"store": self.name}


class RedisStore(SharedStore):
    name = "redis"

    def __init__(self, redis: Redis):
        self._redis = redis

    async def get(self, key: str) -> Optional[str]:
        value = await self._redis.get(key)
        if value is None:
            return None
        return value.decode("utf-8") if isinstance(value, bytes) else str(value)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._redis.set(key, value, ex=max(1, int(ttl_seconds)))

    async def delete(self, key: str) -> None:
        await self._redis.delete(key)

    async def incr(self, key: str, ttl_seconds: int) -> int:
        current = await self._redis.incr(key)
        if current == 1:
            await self._redis.expire(key, max(1, int(ttl_seconds)))
        return int(current)

    async def ping(self) -> bool:
        return bool(await self._redis.ping())

    async def close(self) -> None:
        await self._redis.aclose()


class LocalStore(SharedStore):
    """Bounded per-process store with per-key expiry and LRU eviction."""

    name = "local"

    def __init__(self, max_entries: int = 10_000, clock: Callable[[], float] | None = None) -> None:
        self._max_entries = max(1, max_entries)
        self._clock = clock or time.monotonic
        self._entries: OrderedDict[str, tuple[object, float]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def _live(self, key: str) -> Optional[object]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return value

    def _store(self, key: str, value: object, expires_at: float) -> None:
        self._entries[key] = (value, expires_at)
        self._entries.move_to_end(key)
        if len(self._entries) > self._max_entries:
            now = self._clock()
            for stale in [k for k, (_, exp) in self._entries.items() if exp <= now]:
                del self._entries[stale]
        while len(self._entries) > self._max_entries:
            evicted, _ = self._entries.popitem(last=False)
            LOGGER.debug("local_store_evicted", key=evicted)

    async def get(self, key: str) -> Optional[str]:
        value = self._live(key)
        return value if isinstance(value, str) else None

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._store(key, value, self._clock() + max(1, ttl_seconds))

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def incr(self, key: str, ttl_seconds: int) -> int:
        current = self._live(key)
        if isinstance(current, int):
            _, expires_at = self._entries[key]
            count = current + 1
        else:
            expires_at = self._clock() + max(1, ttl_seconds)
            count = 1
        self._store(key, count, expires_at)
        return count

    async def ping(self) -> bool:
        return True

    def status(self) -> dict[str, object]:
        return {"store": self.name, "entries": len(self._entries), "max_entries": self._max_entries}


def build_store(redis_url: Optional[str], local_max_entries: int = 10_000) -> SharedStore:
    if redis_url:
        return RedisStore(redis_from_url(redis_url, decode_responses=False))
    LOGGER.warning("shared_store_not_configured", fallback="local", max_entries=local_max_entries)
    return LocalStore(max_entries=local_max_entries)
