"""Read-through caches for object metadata and membership decisions."""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Generic, Optional, Type, TypeVar

import structlog
from pydantic import BaseModel, ValidationError

from ..common.metrics import GLOBAL_REGISTRY, LabeledCounter
from ..common.schemas import BucketClass, EntitlementDecision, ObjectMetadata
from ..common.stores import SharedStore

ModelT = TypeVar("ModelT", bound=BaseModel)

CACHE_HITS = GLOBAL_REGISTRY.register(LabeledCounter("lexgate_cache_hits_total", "cache", "Read-through cache hits"))
CACHE_MISSES = GLOBAL_REGISTRY.register(LabeledCounter("lexgate_cache_misses_total", "cache", "Read-through cache misses"))
CACHE_ERRORS = GLOBAL_REGISTRY.register(
    LabeledCounter("lexgate_cache_errors_total", "cache", "Cache store failures absorbed as misses")
)


class ReadThroughCache(Generic[ModelT]):
    """Get-or-populate cache over a :class:`SharedStore`.

    The store is an optimisation only: read failures count as misses,
    write failures are logged, and both are bounded by ``timeout_seconds``.
    A fetcher returning ``None`` (e.g. object not found) is never cached.
    Concurrent misses may each call the fetcher; the last write wins.
    """

    def __init__(
        self,
        name: str,
        store: SharedStore,
        model: Type[ModelT],
        timeout_seconds: float = 0.25,
    ) -> None:
        self.name = name
        self._store = store
        self._model = model
        self._timeout = timeout_seconds
        self._logger = structlog.get_logger("lexgate.cache").bind(cache=name)

    async def get(self, key: str) -> Optional[ModelT]:
        try:
            raw = await asyncio.wait_for(self._store.get(key), timeout=self._timeout)
        except Exception as exc:
            CACHE_ERRORS.inc(self.name)
            self._logger.warning("cache_read_failed", key=key, error=repr(exc))
            return None
        if raw is None:
            return None
        try:
            return self._model.model_validate_json(raw)
        except ValidationError:
            self._logger.warning("cache_entry_corrupt", key=key)
            return None

    async def put(self, key: str, value: ModelT, ttl_seconds: int) -> None:
        try:
            await asyncio.wait_for(self._store.set(key, value.model_dump_json(), ttl_seconds), timeout=self._timeout)
        except Exception as exc:
            CACHE_ERRORS.inc(self.name)
            self._logger.warning("cache_write_failed", key=key, error=repr(exc))

    async def invalidate(self, key: str) -> None:
        try:
            await asyncio.wait_for(self._store.delete(key), timeout=self._timeout)
        except Exception as exc:
            CACHE_ERRORS.inc(self.name)
            self._logger.error("cache_invalidate_failed", key=key, error=repr(exc))
            raise
        self._logger.info("cache_invalidated", key=key)

    async def get_or_fetch(
        self,
        key: str,
        fetcher: Callable[[], Awaitable[Optional[ModelT]]],
        ttl_seconds: int,
    ) -> Optional[ModelT]:
        cached = await self.get(key)
        if cached is not None:
            CACHE_HITS.inc(self.name)
            self._logger.debug("cache_hit", key=key)
            return cached

        CACHE_MISSES.inc(self.name)
        self._logger.debug("cache_miss", key=key)
        fresh = await fetcher()
        if fresh is None:
            return None
        if "cached_at" in type(fresh).model_fields:
            fresh = fresh.model_copy(update={"cached_at": time.time()})
        await self.put(key, fresh, ttl_seconds)
        return fresh


class MetadataCache:
    def __init__(self, store: SharedStore, ttl_seconds: int = 3600, timeout_seconds: float = 0.25) -> None:
        self._cache: ReadThroughCache[ObjectMetadata] = ReadThroughCache(
            "object_metadata", store, ObjectMetadata, timeout_seconds
        )
        self._ttl = ttl_seconds

    @staticmethod
    def cache_key(bucket_class: BucketClass, key: str) -> str:
        return f"objmeta:{bucket_class.value}:{key}"

    async def get_or_fetch(
        self,
        bucket_class: BucketClass,
        key: str,
        fetcher: Callable[[], Awaitable[Optional[ObjectMetadata]]],
    ) -> Optional[ObjectMetadata]:
        return await self._cache.get_or_fetch(self.cache_key(bucket_class, key), fetcher, self._ttl)

    async def invalidate(self, bucket_class: BucketClass, key: str) -> None:
        await self._cache.invalidate(self.cache_key(bucket_class, key))


class EntitlementCache:
    def __init__(self, store: SharedStore, ttl_seconds: int = 300, timeout_seconds: float = 0.25) -> None:
        self._cache: ReadThroughCache[EntitlementDecision] = ReadThroughCache(
            "membership", store, EntitlementDecision, timeout_seconds
        )
        self._ttl = ttl_seconds

    @staticmethod
    def cache_key(subject: str) -> str:
        return f"membership:{subject}"

    async def get_or_fetch(
        self,
        subject: str,
        fetcher: Callable[[], Awaitable[Optional[EntitlementDecision]]],
    ) -> Optional[EntitlementDecision]:
        return await self._cache.get_or_fetch(self.cache_key(subject), fetcher, self._ttl)

    async def invalidate(self, subject: str) -> None:
        await self._cache.invalidate(self.cache_key(subject))
