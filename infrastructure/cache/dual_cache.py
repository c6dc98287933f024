"""Async dual-cache for dashboard reads (primary + stale + lock pattern).

  1. Return live data if the primary key exists.
  2. Return stale data if primary expired; refresh in the background.
  3. Run the query on a full miss and populate both keys.
  4. Run the query uncached on lock contention or when Redis misbehaves.

Analytics reads are best-effort, so a cache problem never turns into an empty
dashboard: every failure path falls through to ``query_fn``.
"""

import asyncio
import json
from typing import Any, Awaitable, Callable, Optional, Set

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from shared.logging import get_logger

log = get_logger(__name__)

KEY_PREFIX = "analytics"


class DualCache:
    def __init__(
        self,
        redis_client: Optional[aioredis.Redis],
        primary_ttl: int = 60,
        stale_ttl: int = 600,
        lock_ttl: int = 30,
    ) -> None:
        self._redis = redis_client
        self.primary_ttl = primary_ttl
        self.stale_ttl = stale_ttl
        self.lock_ttl = lock_ttl
        self._refresh_tasks: Set[asyncio.Task] = set()

    @staticmethod
    def build_key(*parts: Any) -> str:
        return ":".join([KEY_PREFIX, *(str(p) for p in parts)])

    async def _lock(self, key: str) -> bool:
        """Acquire a Redis SET NX EX lock. Returns True if acquired."""
        result = await self._redis.set(key, "1", nx=True, ex=self.lock_ttl)
        return result is not None

    async def _store(self, base_key: str, serialized: str) -> None:
        await self._redis.setex(f"{base_key}:live", self.primary_ttl, serialized)
        await self._redis.setex(f"{base_key}:stale", self.stale_ttl, serialized)

    async def get_or_set(
        self,
        base_key: str,
        query_fn: Callable[[], Awaitable[Any]],
        serializer_fn: Optional[Callable[[Any], Any]] = None,
        loader_fn: Optional[Callable[[Any], Any]] = None,
    ) -> Any:
        """Return cached data, or call query_fn and populate the cache.

        ``serializer_fn`` turns a query result into JSON-ready data and
        ``loader_fn`` turns cached JSON back into the result type.
        """
        if self._redis is None:
            return await query_fn()

        def _load(raw: str) -> Any:
            data = json.loads(raw)
            return loader_fn(data) if loader_fn else data

        def _serialize(data: Any) -> str:
            return json.dumps(serializer_fn(data) if serializer_fn else data)

        lock_key = f"{base_key}:lock"
        try:
            # 1. Primary hit
            raw = await self._redis.get(f"{base_key}:live")
            if raw:
                return _load(raw)

            # 2. Stale hit: return stale, refresh in the background
            stale = await self._redis.get(f"{base_key}:stale")
            if stale:
                if await self._lock(lock_key):
                    task = asyncio.create_task(
                        self._refresh(base_key, query_fn, _serialize, lock_key)
                    )
                    self._refresh_tasks.add(task)
                    task.add_done_callback(self._refresh_tasks.discard)
                return _load(stale)

            acquired = await self._lock(lock_key)
        except RedisError as e:
            log.warning(
                "dual_cache_unavailable",
                base_key=base_key,
                error=str(e),
                error_type=type(e).__name__,
            )
            return await query_fn()

        # 3. Full miss
        data = await query_fn()
        if not acquired:
            # 4. Another worker is filling the key
            log.debug("dual_cache_lock_contention", base_key=base_key)
            return data

        try:
            await self._store(base_key, _serialize(data))
            await self._redis.delete(lock_key)
        except RedisError as e:
            log.warning(
                "dual_cache_store_failed",
                base_key=base_key,
                error=str(e),
                error_type=type(e).__name__,
            )
        return data

    async def _refresh(
        self,
        base_key: str,
        query_fn: Callable[[], Awaitable[Any]],
        serialize: Callable[[Any], str],
        lock_key: str,
    ) -> None:
        """Background refresh; errors are logged and swallowed."""
        try:
            data = await query_fn()
            await self._store(base_key, serialize(data))
            await self._redis.delete(lock_key)
        except Exception as e:
            log.error(
                "cache_refresh_failed",
                base_key=base_key,
                error=str(e),
                error_type=type(e).__name__,
            )

    async def drain(self) -> None:
        """Wait for in-flight background refreshes."""
        if self._refresh_tasks:
            await asyncio.gather(*self._refresh_tasks, return_exceptions=True)
