"""
CachedGateway - Read-through caching and write-invalidation.

Reads:  cache hit -> return; miss -> dedupe(key, executor(producer)) -> cache.set
Writes: executor(producer) -> cache.invalidate(pattern), no cache and no dedup.
"""

import re
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, Generic, TypeVar

from colsof.services.cache import CacheManager, KeyPattern
from colsof.services.deduplicator import RequestDeduplicator
from colsof.services.retry import ResilientExecutor

T = TypeVar("T")


def invalidation_pattern(*families: str) -> re.Pattern[str]:
    """Regex matching any key that mentions one of the resource families."""
    return re.compile("|".join(re.escape(f) for f in families))


# Family-level invalidation shared by the server routes and the client
CASES_INVALIDATION = invalidation_pattern("casos", "clientes", "stats", "estadisticas")
USERS_INVALIDATION = invalidation_pattern("usuarios", "stats")
STATS_INVALIDATION = invalidation_pattern("stats", "estadisticas")


@dataclass
class ReadResult(Generic[T]):
    """Result from a read-through lookup."""

    data: T
    from_cache: bool = False


class CachedGateway:
    """
    Composes cache, deduplicator and executor into read/write operations.

    Usage:
        gateway = CachedGateway(cache, RequestDeduplicator(), executor)

        user = await gateway.cached_read(
            "usuarios:42", lambda: fetch_user(42), ttl=timedelta(minutes=5)
        )
        await gateway.write(lambda: save_user(user), USERS_INVALIDATION)
    """

    def __init__(
        self,
        cache: CacheManager,
        deduplicator: RequestDeduplicator,
        executor: ResilientExecutor,
    ):
        self.cache = cache
        self.deduplicator = deduplicator
        self.executor = executor

    async def read(
        self,
        key: str,
        producer: Callable[[], Awaitable[T]],
        ttl: timedelta | float | None = None,
    ) -> ReadResult[T]:
        """Read-through lookup reporting whether the value came from cache."""
        cached = self.cache.get(key)
        if cached is not None:
            return ReadResult(data=cached.data, from_cache=True)

        async def fetch_and_store() -> T:
            value = await self.executor.execute(producer)
            # Populates even if an invalidation ran meanwhile (last write wins)
            self.cache.set(key, value, ttl)
            return value

        data = await self.deduplicator.dedupe(key, fetch_and_store)
        return ReadResult(data=data, from_cache=False)

    async def cached_read(
        self,
        key: str,
        producer: Callable[[], Awaitable[T]],
        ttl: timedelta | float | None = None,
    ) -> T:
        """Return the cached value for ``key`` or fetch, cache and return it."""
        result = await self.read(key, producer, ttl)
        return result.data

    async def write(
        self,
        producer: Callable[[], Awaitable[T]],
        pattern: KeyPattern | None = None,
    ) -> T:
        """Run a write through the executor, then drop related cached reads."""
        result = await self.executor.execute(producer)
        if pattern is not None:
            self.cache.invalidate(pattern)
        return result

    def invalidate(self, pattern: KeyPattern) -> int:
        return self.cache.invalidate(pattern)

    def get_stats(self) -> dict[str, Any]:
        return {
            "cache": self.cache.get_stats().to_dict(),
            "deduplicator": self.deduplicator.get_stats().to_dict(),
            "executor": self.executor.get_stats().to_dict(),
        }
