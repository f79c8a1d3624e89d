"""
CacheManager - In-memory TTL cache for idempotent read results.

Features:
- Per-entry TTL, checked on read (expired entries are dropped on access)
- Hard capacity bound with FIFO eviction (oldest inserted entry goes first)
- Pattern-based invalidation (substring, regex or predicate over keys)
- Synchronous, non-suspending operations guarded by a lock
"""

import hashlib
import json
import re
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Generic, TypeVar

from loguru import logger

T = TypeVar("T")

# Keys longer than this are replaced by a digest (family prefix is kept)
MAX_KEY_LENGTH = 255

KeyPattern = str | re.Pattern[str] | Callable[[str], bool]


def as_timedelta(value: timedelta | float | int) -> timedelta:
    """Accept a timedelta or a number of seconds."""
    if isinstance(value, timedelta):
        return value
    return timedelta(seconds=value)


@dataclass
class CacheEntry(Generic[T]):
    """Stored value with its absolute expiry."""

    key: str
    data: T
    expires_at: datetime
    hit_count: int = 0

    def is_expired(self, now: datetime) -> bool:
        """Entries are invalid from their expiry instant onwards."""
        return now >= self.expires_at


@dataclass
class CacheResult(Generic[T]):
    """A cache hit."""

    data: T
    hit_count: int


class CacheManager:
    """
    TTL cache with FIFO capacity eviction and pattern invalidation.

    Usage:
        cache = CacheManager(max_size=100)

        key = cache.generate_key("casos:list", {"page": 1})
        result = cache.get(key)
        if result:
            return result.data

        data = await fetch_data()
        cache.set(key, data, ttl=timedelta(minutes=2))
    """

    def __init__(
        self,
        prefix: str = "",
        max_size: int = 100,
        default_ttl: timedelta | float = timedelta(minutes=5),
        clock: Callable[[], datetime] = datetime.now,
        debug: bool = False,
    ):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")

        self._entries: dict[str, CacheEntry[Any]] = {}
        self._prefix = prefix
        self._max_size = max_size
        self._default_ttl = as_timedelta(default_ttl)
        self._clock = clock
        self._debug = debug
        self._lock = threading.Lock()
        self._stats = CacheStats()

    def generate_key(self, name: str, params: dict[str, Any] | None = None) -> str:
        """
        Generate a cache key from a logical operation name and its params.

        Params are serialized with sorted keys and ``None`` values dropped, so
        equivalent calls map to the same key.
        """
        present = {k: v for k, v in (params or {}).items() if v is not None}
        if present:
            serialized = json.dumps(
                present, sort_keys=True, default=str, separators=(",", ":")
            )
            full_key = f"{name}:{serialized}"
        else:
            full_key = name

        # Hash long keys, keeping the family name so invalidation still matches
        if len(self._prefix) + len(full_key) > MAX_KEY_LENGTH:
            hash_val = hashlib.md5(full_key.encode()).hexdigest()[:16]
            return f"{self._prefix}{name}:#{hash_val}"

        return f"{self._prefix}{full_key}"

    def get(self, key: str) -> CacheResult[Any] | None:
        """
        Look up a live entry.

        Returns CacheResult if found and not expired, None otherwise.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._stats.misses += 1
                self._log(f"MISS: {key[:50]}")
                return None

            if entry.is_expired(self._clock()):
                del self._entries[key]
                self._stats.misses += 1
                self._stats.expirations += 1
                self._log(f"EXPIRED: {key[:50]}")
                return None

            entry.hit_count += 1
            self._stats.hits += 1
            self._log(f"HIT: {key[:50]}")

            return CacheResult(data=entry.data, hit_count=entry.hit_count)

    def set(
        self,
        key: str,
        data: Any,
        ttl: timedelta | float | None = None,
    ) -> None:
        """
        Store ``data`` under ``key``.

        Args:
            key: Cache key
            data: Data to cache
            ttl: Time to live, timedelta or seconds (uses default if not specified)
        """
        ttl = self._default_ttl if ttl is None else as_timedelta(ttl)

        with self._lock:
            entry = CacheEntry(key=key, data=data, expires_at=self._clock() + ttl)

            # FIFO eviction if at capacity
            if key not in self._entries and len(self._entries) >= self._max_size:
                self._evict_oldest()

            self._entries[key] = entry
            self._log(f"SET: {key[:50]} (TTL: {ttl.total_seconds()}s)")

    def delete(self, key: str) -> bool:
        """Drop one key; True when it was present."""
        with self._lock:
            if self._entries.pop(key, None) is not None:
                self._log(f"DELETE: {key[:50]}")
                return True
            return False

    def invalidate(self, pattern: KeyPattern) -> int:
        """
        Invalidate all keys matching a pattern.

        Args:
            pattern: Substring, compiled regex, or predicate over keys

        Returns:
            Number of entries invalidated
        """
        matches = _matcher(pattern)

        with self._lock:
            keys_to_delete = [k for k in self._entries if matches(k)]
            for key in keys_to_delete:
                del self._entries[key]

            self._stats.invalidations += len(keys_to_delete)
            if keys_to_delete:
                self._log(
                    f"INVALIDATE: {len(keys_to_delete)} entries matching {pattern!r}"
                )

            return len(keys_to_delete)

    def clear(self) -> None:
        """Drop every entry."""
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._log(f"CLEAR: {count} entries removed")

    def cleanup_expired(self) -> int:
        """Sweep expired entries; returns how many were dropped."""
        with self._lock:
            now = self._clock()
            expired_keys = [k for k, v in self._entries.items() if v.is_expired(now)]
            for key in expired_keys:
                del self._entries[key]

            self._stats.expirations += len(expired_keys)
            if expired_keys:
                self._log(f"CLEANUP: {len(expired_keys)} expired entries removed")

            return len(expired_keys)

    def keys(self) -> list[str]:
        """Snapshot of keys in insertion order."""
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _evict_oldest(self) -> None:
        """Evict the oldest inserted entry. Caller holds the lock."""
        oldest_key = next(iter(self._entries))
        del self._entries[oldest_key]
        self._stats.evictions += 1
        self._log(f"EVICT: {oldest_key[:50]}")

    def get_stats(self) -> "CacheStats":
        """Counters plus current size and capacity."""
        with self._lock:
            self._stats.size = len(self._entries)
            self._stats.max_size = self._max_size
            self._stats.total_hits = sum(e.hit_count for e in self._entries.values())
        return self._stats

    def _log(self, message: str) -> None:
        if self._debug:
            logger.debug(f"[CacheManager] {message}")


def _matcher(pattern: KeyPattern) -> Callable[[str], bool]:
    if isinstance(pattern, str):
        return lambda key: pattern in key
    if isinstance(pattern, re.Pattern):
        return lambda key: pattern.search(key) is not None
    return pattern


@dataclass
class CacheStats:
    """Cache counters."""

    hits: int = 0
    misses: int = 0
    expirations: int = 0
    evictions: int = 0
    invalidations: int = 0
    size: int = 0
    max_size: int = 0
    total_hits: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return self.hits / total

    def to_dict(self) -> dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "expirations": self.expirations,
            "evictions": self.evictions,
            "invalidations": self.invalidations,
            "size": self.size,
            "max_size": self.max_size,
            "total_hits": self.total_hits,
            "hit_rate": f"{self.hit_rate:.2%}",
        }
