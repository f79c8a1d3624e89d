"""
RequestDeduplicator - single-flight execution of identical reads.

The first caller for a key starts the producer as a task; callers arriving
while it runs join that task and receive its value or its exception.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

T = TypeVar("T")


class RequestDeduplicator:
    """
    Collapses concurrent calls for the same key into one producer run.

    Joiners wait through ``asyncio.shield``: a cancelled joiner only stops
    its own wait, the producer keeps running for everyone else. Only
    ``cancel``/``cancel_all`` abort the producer itself.

    Usage:
        dedup = RequestDeduplicator()

        stats = await dedup.dedupe(
            "estadisticas", lambda: database.run(statistics_query)
        )
    """

    def __init__(self, debug: bool = False):
        self._pending: dict[str, asyncio.Task[Any]] = {}
        self._debug = debug
        self._stats = DedupStats()

    async def dedupe(
        self,
        key: str,
        request_fn: Callable[[], Awaitable[T]],
    ) -> T:
        """
        Run ``request_fn`` unless a run for ``key`` is already pending.

        Args:
            key: Logical request identity, usually the cache key
            request_fn: Zero-argument coroutine factory for the producer

        Returns:
            The producer's value, shared by every caller of this round
        """
        # Lookup and registration happen without an await in between
        task = self._pending.get(key)
        if task is not None:
            self._stats.joined += 1
            self._log(f"JOIN: {key[:50]}")
        else:
            self._stats.executed += 1
            self._log(f"START: {key[:50]}")
            task = asyncio.create_task(self._run(key, request_fn))
            task.add_done_callback(_consume_outcome)
            self._pending[key] = task

        return await asyncio.shield(task)

    async def _run(self, key: str, request_fn: Callable[[], Awaitable[T]]) -> T:
        try:
            return await request_fn()
        finally:
            # Forget the round before any joiner resumes
            if self._pending.get(key) is asyncio.current_task():
                del self._pending[key]
            self._log(f"END: {key[:50]}")

    def cancel(self, key: str) -> bool:
        """Abort the pending producer for ``key``; joiners see CancelledError."""
        task = self._pending.pop(key, None)
        if task is None:
            return False
        task.cancel()
        self._log(f"CANCEL: {key[:50]}")
        return True

    def cancel_all(self) -> int:
        """Abort every pending producer. Returns how many were aborted."""
        tasks = list(self._pending.values())
        self._pending.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            self._log(f"CANCEL_ALL: {len(tasks)}")
        return len(tasks)

    def pending_count(self) -> int:
        return len(self._pending)

    def pending_keys(self) -> list[str]:
        return list(self._pending)

    def get_stats(self) -> "DedupStats":
        self._stats.pending = len(self._pending)
        return self._stats

    def _log(self, message: str) -> None:
        if self._debug:
            logger.debug(f"[Deduplicator] {message}")


def _consume_outcome(task: asyncio.Task[Any]) -> None:
    # Every joiner may have been cancelled; mark the exception as retrieved
    if not task.cancelled():
        task.exception()


@dataclass
class DedupStats:
    """Counters for single-flight execution."""

    executed: int = 0  # producer runs started
    joined: int = 0  # calls served by an already pending run
    pending: int = 0

    @property
    def join_rate(self) -> float:
        calls = self.executed + self.joined
        return self.joined / calls if calls else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "executed": self.executed,
            "joined": self.joined,
            "pending": self.pending,
            "join_rate": f"{self.join_rate:.2%}",
        }
