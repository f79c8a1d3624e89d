"""
ResilientExecutor - Bounded retry with linear backoff around a remote call.

Attempt 0 runs immediately. A transient failure on attempt ``n`` waits
``base_delay * (n + 1)`` before the next attempt; any other failure
propagates unchanged on first occurrence. When the retry budget is spent the
last transient error is wrapped in ExhaustedRetriesError.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

from colsof.services.errors import (
    ExhaustedRetriesError,
    RequestTimeoutError,
    is_transient_error,
)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """Configuration for the resilient executor."""

    max_retries: int = 2  # Retries after the first attempt
    base_delay: float = 0.1  # Seconds, multiplied by (attempt + 1)
    attempt_timeout: float | None = 30.0  # Per-attempt timeout, None disables


class ResilientExecutor:
    """
    Executes async operations with retry on transient failure.

    Usage:
        executor = ResilientExecutor("db", RetryPolicy(max_retries=2))
        rows = await executor.execute(database.run, fetch_cases)
    """

    def __init__(
        self,
        service_id: str = "default",
        policy: RetryPolicy | None = None,
        classify: Callable[[BaseException], bool] = is_transient_error,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.service_id = service_id
        self.policy = policy or RetryPolicy()
        self._classify = classify
        self._sleep = sleep
        self._stats = ExecutorStats()

    def backoff_delay(self, attempt: int) -> float:
        """Linear backoff: delay before the retry that follows ``attempt``."""
        return self.policy.base_delay * (attempt + 1)

    async def execute(
        self,
        operation: Callable[..., Awaitable[T]],
        *args: Any,
        max_retries: int | None = None,
        **kwargs: Any,
    ) -> T:
        """
        Run ``operation(*args, **kwargs)`` with bounded retry.

        Raises:
            ExhaustedRetriesError: every attempt failed transiently
            Exception: any non-transient error, unchanged, on first occurrence
        """
        retries = self.policy.max_retries if max_retries is None else max_retries
        last_error: Exception | None = None
        self._stats.calls += 1

        for attempt in range(retries + 1):
            self._stats.attempts += 1
            try:
                return await self._run_attempt(operation, args, kwargs)
            except Exception as error:
                if not self._classify(error):
                    self._stats.failures += 1
                    raise

                last_error = error
                if attempt >= retries:
                    break

                delay = self.backoff_delay(attempt)
                self._stats.retries += 1
                logger.warning(
                    f"[{self.service_id}] attempt {attempt + 1}/{retries + 1} failed "
                    f"({type(error).__name__}: {error}), retrying in {delay:.2f}s"
                )
                await self._sleep(delay)

        self._stats.failures += 1
        logger.error(
            f"[{self.service_id}] giving up after {retries + 1} attempts: {last_error}"
        )
        raise ExhaustedRetriesError(
            self.service_id, last_error, attempts=retries + 1
        ) from last_error

    async def _run_attempt(
        self,
        operation: Callable[..., Awaitable[T]],
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
    ) -> T:
        timeout = self.policy.attempt_timeout
        if timeout is None:
            return await operation(*args, **kwargs)

        try:
            return await asyncio.wait_for(operation(*args, **kwargs), timeout)
        except asyncio.TimeoutError as e:
            raise RequestTimeoutError(self.service_id, timeout) from e

    def get_stats(self) -> "ExecutorStats":
        """Get executor statistics."""
        return self._stats


@dataclass
class ExecutorStats:
    """Retry statistics."""

    calls: int = 0
    attempts: int = 0
    retries: int = 0
    failures: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "calls": self.calls,
            "attempts": self.attempts,
            "retries": self.retries,
            "failures": self.failures,
        }
