"""Unit tests for colsof.services.retry.ResilientExecutor."""

import asyncio

import pytest

from colsof.services.errors import (
    ExhaustedRetriesError,
    PermanentError,
    RateLimitError,
    RequestTimeoutError,
    TransientIOError,
)
from colsof.services.retry import ResilientExecutor, RetryPolicy


def flaky(failures: list[BaseException], result: object = "ok"):
    """Operation that raises the given errors in order, then succeeds."""
    calls = {"count": 0}

    async def operation() -> object:
        calls["count"] += 1
        if failures:
            raise failures.pop(0)
        return result

    return operation, calls


class TestRetry:
    @pytest.mark.asyncio
    async def test_success_on_first_attempt(self, recording_sleep) -> None:
        executor = ResilientExecutor(sleep=recording_sleep)
        operation, calls = flaky([])

        assert await executor.execute(operation) == "ok"
        assert calls["count"] == 1
        assert recording_sleep.delays == []

    @pytest.mark.asyncio
    async def test_transient_then_success_uses_linear_backoff(self, recording_sleep) -> None:
        """Two connection-refused failures, then success: waits 0.1 then 0.2."""
        executor = ResilientExecutor(
            policy=RetryPolicy(max_retries=2, base_delay=0.1), sleep=recording_sleep
        )
        operation, calls = flaky(
            [ConnectionRefusedError("ECONNREFUSED"), ConnectionRefusedError("ECONNREFUSED")]
        )

        assert await executor.execute(operation) == "ok"
        assert calls["count"] == 3
        assert recording_sleep.delays == pytest.approx([0.1, 0.2])

    @pytest.mark.asyncio
    async def test_permanent_error_is_not_retried(self, recording_sleep) -> None:
        executor = ResilientExecutor(sleep=recording_sleep)
        error = PermanentError("not found", kind="not_found", status_code=404)
        operation, calls = flaky([error])

        with pytest.raises(PermanentError) as exc_info:
            await executor.execute(operation)

        assert exc_info.value is error
        assert calls["count"] == 1
        assert recording_sleep.delays == []

    @pytest.mark.asyncio
    async def test_unclassified_error_propagates_unchanged(self, recording_sleep) -> None:
        executor = ResilientExecutor(sleep=recording_sleep)
        operation, calls = flaky([KeyError("x")])

        with pytest.raises(KeyError):
            await executor.execute(operation)
        assert calls["count"] == 1

    @pytest.mark.asyncio
    async def test_exhausted_retries_wraps_last_error(self, recording_sleep) -> None:
        executor = ResilientExecutor(
            "db", RetryPolicy(max_retries=2, base_delay=0.1), sleep=recording_sleep
        )
        last = TransientIOError("ETIMEDOUT")
        operation, calls = flaky(
            [TransientIOError("ETIMEDOUT"), TransientIOError("ETIMEDOUT"), last]
        )

        with pytest.raises(ExhaustedRetriesError) as exc_info:
            await executor.execute(operation)

        assert exc_info.value.last_error is last
        assert exc_info.value.attempts == 3
        assert exc_info.value.__cause__ is last
        assert calls["count"] == 3
        assert recording_sleep.delays == pytest.approx([0.1, 0.2])

    @pytest.mark.asyncio
    async def test_rate_limit_is_retried(self, recording_sleep) -> None:
        executor = ResilientExecutor(sleep=recording_sleep)
        operation, calls = flaky([RateLimitError("api")])

        assert await executor.execute(operation) == "ok"
        assert calls["count"] == 2

    @pytest.mark.asyncio
    async def test_max_retries_override(self, recording_sleep) -> None:
        executor = ResilientExecutor(sleep=recording_sleep)
        operation, calls = flaky([TransientIOError("down")])

        with pytest.raises(ExhaustedRetriesError):
            await executor.execute(operation, max_retries=0)
        assert calls["count"] == 1

    @pytest.mark.asyncio
    async def test_arguments_are_forwarded(self, recording_sleep) -> None:
        executor = ResilientExecutor(sleep=recording_sleep)

        async def add(a: int, b: int = 0) -> int:
            return a + b

        assert await executor.execute(add, 2, b=3) == 5


class TestAttemptTimeout:
    @pytest.mark.asyncio
    async def test_slow_attempt_times_out_and_is_retried(self, recording_sleep) -> None:
        executor = ResilientExecutor(
            "db",
            RetryPolicy(max_retries=1, base_delay=0.1, attempt_timeout=0.01),
            sleep=recording_sleep,
        )

        async def hang() -> None:
            await asyncio.sleep(10)

        with pytest.raises(ExhaustedRetriesError) as exc_info:
            await executor.execute(hang)

        assert isinstance(exc_info.value.last_error, RequestTimeoutError)
        assert recording_sleep.delays == pytest.approx([0.1])


class TestExecutorStats:
    @pytest.mark.asyncio
    async def test_stats_count_attempts_and_retries(self, recording_sleep) -> None:
        executor = ResilientExecutor(sleep=recording_sleep)
        operation, _ = flaky([TransientIOError("down")])

        await executor.execute(operation)
        stats = executor.get_stats()

        assert stats.calls == 1
        assert stats.attempts == 2
        assert stats.retries == 1
        assert stats.failures == 0

    def test_backoff_delay_is_linear(self) -> None:
        executor = ResilientExecutor(policy=RetryPolicy(base_delay=0.5))
        assert [executor.backoff_delay(n) for n in range(3)] == [0.5, 1.0, 1.5]
