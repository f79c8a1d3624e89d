"""
ConnectionPool - Bounded set of reusable database connections.

States per connection:
- IDLE: in the free list, ready to be borrowed
- BUSY: borrowed by a caller, must be released
- CLOSED: discarded after a transport error or pool shutdown

Invariant: busy + idle (+ connections being opened) <= max_size.
min_size is a warm-up target only.
"""

import asyncio
import itertools
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Generic, TypeVar

from loguru import logger

from colsof.services.errors import (
    AcquisitionTimeoutError,
    PoolClosedError,
    is_transient_error,
)

C = TypeVar("C")

_ids = itertools.count(1)


class ConnectionState(str, Enum):
    """Pooled connection states."""

    IDLE = "idle"
    BUSY = "busy"
    CLOSED = "closed"


@dataclass
class PoolConfig:
    """Configuration for the connection pool."""

    max_size: int = 20
    min_size: int = 5
    acquire_timeout: float = 10.0  # Seconds a caller may wait for a slot
    idle_timeout: float = 30.0  # Seconds before surplus idle connections are pruned


@dataclass(eq=False)
class PooledConnection(Generic[C]):
    """A raw connection plus the pool's bookkeeping."""

    raw: C
    state: ConnectionState = ConnectionState.IDLE
    id: int = field(default_factory=lambda: next(_ids))
    created_at: float = field(default_factory=time.monotonic)
    last_used: float = field(default_factory=time.monotonic)


@dataclass
class PoolHealth:
    """Read-only snapshot of pool accounting."""

    idle: int
    busy: int
    total: int  # idle + busy; connections still being opened are in `opening`
    opening: int
    waiting: int
    query_count: int
    error_count: int

    @property
    def error_rate(self) -> float:
        if self.query_count == 0:
            return 0.0
        return self.error_count / self.query_count

    def to_dict(self) -> dict[str, Any]:
        return {
            "idle": self.idle,
            "busy": self.busy,
            "total": self.total,
            "opening": self.opening,
            "waiting": self.waiting,
            "query_count": self.query_count,
            "error_count": self.error_count,
            "error_rate": f"{self.error_rate:.2%}",
        }


class ConnectionPool(Generic[C]):
    """
    Async connection pool with acquisition timeout and health accounting.

    Usage:
        pool = ConnectionPool(connect=engine.connect, close=close_conn)
        await pool.start()

        async with pool.connection() as conn:
            await conn.raw.execute(...)
    """

    def __init__(
        self,
        connect: Callable[[], Awaitable[C]],
        close: Callable[[C], Awaitable[Any]],
        config: PoolConfig | None = None,
        is_fatal: Callable[[BaseException], bool] = is_transient_error,
        name: str = "db",
    ):
        self.config = config or PoolConfig()
        if self.config.max_size < 1:
            raise ValueError("max_size must be at least 1")

        self.name = name
        self._connect = connect
        self._close = close
        self._is_fatal = is_fatal

        self._idle: list[PooledConnection[C]] = []
        self._busy: set[PooledConnection[C]] = set()
        self._opening = 0
        self._waiting = 0
        self._cond = asyncio.Condition()
        self._closed = False

        self._query_count = 0
        self._error_count = 0

    @property
    def size(self) -> int:
        return len(self._idle) + len(self._busy) + self._opening

    @property
    def closed(self) -> bool:
        return self._closed

    async def start(self) -> None:
        """Open connections up to min_size."""
        target = min(self.config.min_size, self.config.max_size)
        borrowed: list[PooledConnection[C]] = []
        try:
            while self.size < target:
                borrowed.append(await self.acquire())
        except Exception as e:
            logger.warning(f"Pool '{self.name}' warm-up stopped: {e}")

        for conn in borrowed:
            await self.release(conn)
        opened = len(borrowed)
        logger.info(
            f"Pool '{self.name}' started: {opened} connections "
            f"(min={self.config.min_size}, max={self.config.max_size})"
        )

    async def acquire(self, timeout: float | None = None) -> PooledConnection[C]:
        """
        Borrow a connection, waiting for a free slot when the pool is full.

        Raises:
            AcquisitionTimeoutError: no slot freed up within the timeout
            PoolClosedError: the pool has been closed
        """
        timeout = self.config.acquire_timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        async with self._cond:
            while True:
                if self._closed:
                    raise PoolClosedError(
                        f"Pool '{self.name}' is closed", service_id=self.name
                    )

                if self._idle:
                    conn = self._idle.pop()
                    conn.state = ConnectionState.BUSY
                    self._busy.add(conn)
                    return conn

                if self.size < self.config.max_size:
                    # Reserve the slot, open outside the lock
                    self._opening += 1
                    break

                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise AcquisitionTimeoutError(self.name, timeout)

                self._waiting += 1
                try:
                    await asyncio.wait_for(self._cond.wait(), remaining)
                except asyncio.TimeoutError:
                    # Hand on a wake-up this waiter may have consumed
                    if self._idle or self.size < self.config.max_size:
                        self._cond.notify()
                    raise AcquisitionTimeoutError(self.name, timeout) from None
                finally:
                    self._waiting -= 1

        return await self._open_reserved()

    async def _open_reserved(self) -> PooledConnection[C]:
        try:
            raw = await self._connect()
        except BaseException as e:
            async with self._cond:
                self._opening -= 1
                self._cond.notify()
            if isinstance(e, Exception):
                self._error_count += 1
                logger.error(f"Pool '{self.name}' failed to open connection: {e}")
            raise

        conn = PooledConnection(raw=raw, state=ConnectionState.BUSY)
        async with self._cond:
            self._opening -= 1
            self._busy.add(conn)
        return conn

    async def release(
        self, conn: PooledConnection[C], error: BaseException | None = None
    ) -> None:
        """
        Return a connection to the pool.

        A connection released with a transport-level error, or by a cancelled
        borrower, is closed and replaced lazily on next demand.
        """
        discard = False
        async with self._cond:
            if conn not in self._busy:
                logger.warning(
                    f"Pool '{self.name}' ignoring release of connection #{conn.id} "
                    f"in state {conn.state.value}"
                )
                return

            self._busy.discard(conn)
            if error is not None and self._is_fatal(error):
                self._error_count += 1
                logger.error(
                    f"Pool '{self.name}' discarding connection #{conn.id}: {error}"
                )
                discard = True
            elif self._closed or isinstance(error, asyncio.CancelledError):
                # Cancelled mid-query: the connection state is unknown
                discard = True
            else:
                conn.state = ConnectionState.IDLE
                conn.last_used = time.monotonic()
                self._idle.append(conn)

            if discard:
                conn.state = ConnectionState.CLOSED
            self._cond.notify()

        if discard:
            await self._close_quietly(conn)

    @asynccontextmanager
    async def connection(
        self, timeout: float | None = None
    ) -> AsyncIterator[PooledConnection[C]]:
        """Borrow a connection for the duration of the block."""
        conn = await self.acquire(timeout)
        try:
            yield conn
        except BaseException as e:
            await self.release(conn, error=e)
            raise
        else:
            await self.release(conn)

    def record_query(self) -> None:
        self._query_count += 1

    def health(self) -> PoolHealth:
        """Snapshot of pool state. Does not take the lock."""
        idle = len(self._idle)
        busy = len(self._busy)
        return PoolHealth(
            idle=idle,
            busy=busy,
            total=idle + busy,
            opening=self._opening,
            waiting=self._waiting,
            query_count=self._query_count,
            error_count=self._error_count,
        )

    async def prune_idle(self) -> int:
        """Close idle connections above min_size unused for idle_timeout."""
        now = time.monotonic()
        pruned: list[PooledConnection[C]] = []

        async with self._cond:
            surplus = len(self._idle) + len(self._busy) - self.config.min_size
            # Oldest-used first
            for conn in sorted(self._idle, key=lambda c: c.last_used):
                if surplus <= 0:
                    break
                if now - conn.last_used >= self.config.idle_timeout:
                    self._idle.remove(conn)
                    conn.state = ConnectionState.CLOSED
                    pruned.append(conn)
                    surplus -= 1
            if pruned:
                self._cond.notify(len(pruned))

        for conn in pruned:
            await self._close_quietly(conn)
        if pruned:
            logger.debug(f"Pool '{self.name}' pruned {len(pruned)} idle connections")
        return len(pruned)

    async def close(self) -> None:
        """Close idle connections and refuse new borrows; busy ones close on release."""
        async with self._cond:
            if self._closed:
                return
            self._closed = True
            idle, self._idle = self._idle, []
            for conn in idle:
                conn.state = ConnectionState.CLOSED
            self._cond.notify_all()

        for conn in idle:
            await self._close_quietly(conn)
        logger.info(f"Pool '{self.name}' closed ({len(idle)} idle connections)")

    async def _close_quietly(self, conn: PooledConnection[C]) -> None:
        try:
            await self._close(conn.raw)
        except Exception as e:
            # A broken connection may fail to close; the slot is already freed
            self._error_count += 1
            logger.error(f"Pool '{self.name}' error closing connection #{conn.id}: {e}")
