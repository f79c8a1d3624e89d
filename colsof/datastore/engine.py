"""
Database engine and unit-of-work execution.

SQLAlchemy's own pooling is disabled (NullPool); connections are borrowed
from ConnectionPool so that sizing, waiting and health stay in one place.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool

from colsof.datastore.models import Base
from colsof.datastore.pool import ConnectionPool, PoolConfig, PoolHealth
from colsof.settings import Settings

T = TypeVar("T")

Work = Callable[[AsyncConnection], Awaitable[T]]


class Database:
    """Owns the async engine and the connection pool."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.engine: AsyncEngine = create_async_engine(
            settings.database_url,
            echo=settings.database_echo,
            poolclass=NullPool,
        )

        min_size, max_size = settings.effective_pool_bounds()
        self.pool: ConnectionPool[AsyncConnection] = ConnectionPool(
            connect=self._connect,
            close=self._disconnect,
            config=PoolConfig(
                max_size=max_size,
                min_size=min_size,
                acquire_timeout=settings.pool_acquire_timeout,
                idle_timeout=settings.pool_idle_timeout,
            ),
            name="db",
        )

    async def _connect(self) -> AsyncConnection:
        return await self.engine.connect()

    async def _disconnect(self, conn: AsyncConnection) -> None:
        await conn.close()

    async def init(self, create_tables: bool = True) -> None:
        """Create tables (when asked) and warm the pool up."""
        if create_tables:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        await self.pool.start()

    async def run(self, work: Work[T]) -> T:
        """
        Run ``work`` on a pooled connection inside a transaction.

        Commits on success, rolls back on error. Transport-level errors make the
        pool discard the connection.
        """
        async with self.pool.connection() as pooled:
            self.pool.record_query()
            conn = pooled.raw
            try:
                result = await work(conn)
                await conn.commit()
                return result
            except Exception:
                if not conn.closed and not conn.invalidated:
                    await conn.rollback()
                raise

    async def parallel(self, *works: Work[Any]) -> list[Any]:
        """Run independent units of work concurrently, each on its own connection."""
        return list(await asyncio.gather(*(self.run(w) for w in works)))

    async def test_connection(self) -> dict[str, Any]:
        """Round-trip a trivial query and report latency."""
        start = time.monotonic()

        async def ping(conn: AsyncConnection) -> Any:
            result = await conn.execute(text("SELECT 1"))
            return result.scalar_one()

        try:
            await self.run(ping)
        except Exception as e:
            logger.error(f"Database connection test failed: {e}")
            return {
                "success": False,
                "error": str(e),
                "duration_ms": int((time.monotonic() - start) * 1000),
            }

        return {
            "success": True,
            "database": self.engine.url.database,
            "duration_ms": int((time.monotonic() - start) * 1000),
        }

    def health(self) -> PoolHealth:
        return self.pool.health()

    async def close(self) -> None:
        """Close pooled connections and dispose of the engine."""
        await self.pool.close()
        await self.engine.dispose()
