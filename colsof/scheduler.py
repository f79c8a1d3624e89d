"""
Periodic maintenance and auto-refresh jobs
Uses APScheduler; every job is registered by id and stopped explicitly
"""

from typing import Any, Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from loguru import logger

from colsof.datastore.pool import ConnectionPool
from colsof.services.cache import CacheManager
from colsof.utils import logged_job

CACHE_CLEANUP_JOB = "cache_cleanup_job"
POOL_PRUNE_JOB = "pool_prune_job"


class MaintenanceScheduler:
    """Runs cache expiry sweeps, idle-connection pruning and refresh jobs."""

    def __init__(
        self,
        cache: CacheManager,
        pool: ConnectionPool[Any] | None = None,
        interval_seconds: int = 60,
    ):
        self.scheduler = AsyncIOScheduler()
        self.cache = cache
        self.pool = pool
        self.interval_seconds = interval_seconds
        self._refresh_jobs: set[str] = set()
        self._is_running = False

    @logged_job
    async def cleanup_cache_job(self) -> int:
        """Drop expired cache entries."""
        removed = self.cache.cleanup_expired()
        if removed:
            logger.debug(f"Cache cleanup removed {removed} expired entries")
        return removed

    @logged_job
    async def prune_pool_job(self) -> int:
        """Close surplus idle connections."""
        if self.pool is None:
            return 0
        return await self.pool.prune_idle()

    def start(self) -> None:
        """Start the scheduler"""
        if self._is_running:
            logger.warning("Maintenance scheduler is already running")
            return

        self.scheduler.add_job(
            self.cleanup_cache_job,
            trigger="interval",
            seconds=self.interval_seconds,
            id=CACHE_CLEANUP_JOB,
            name="Cache expiry sweep",
            replace_existing=True,
        )
        if self.pool is not None:
            self.scheduler.add_job(
                self.prune_pool_job,
                trigger="interval",
                seconds=self.interval_seconds,
                id=POOL_PRUNE_JOB,
                name="Idle connection pruning",
                replace_existing=True,
            )

        self.scheduler.start()
        self._is_running = True
        logger.info(
            f"Maintenance scheduler started: running every {self.interval_seconds}s"
        )

    def add_refresh_job(
        self,
        job_id: str,
        func: Callable[[], Awaitable[Any]],
        seconds: float,
    ) -> None:
        """Register a periodic refresh (e.g. dashboard auto-refresh)."""
        self.scheduler.add_job(
            logged_job(func),
            trigger="interval",
            seconds=seconds,
            id=job_id,
            name=f"Refresh {job_id}",
            replace_existing=True,
        )
        self._refresh_jobs.add(job_id)
        logger.debug(f"Refresh job '{job_id}' scheduled every {seconds}s")

    def remove_job(self, job_id: str) -> bool:
        """Stop a refresh job. Returns False when no such job exists."""
        if job_id not in self._refresh_jobs:
            return False
        self.scheduler.remove_job(job_id)
        self._refresh_jobs.discard(job_id)
        return True

    def get_job_ids(self) -> list[str]:
        return [job.id for job in self.scheduler.get_jobs()]

    def stop(self) -> None:
        """Stop the scheduler and drop all refresh jobs"""
        if not self._is_running:
            logger.warning("Maintenance scheduler is not running")
            return

        self.scheduler.shutdown(wait=False)
        self._refresh_jobs.clear()
        self._is_running = False
        logger.info("Maintenance scheduler stopped")

    def is_running(self) -> bool:
        return self._is_running
