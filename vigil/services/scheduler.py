"""
Scheduler for the periodic correlation run.

With multiple API processes, distributed locking via Redis ensures only one
process executes the job on each tick.
"""

import logging
from datetime import UTC, datetime, timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from redis.asyncio import Redis

from vigil.services.correlation.coordinator import CorrelationCoordinator

logger = logging.getLogger(__name__)

CORRELATION_JOB_ID = "correlation_run"
CORRELATION_LOCK = "vigil:scheduler:correlation"


class SchedulerService:
    """Service for managing scheduled background jobs."""

    def __init__(
        self,
        redis: Redis,
        coordinator: CorrelationCoordinator,
        interval_minutes: int = 15,
        persist_incidents: bool = True,
    ):
        self.redis = redis
        self.coordinator = coordinator
        self.interval_minutes = interval_minutes
        self.persist_incidents = persist_incidents
        self.scheduler = AsyncIOScheduler()

    def start(self):
        """Register jobs and start the scheduler."""
        if self.scheduler.running:
            return
        self.scheduler.add_job(
            self.run_correlation,
            IntervalTrigger(minutes=self.interval_minutes),
            id=CORRELATION_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        logger.info(f"Scheduler started, correlation every {self.interval_minutes} minutes")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

    async def _run_with_lock(self, lock_name: str, timeout: int, job_func) -> bool:
        """
        Execute a job function with distributed locking.

        Only one process will execute the job; others will skip.

        Args:
            lock_name: Unique name for the lock
            timeout: Lock timeout in seconds
            job_func: Async function to execute if lock acquired

        Returns:
            True if this process ran the job
        """
        lock = self.redis.lock(lock_name, timeout=timeout, blocking=False)

        try:
            acquired = await lock.acquire(blocking=False)
        except Exception as e:
            logger.warning(f"Redis unavailable, skipping {lock_name}: {e}")
            return False

        if not acquired:
            logger.debug(f"Lock {lock_name} held by another process, skipping")
            return False

        try:
            await job_func()
        except Exception as e:
            logger.error(f"Error in locked job {lock_name}: {e}")
        finally:
            try:
                await lock.release()
            except Exception:
                # Lock expired while the job ran
                logger.debug(f"Lock {lock_name} already released")
        return True

    async def run_correlation(self) -> bool:
        return await self._run_with_lock(
            CORRELATION_LOCK,
            timeout=self.interval_minutes * 60,
            job_func=self._execute_correlation,
        )

    async def _execute_correlation(self) -> None:
        since = datetime.now(UTC) - timedelta(hours=self.coordinator.lookback_hours)
        organizations = await self.coordinator.alerts.organizations_with_alerts(since)
        logger.info(f"Running scheduled correlation for {len(organizations)} organization(s)")

        for organization_id in organizations:
            try:
                await self.coordinator.analyze(organization_id, persist=self.persist_incidents)
            except Exception as e:
                logger.error(f"Correlation failed for org {organization_id}: {e}")
