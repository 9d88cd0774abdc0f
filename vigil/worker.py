"""Trigger worker: consumes the event log and runs playbook jobs."""

import asyncio
import logging
import signal

from vigil.core.config import settings
from vigil.core.redis import close_redis, get_redis
from vigil.db.session import async_session_maker
from vigil.services.container import build_container, default_consumer_name
from vigil.services.trigger_engine import WorkerPool

logger = logging.getLogger(__name__)

SHUTDOWN_TIMEOUT_SECONDS = 60


class Worker:
    """Owns the worker pool for the lifetime of the process."""

    def __init__(self):
        self.consumer_name = f"worker-{default_consumer_name()}"
        self._stop = asyncio.Event()

    def shutdown(self):
        """Signal graceful shutdown."""
        logger.info("Shutdown signal received")
        self._stop.set()

    async def run(self):
        logger.info(f"Worker {self.consumer_name} starting")

        redis = await get_redis()
        container = build_container(settings, redis, async_session_maker, consumer_name=self.consumer_name)
        await container.job_queue.ensure_consumer_group()

        pool = WorkerPool(
            container.engine,
            container.event_log,
            container.job_queue,
            concurrency=settings.TRIGGER_WORKER_CONCURRENCY,
            poll_interval_ms=settings.TRIGGER_POLL_INTERVAL_MS,
            consumer_name=self.consumer_name,
        )
        await pool.start()
        logger.info(f"Worker {self.consumer_name} ready, waiting for events")

        try:
            await self._stop.wait()
        finally:
            await pool.stop(timeout=SHUTDOWN_TIMEOUT_SECONDS)
            logger.info(f"Worker {self.consumer_name} shutting down")
            await close_redis()


async def _main() -> None:
    worker = Worker()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(signum, worker.shutdown)
    await worker.run()


def main():
    """Entry point for worker process."""
    from vigil.core.logging import setup_logging
    setup_logging()

    asyncio.run(_main())


if __name__ == "__main__":
    main()
