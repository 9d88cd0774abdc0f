"""Tests for the trigger worker process."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest


class TestWorker:
    def test_consumer_name_is_unique_per_process(self):
        from vigil.worker import Worker

        with patch("vigil.worker.default_consumer_name", return_value="host-123"):
            worker = Worker()

        assert worker.consumer_name == "worker-host-123"

    def test_shutdown_sets_stop_event(self):
        from vigil.worker import Worker

        worker = Worker()
        worker.shutdown()

        assert worker._stop.is_set()

    @pytest.mark.asyncio
    async def test_run_starts_and_stops_pool(self):
        from vigil.worker import SHUTDOWN_TIMEOUT_SECONDS, Worker

        container = MagicMock()
        container.job_queue.ensure_consumer_group = AsyncMock()
        pool = MagicMock()
        pool.start = AsyncMock()
        pool.stop = AsyncMock()

        worker = Worker()
        worker.shutdown()

        with (
            patch("vigil.worker.get_redis", AsyncMock(return_value=MagicMock())),
            patch("vigil.worker.close_redis", AsyncMock()) as close_redis,
            patch("vigil.worker.build_container", return_value=container),
            patch("vigil.worker.WorkerPool", return_value=pool),
        ):
            await worker.run()

        container.job_queue.ensure_consumer_group.assert_awaited_once()
        pool.start.assert_awaited_once()
        pool.stop.assert_awaited_once_with(timeout=SHUTDOWN_TIMEOUT_SECONDS)
        close_redis.assert_awaited_once()
