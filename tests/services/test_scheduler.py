"""Tests for the scheduled correlation run and its Redis lock."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from vigil.services.correlation.coordinator import CorrelationResult
from vigil.services.scheduler import CORRELATION_JOB_ID, CORRELATION_LOCK, SchedulerService


def _redis(acquired=True):
    lock = MagicMock()
    lock.acquire = AsyncMock(return_value=acquired)
    lock.release = AsyncMock()
    redis = MagicMock()
    redis.lock.return_value = lock
    return redis, lock


def _coordinator(organizations=(1, 2)):
    coordinator = MagicMock()
    coordinator.lookback_hours = 24
    coordinator.alerts.organizations_with_alerts = AsyncMock(return_value=list(organizations))
    coordinator.analyze = AsyncMock(return_value=CorrelationResult(alerts_analyzed=0))
    return coordinator


class TestSchedulerLocking:
    @pytest.mark.asyncio
    async def test_runs_correlation_for_each_organization(self):
        redis, lock = _redis()
        coordinator = _coordinator()

        ran = await SchedulerService(redis, coordinator, persist_incidents=True).run_correlation()

        assert ran is True
        redis.lock.assert_called_once_with(CORRELATION_LOCK, timeout=15 * 60, blocking=False)
        assert [c.args[0] for c in coordinator.analyze.await_args_list] == [1, 2]
        assert coordinator.analyze.await_args_list[0].kwargs == {"persist": True}
        lock.release.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_skips_when_lock_is_held(self):
        redis, lock = _redis(acquired=False)
        coordinator = _coordinator()

        assert await SchedulerService(redis, coordinator).run_correlation() is False
        coordinator.analyze.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_one_organization_failing_does_not_stop_others(self):
        redis, _ = _redis()
        coordinator = _coordinator()
        coordinator.analyze.side_effect = [RuntimeError("boom"), CorrelationResult(alerts_analyzed=3)]

        assert await SchedulerService(redis, coordinator).run_correlation() is True
        assert coordinator.analyze.await_count == 2

    @pytest.mark.asyncio
    async def test_redis_unavailable_skips(self):
        redis, lock = _redis()
        lock.acquire.side_effect = ConnectionError("redis down")
        coordinator = _coordinator()

        assert await SchedulerService(redis, coordinator).run_correlation() is False


class TestSchedulerLifecycle:
    @pytest.mark.asyncio
    async def test_start_registers_interval_job(self):
        redis, _ = _redis()
        service = SchedulerService(redis, _coordinator(), interval_minutes=5)

        service.start()
        try:
            job = service.scheduler.get_job(CORRELATION_JOB_ID)
            assert job is not None
            assert job.trigger.interval.total_seconds() == 300
        finally:
            service.stop()
