"""Tests for the durable playbook job queue."""

import json
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from vigil.core.exceptions import DispatchError
from vigil.schemas.execution import PlaybookJob
from vigil.services.job_queue import JobQueue, QueuedJob


def _job(attempts=0):
    return PlaybookJob(
        dispatch_id="d-1",
        event_id="evt-1",
        binding_id=1,
        playbook_id=7,
        organization_id=1,
        trigger={"id": "evt-1"},
        attempts=attempts,
    )


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_enqueue_appends_to_stream(self):
        redis = AsyncMock()
        redis.xadd.return_value = "1-0"

        assert await JobQueue(redis).enqueue(_job()) == "1-0"
        stream, fields = redis.xadd.call_args.args
        assert stream == JobQueue.STREAM
        assert json.loads(fields["job"])["dispatch_id"] == "d-1"

    @pytest.mark.asyncio
    async def test_redis_failure_raises_dispatch_error(self):
        redis = AsyncMock()
        redis.xadd.side_effect = RedisConnectionError("down")

        with pytest.raises(DispatchError):
            await JobQueue(redis).enqueue(_job())


class TestDequeue:
    @pytest.mark.asyncio
    async def test_reads_next_job(self):
        redis = AsyncMock()
        redis.zrangebyscore.return_value = []
        redis.xreadgroup.return_value = [[JobQueue.STREAM, [("4-0", {"job": _job().model_dump_json()})]]]

        queued = await JobQueue(redis).dequeue("worker-1", block_ms=10)

        assert queued.message_id == "4-0"
        assert queued.job.playbook_id == 7

    @pytest.mark.asyncio
    async def test_empty_queue_returns_none(self):
        redis = AsyncMock()
        redis.zrangebyscore.return_value = []
        redis.xreadgroup.return_value = []

        assert await JobQueue(redis).dequeue("worker-1", block_ms=10) is None

    @pytest.mark.asyncio
    async def test_claims_stale_job_when_asked(self):
        redis = AsyncMock()
        redis.zrangebyscore.return_value = []
        redis.xautoclaim.return_value = ["0-0", [("2-0", {"job": _job().model_dump_json()})], []]

        queued = await JobQueue(redis).dequeue("worker-1", claim=True)

        assert queued.message_id == "2-0"
        redis.xreadgroup.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_undecodable_job_is_dead_lettered(self):
        redis = AsyncMock()
        redis.zrangebyscore.return_value = []
        redis.xreadgroup.return_value = [[JobQueue.STREAM, [("4-0", {"job": "garbage"})]]]

        assert await JobQueue(redis).dequeue("worker-1") is None
        assert redis.xadd.call_args.args[0] == JobQueue.DEAD_LETTER_STREAM

    @pytest.mark.asyncio
    async def test_existing_group_is_tolerated(self):
        redis = AsyncMock()
        redis.xgroup_create.side_effect = Exception("BUSYGROUP Consumer Group name already exists")
        redis.zrangebyscore.return_value = []
        redis.xreadgroup.return_value = []

        assert await JobQueue(redis).dequeue("worker-1") is None


class TestRetry:
    def test_backoff_is_exponential_and_capped(self):
        queue = JobQueue(AsyncMock(), backoff_base_ms=2000, backoff_max_ms=60000)
        assert [queue.backoff_ms(n) for n in (1, 2, 3)] == [2000, 4000, 8000]
        assert queue.backoff_ms(10) == 60000

    @pytest.mark.asyncio
    async def test_retry_parks_job_in_delayed_set(self):
        redis = AsyncMock()
        queued = QueuedJob("4-0", _job())

        assert await JobQueue(redis, max_attempts=3).retry(queued, "boom") is True

        (key, mapping), _ = redis.zadd.call_args
        assert key == JobQueue.DELAYED
        payload = next(iter(mapping))
        assert json.loads(payload)["attempts"] == 1
        redis.xack.assert_awaited_once_with(JobQueue.STREAM, JobQueue.CONSUMER_GROUP, "4-0")

    @pytest.mark.asyncio
    async def test_exhausted_job_is_dead_lettered(self):
        redis = AsyncMock()
        queued = QueuedJob("4-0", _job(attempts=2))

        assert await JobQueue(redis, max_attempts=3).retry(queued, "boom") is False

        redis.zadd.assert_not_awaited()
        stream, fields = redis.xadd.call_args.args
        assert stream == JobQueue.DEAD_LETTER_STREAM
        assert "3 attempts" in fields["reason"]

    @pytest.mark.asyncio
    async def test_promote_due_only_when_removed(self):
        redis = AsyncMock()
        redis.zrangebyscore.return_value = ["job-a", "job-b"]
        redis.zrem.side_effect = [1, 0]

        assert await JobQueue(redis).promote_due() == 1
        redis.xadd.assert_awaited_once_with(JobQueue.STREAM, {"job": "job-a"})

    def test_has_attempts_left(self):
        queue = JobQueue(AsyncMock(), max_attempts=3)
        assert queue.has_attempts_left(QueuedJob("1-0", _job(attempts=1))) is True
        assert queue.has_attempts_left(QueuedJob("1-0", _job(attempts=2))) is False


class TestInspection:
    @pytest.mark.asyncio
    async def test_depth(self):
        redis = AsyncMock()
        redis.xlen.side_effect = [3, 1]
        redis.zcard.return_value = 2

        assert await JobQueue(redis).depth() == {"queued": 3, "delayed": 2, "dead_letter": 1}

    @pytest.mark.asyncio
    async def test_list_dead_letters(self):
        redis = AsyncMock()
        redis.xrevrange.return_value = [
            ("9-0", {"original_id": "4-0", "data": json.dumps({"job": "{}"}), "reason": "boom", "failed_at": "x"})
        ]

        entries = await JobQueue(redis).list_dead_letters()

        assert entries[0].kind == "job"
        assert entries[0].payload == {"job": "{}"}
