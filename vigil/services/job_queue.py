"""
Durable playbook job queue on Redis Streams.

Jobs live in a single stream read through a consumer group. Failed jobs are
parked in a sorted set scored by their next due time (exponential backoff)
and promoted back onto the stream when due; after the configured number of
attempts they go to the dead-letter stream.
"""

import json
import logging
import time
from dataclasses import dataclass
from datetime import UTC, datetime

from redis.asyncio import Redis
from redis.exceptions import RedisError

from vigil.core.exceptions import DispatchError
from vigil.schemas.execution import DeadLetterEntry, PlaybookJob

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueuedJob:
    message_id: str
    job: PlaybookJob


class JobQueue:
    """Service for enqueueing and pulling playbook jobs."""

    STREAM = "vigil:jobs"
    DELAYED = "vigil:jobs:delayed"
    DEAD_LETTER_STREAM = "vigil:jobs:dead-letter"
    CONSUMER_GROUP = "vigil-playbook-workers"

    def __init__(
        self,
        redis: Redis,
        max_attempts: int = 3,
        backoff_base_ms: int = 2000,
        backoff_max_ms: int = 60000,
        claim_idle_ms: int = 30000,
    ):
        self.redis = redis
        self.max_attempts = max_attempts
        self.backoff_base_ms = backoff_base_ms
        self.backoff_max_ms = backoff_max_ms
        self.claim_idle_ms = claim_idle_ms
        self._group_ready = False

    async def ensure_consumer_group(self) -> None:
        if self._group_ready:
            return
        try:
            await self.redis.xgroup_create(self.STREAM, self.CONSUMER_GROUP, id="0", mkstream=True)
            logger.info(f"Created consumer group {self.CONSUMER_GROUP} for {self.STREAM}")
        except Exception as e:
            if "BUSYGROUP" not in str(e):
                raise
        self._group_ready = True

    async def enqueue(self, job: PlaybookJob) -> str:
        """
        Append a job to the queue.

        Raises:
            DispatchError: If Redis is unavailable
        """
        try:
            message_id = await self.redis.xadd(self.STREAM, {"job": job.model_dump_json()})
        except RedisError as e:
            raise DispatchError(f"Failed to enqueue job for dispatch {job.dispatch_id}: {e}") from e
        logger.debug(f"Enqueued job {message_id} for playbook {job.playbook_id} (dispatch {job.dispatch_id})")
        return message_id

    async def dequeue(self, consumer_name: str, block_ms: int = 2000, claim: bool = False) -> QueuedJob | None:
        """
        Pull the next job for a worker, waiting up to ``block_ms``.

        Due retries are promoted first. With ``claim`` set, a job left pending
        by a crashed worker is taken over before reading new ones.
        """
        await self.ensure_consumer_group()
        await self.promote_due()

        if claim:
            result = await self.redis.xautoclaim(
                self.STREAM,
                self.CONSUMER_GROUP,
                consumer_name,
                self.claim_idle_ms,
                start_id="0-0",
                count=1,
            )
            if result and len(result) > 1 and result[1]:
                message_id, fields = result[1][0]
                logger.info(f"Claimed stale job {message_id} for {consumer_name}")
                return await self._decode(message_id, fields)

        messages = await self.redis.xreadgroup(
            self.CONSUMER_GROUP,
            consumer_name,
            {self.STREAM: ">"},
            count=1,
            block=block_ms,
        )
        for _, entries in messages or []:
            for message_id, fields in entries:
                return await self._decode(message_id, fields)
        return None

    async def _decode(self, message_id: str, fields) -> QueuedJob | None:
        try:
            job = PlaybookJob.model_validate_json(fields["job"])
        except (KeyError, TypeError, ValueError) as e:
            await self._dead_letter_raw(message_id, dict(fields or {}), f"Undecodable job: {e}")
            return None
        return QueuedJob(message_id=message_id, job=job)

    async def ack(self, queued: QueuedJob) -> None:
        await self.redis.xack(self.STREAM, self.CONSUMER_GROUP, queued.message_id)
        await self.redis.xdel(self.STREAM, queued.message_id)

    def backoff_ms(self, attempts: int) -> int:
        """Delay before retry number ``attempts`` (1-based)."""
        return min(self.backoff_max_ms, self.backoff_base_ms * (2 ** max(attempts - 1, 0)))

    def has_attempts_left(self, queued: QueuedJob) -> bool:
        return queued.job.attempts + 1 < self.max_attempts

    async def retry(self, queued: QueuedJob, error: str) -> bool:
        """
        Schedule a failed job for another attempt, or dead-letter it.

        Returns:
            True if the job was rescheduled, False if it was dead-lettered
        """
        attempts = queued.job.attempts + 1
        if attempts >= self.max_attempts:
            await self.dead_letter(queued, f"Failed after {attempts} attempts: {error}")
            return False

        retry_job = queued.job.model_copy(update={"attempts": attempts})
        delay_ms = self.backoff_ms(attempts)
        due = time.time() + delay_ms / 1000
        await self.redis.zadd(self.DELAYED, {retry_job.model_dump_json(): due})
        await self.ack(queued)
        logger.info(
            f"Job for dispatch {queued.job.dispatch_id} scheduled for retry {attempts} in {delay_ms}ms: {error}"
        )
        return True

    async def promote_due(self, limit: int = 100) -> int:
        """Move due retries back onto the stream. Returns how many were promoted."""
        due = await self.redis.zrangebyscore(self.DELAYED, 0, time.time(), start=0, num=limit)
        promoted = 0
        for payload in due:
            # Whoever removes the entry owns the promotion
            if await self.redis.zrem(self.DELAYED, payload):
                await self.redis.xadd(self.STREAM, {"job": payload})
                promoted += 1
        return promoted

    async def dead_letter(self, queued: QueuedJob, reason: str) -> None:
        await self._dead_letter_raw(queued.message_id, {"job": queued.job.model_dump_json()}, reason)

    async def _dead_letter_raw(self, message_id: str, message_data: dict, reason: str) -> None:
        await self.redis.xadd(
            self.DEAD_LETTER_STREAM,
            {
                "original_id": message_id,
                "data": json.dumps(message_data),
                "reason": reason,
                "failed_at": datetime.now(UTC).isoformat(),
            },
        )
        await self.redis.xack(self.STREAM, self.CONSUMER_GROUP, message_id)
        await self.redis.xdel(self.STREAM, message_id)
        logger.warning(f"Job {message_id} moved to dead-letter: {reason}")

    async def depth(self) -> dict[str, int]:
        return {
            "queued": await self.redis.xlen(self.STREAM),
            "delayed": await self.redis.zcard(self.DELAYED),
            "dead_letter": await self.redis.xlen(self.DEAD_LETTER_STREAM),
        }

    async def list_dead_letters(self, count: int = 100) -> list[DeadLetterEntry]:
        entries = await self.redis.xrevrange(self.DEAD_LETTER_STREAM, count=count)
        result = []
        for message_id, fields in entries:
            try:
                payload = json.loads(fields.get("data", "{}"))
            except ValueError:
                payload = {"raw": fields.get("data")}
            result.append(
                DeadLetterEntry(
                    id=message_id,
                    kind="job",
                    reason=fields.get("reason", "unknown"),
                    failed_at=fields.get("failed_at"),
                    payload=payload,
                )
            )
        return result
