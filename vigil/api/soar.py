"""Action catalog and dead-letter inspection endpoints."""

import logging

from fastapi import APIRouter, Query
from redis.exceptions import RedisError

from vigil.api.deps import ContainerDep
from vigil.core.errors import service_unavailable
from vigil.schemas.execution import DeadLetterResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/soar", tags=["soar"])


@router.get("/actions")
async def list_actions(container: ContainerDep) -> list[dict]:
    """Actions playbook steps may reference, with their input schemas."""
    return container.actions.catalog()


@router.get("/dead-letter", response_model=DeadLetterResponse)
async def list_dead_letters(
    container: ContainerDep,
    kind: str | None = Query(None, pattern="^(event|job)$"),
    limit: int = Query(100, ge=1, le=1000),
):
    """Events and jobs that exhausted their delivery attempts, newest first."""
    try:
        entries = []
        if kind in (None, "event"):
            entries.extend(await container.event_log.list_dead_letters(limit))
        if kind in (None, "job"):
            entries.extend(await container.job_queue.list_dead_letters(limit))
    except RedisError as e:
        logger.error(f"Failed to read dead-letter streams: {e}")
        raise service_unavailable("Queue backend unavailable")

    entries.sort(key=lambda entry: entry.failed_at or "", reverse=True)
    entries = entries[:limit]
    return DeadLetterResponse(entries=entries, total=len(entries))


@router.get("/queue")
async def queue_stats(container: ContainerDep) -> dict[str, int]:
    """Depth of the playbook job queue, its retry set and its dead-letter stream."""
    return await container.job_queue.depth()
