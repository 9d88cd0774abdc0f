"""Process-wide Redis client shared by the event log, job queue and scheduler lock."""

import logging

import redis.asyncio as redis

from vigil.core.config import settings

logger = logging.getLogger(__name__)

_client: redis.Redis | None = None


async def get_redis() -> redis.Redis:
    """Return the shared client, connecting lazily on first use."""
    global _client
    if _client is None:
        # Stream reads block for up to the poll interval; the socket timeout must outlast it
        _client = redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_timeout=settings.TRIGGER_POLL_INTERVAL_MS / 1000 + 5,
            health_check_interval=30,
        )
        logger.info("Redis client created")
    return _client


async def close_redis() -> None:
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None
