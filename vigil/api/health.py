"""Liveness and dependency health."""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from vigil.api.deps import ContainerDep
from vigil.core.config import APP_VERSION
from vigil.db.session import get_db

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(container: ContainerDep, db: AsyncSession = Depends(get_db)):
    checks: dict[str, str] = {}

    try:
        await container.redis.ping()
        checks["redis"] = "ok"
    except Exception as e:
        logger.warning(f"Health check: Redis unavailable: {e}")
        checks["redis"] = "unavailable"

    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception as e:
        logger.warning(f"Health check: database unavailable: {e}")
        checks["database"] = "unavailable"

    healthy = all(value == "ok" for value in checks.values())
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={"status": "healthy" if healthy else "degraded", "version": APP_VERSION, "checks": checks},
    )
