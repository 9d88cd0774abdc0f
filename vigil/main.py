import logging
import uuid
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from redis.exceptions import RedisError

from vigil.api.alerts import router as alerts_router
from vigil.api.bindings import router as bindings_router
from vigil.api.correlation import router as correlation_router
from vigil.api.executions import router as executions_router
from vigil.api.health import router as health_router
from vigil.api.soar import router as soar_router
from vigil.core.config import APP_VERSION, settings
from vigil.core.errors import HTTPError, http_error_handler, redis_error_handler
from vigil.core.logging import setup_logging
from vigil.core.redis import close_redis, get_redis
from vigil.db.session import async_session_maker, engine
from vigil.services.container import build_container
from vigil.services.scheduler import SchedulerService

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the service container and run the correlation scheduler for the app's lifetime."""
    setup_logging()

    redis = await get_redis()
    container = build_container(settings, redis, async_session_maker)
    app.state.container = container

    scheduler = SchedulerService(
        redis,
        container.coordinator,
        interval_minutes=settings.CORRELATION_INTERVAL_MINUTES,
        persist_incidents=settings.CORRELATION_PERSIST_INCIDENTS,
    )
    scheduler.start()
    logger.info(f"Vigil API {APP_VERSION} started, correlation every {settings.CORRELATION_INTERVAL_MINUTES} min")

    yield

    scheduler.stop()
    await close_redis()
    await engine.dispose()
    logger.info("Vigil API stopped")


app = FastAPI(
    title=settings.APP_NAME,
    version=APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
    redirect_slashes=False,
)

app.add_exception_handler(HTTPError, http_error_handler)
app.add_exception_handler(RedisError, redis_error_handler)


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    """Echo or mint X-Request-ID; error bodies and JSON log lines carry the same id."""
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id)
    try:
        response = await call_next(request)
    finally:
        structlog.contextvars.clear_contextvars()

    response.headers["X-Request-ID"] = request_id
    return response


app.include_router(health_router, prefix="/api")
app.include_router(alerts_router, prefix="/api")
app.include_router(bindings_router, prefix="/api")
app.include_router(executions_router, prefix="/api")
app.include_router(soar_router, prefix="/api")
app.include_router(correlation_router, prefix="/api")
