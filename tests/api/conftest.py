"""Fixtures for API tests: the app with its container swapped for in-memory services."""

from collections.abc import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from tests.fakes import InMemoryAlertSource, InMemoryIncidentStore, InMemoryThreatIntelSource
from vigil.api.deps import get_container
from vigil.core.config import Settings
from vigil.db.session import get_db
from vigil.main import app
from vigil.services.correlation.coordinator import CorrelationCoordinator
from vigil.services.correlation.graph import GraphCorrelator
from vigil.services.correlation.temporal import TemporalCorrelator


@pytest.fixture
def alert_source():
    return InMemoryAlertSource()


@pytest.fixture
def incident_store():
    return InMemoryIncidentStore()


@pytest.fixture
def container(registry, executions, actions, alert_source, incident_store):
    container = MagicMock()
    container.settings = Settings(CORRELATION_PERSIST_INCIDENTS=False)
    container.alerts = alert_source
    container.bindings = registry
    container.executions = executions
    container.actions = actions
    container.event_log.list_dead_letters = AsyncMock(return_value=[])
    container.job_queue.list_dead_letters = AsyncMock(return_value=[])
    container.job_queue.depth = AsyncMock(return_value={"queued": 0, "delayed": 0, "dead_letter": 0})
    container.redis.ping = AsyncMock(return_value=True)
    container.coordinator = CorrelationCoordinator(
        temporal=TemporalCorrelator(),
        graph=GraphCorrelator(),
        alerts=alert_source,
        threat_intel=InMemoryThreatIntelSource(),
        incidents=incident_store,
        min_alerts=2,
    )
    return container


@pytest.fixture
def db_session():
    """Session stand-in; health checks only run SELECT 1 through it."""
    return AsyncMock()


@pytest_asyncio.fixture(scope="function")
async def client(container, db_session) -> AsyncGenerator[AsyncClient, None]:
    """Client scoped to organization 1."""
    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_container] = lambda: container
    app.dependency_overrides[get_db] = override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        headers={"X-Organization-ID": "1"},
    ) as ac:
        yield ac
    app.dependency_overrides.clear()
