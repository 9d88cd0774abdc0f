"""Tests for alert ingestion."""

from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from vigil.schemas.event import Event


@pytest.fixture
def publisher(container):
    async def on_alert_created(alert):
        return Event(type="alert.created", entity_id=str(alert.id), entity_type="alert",
                     organization_id=alert.organization_id)

    container.publisher.on_alert_created = AsyncMock(side_effect=on_alert_created)
    return container.publisher


@pytest.mark.asyncio
async def test_ingest_persists_and_publishes(client, alert_source, publisher):
    response = await client.post(
        "/api/alerts",
        json={
            "title": "Ransomware note dropped",
            "severity": "critical",
            "source": "edr",
            "source_ip": "203.0.113.9",
            "metadata": {"mitreTactics": ["Impact"]},
        },
    )

    assert response.status_code == 201
    data = response.json()
    assert data["alert_id"] == 1
    stored = alert_source.alerts_by_org[1][0]
    assert stored.severity == "critical"
    assert stored.iocs.ips == frozenset({"203.0.113.9"})
    assert stored.mitre_tactics == ["Impact"]

    alert = publisher.on_alert_created.await_args.args[0]
    assert alert.organization_id == 1
    assert alert.status == "new"


@pytest.mark.asyncio
async def test_ingest_rejects_unknown_severity(client, publisher):
    response = await client.post(
        "/api/alerts", json={"title": "x", "severity": "urgent", "source": "edr"}
    )

    assert response.status_code == 422
    publisher.on_alert_created.assert_not_awaited()


@pytest.mark.asyncio
async def test_event_log_down_returns_stored_alert_id(client, publisher):
    publisher.on_alert_created.side_effect = RedisConnectionError("refused")

    response = await client.post(
        "/api/alerts", json={"title": "Port scan", "severity": "low", "source": "ids"}
    )

    assert response.status_code == 503
    assert response.json()["error"]["details"] == {"alert_id": 1}
