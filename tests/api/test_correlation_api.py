"""Tests for on-demand correlation runs."""

from datetime import UTC, datetime, timedelta

import pytest

from vigil.services.correlation.types import CorrelationAlert


def _alert(alert_id, minutes_ago, source):
    return CorrelationAlert.build(
        id=alert_id,
        title=f"Outbound beacon {alert_id}",
        severity="critical",
        source=source,
        timestamp=datetime.now(UTC) - timedelta(minutes=minutes_ago),
        source_ip="203.0.113.50",
    )


@pytest.mark.asyncio
async def test_run_returns_patterns_and_suggestions(client, alert_source, incident_store):
    alert_source.alerts_by_org[1] = [_alert("a", 5, "fw"), _alert("b", 3, "ids")]

    response = await client.post("/api/correlation/run")

    assert response.status_code == 200
    data = response.json()
    assert data["alerts_analyzed"] == 2
    assert any(p["technique"] == "graph_based" for p in data["patterns"])
    assert data["suggestions"][0]["related_alerts"] == ["a", "b"]
    # Container settings disable persistence by default
    assert data["incidents_created"] == 0
    assert incident_store.incidents == {}


@pytest.mark.asyncio
async def test_run_with_persist(client, alert_source, incident_store):
    alert_source.alerts_by_org[1] = [_alert("a", 5, "fw"), _alert("b", 3, "ids")]

    response = await client.post("/api/correlation/run", json={"persist": True, "confidence_threshold": 0.9})

    assert response.status_code == 200
    assert response.json()["incidents_created"] == 1
    assert len(incident_store.incidents) == 1


@pytest.mark.asyncio
async def test_run_is_scoped_to_organization(client, alert_source):
    alert_source.alerts_by_org[2] = [_alert("x", 5, "fw"), _alert("y", 3, "ids")]

    response = await client.post("/api/correlation/run")

    assert response.json()["alerts_analyzed"] == 0


@pytest.mark.asyncio
async def test_run_rejects_out_of_range_threshold(client):
    response = await client.post("/api/correlation/run", json={"confidence_threshold": 2})
    assert response.status_code == 422
