"""Alert ingestion endpoint."""

import logging
from datetime import UTC, datetime

from fastapi import APIRouter, status
from redis.exceptions import RedisError

from vigil.api.deps import ContainerDep, OrganizationDep
from vigil.core.errors import service_unavailable
from vigil.models import Alert
from vigil.schemas.alert import AlertCreate, AlertIngestResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/alerts", tags=["alerts"])


@router.post("", response_model=AlertIngestResponse, status_code=status.HTTP_201_CREATED)
async def ingest_alert(data: AlertCreate, container: ContainerDep, organization_id: OrganizationDep):
    """
    Persist an alert and publish its ``alert.created`` event.

    The alert is stored before the event is published. When the event log is
    unreachable the request fails with 503 and the stored alert id is
    returned in the error details so the caller can republish.
    """
    alert = Alert(
        organization_id=organization_id,
        title=data.title,
        description=data.description,
        severity=data.severity,
        source=data.source,
        source_ip=data.source_ip,
        destination_ip=data.destination_ip,
        timestamp=data.timestamp or datetime.now(UTC),
        status="new",
        alert_metadata=data.metadata,
    )
    alert = await container.alerts.add(alert)

    try:
        event = await container.publisher.on_alert_created(alert)
    except RedisError as e:
        logger.error(f"Failed to publish alert.created for alert {alert.id}: {e}")
        raise service_unavailable("Event log unavailable", details={"alert_id": alert.id})

    return AlertIngestResponse(alert_id=alert.id, event_id=event.id)
