"""Wire schema for events published to the durable event log."""

import uuid
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

ALERT_CREATED = "alert.created"


class Event(BaseModel):
    """A normalized domain event. One domain occurrence produces one Event."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    type: str = Field(..., min_length=1, max_length=100)
    entity_id: str
    entity_type: str
    organization_id: int
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    data: dict[str, Any] = Field(default_factory=dict)

    class Config:
        alias_generator = to_camel
        populate_by_name = True

    def to_wire(self) -> dict[str, Any]:
        """Serialize with camelCase keys, as consumers of the log expect."""
        return self.model_dump(mode="json", by_alias=True)

    def field_scope(self) -> dict[str, Any]:
        """Flat mapping predicates resolve against.

        Keys of ``data`` shadow the top-level event attributes.
        """
        scope: dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "entityId": self.entity_id,
            "entity_id": self.entity_id,
            "entityType": self.entity_type,
            "entity_type": self.entity_type,
            "organizationId": self.organization_id,
            "organization_id": self.organization_id,
            "timestamp": self.timestamp.isoformat(),
        }
        scope.update(self.data)
        return scope


class AlertCreatedData(BaseModel):
    """Payload of an ``alert.created`` event."""

    alert_id: str
    severity: str
    category: str
    source_ip: str | None = None
    host_id: str | None = None
    hostname: str | None = None

    class Config:
        alias_generator = to_camel
        populate_by_name = True
