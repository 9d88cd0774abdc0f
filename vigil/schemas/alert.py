"""Schemas for alert ingestion."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


class AlertCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=500)
    description: str | None = None
    severity: Literal["critical", "high", "medium", "low"]
    source: str = Field(..., min_length=1, max_length=255)
    source_ip: str | None = Field(None, max_length=45)
    destination_ip: str | None = Field(None, max_length=45)
    timestamp: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    """Free-form; ``extractedIocs``, ``mitreTactics``, ``category`` and ``hostname`` are read downstream"""


class AlertIngestResponse(BaseModel):
    alert_id: int
    event_id: str
