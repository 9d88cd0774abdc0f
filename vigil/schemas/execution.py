"""Schemas for playbook executions and trigger jobs."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class StepResult(BaseModel):
    """Outcome of a single playbook step."""

    status: str
    """Status: completed, failed, skipped, compensated, compensation_failed"""

    output: Any = None
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


class ExecutionResponse(BaseModel):
    id: int
    playbook_id: int
    organization_id: int
    status: str
    trigger_source: str
    trigger_entity_id: str | None = None
    results: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    class Config:
        from_attributes = True


class PlaybookJob(BaseModel):
    """Job placed on the durable queue for one (event, binding) match."""

    dispatch_id: str
    event_id: str
    binding_id: int
    playbook_id: int
    organization_id: int
    trigger: dict[str, Any]
    """Wire form of the triggering event"""

    attempts: int = 0


class DeadLetterEntry(BaseModel):
    """An event or job that exhausted its delivery attempts."""

    id: str
    kind: str
    """Kind: event or job"""

    reason: str
    failed_at: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)


class DeadLetterResponse(BaseModel):
    entries: list[DeadLetterEntry]
    total: int
