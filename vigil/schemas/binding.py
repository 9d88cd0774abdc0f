"""Schemas for playbook bindings."""

from datetime import datetime

from pydantic import BaseModel, Field


class BindingBase(BaseModel):
    """Base schema for playbook bindings."""

    event_type: str = Field(..., min_length=1, max_length=100)
    predicate: str | None = Field(None, max_length=2048)
    playbook_id: int
    priority: int = 0
    is_active: bool = True
    description: str | None = None


class BindingCreate(BindingBase):
    """Schema for creating a binding."""


class BindingUpdate(BaseModel):
    """Schema for updating a binding. Only supplied fields change."""

    event_type: str | None = Field(None, min_length=1, max_length=100)
    predicate: str | None = Field(None, max_length=2048)
    playbook_id: int | None = None
    priority: int | None = None
    is_active: bool | None = None
    description: str | None = None


class BindingResponse(BindingBase):
    """Schema for binding response."""

    id: int
    organization_id: int
    created_at: datetime | None = None
    updated_at: datetime | None = None

    class Config:
        from_attributes = True


class BindingListResponse(BaseModel):
    bindings: list[BindingResponse]
    total: int
