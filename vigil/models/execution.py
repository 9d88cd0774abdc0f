"""Playbook execution and trigger dispatch models."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from vigil.db.base import Base, TimestampMixin, UUIDMixin


class ExecutionStatus:
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class DispatchState:
    """Lifecycle of an (event, binding) pair inside the trigger engine."""

    MATCHED = "matched"
    DISPATCHED = "dispatched"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class PlaybookExecution(Base):
    """Record of one playbook run. Finalized exactly once by the executor."""

    __tablename__ = "playbook_executions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    playbook_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("playbooks.id", ondelete="CASCADE"), nullable=False
    )
    organization_id: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=ExecutionStatus.RUNNING)
    trigger_source: Mapped[str] = mapped_column(String(50), nullable=False)
    trigger_entity_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    results: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_playbook_executions_playbook", "playbook_id", "started_at"),
    )


class TriggerDispatch(Base, UUIDMixin, TimestampMixin):
    """Persisted dedup record for an (event, binding) pair."""

    __tablename__ = "trigger_dispatches"

    event_id: Mapped[str] = mapped_column(String(100), nullable=False)
    binding_id: Mapped[int] = mapped_column(Integer, nullable=False)
    playbook_id: Mapped[int] = mapped_column(Integer, nullable=False)
    organization_id: Mapped[int] = mapped_column(Integer, nullable=False)
    state: Mapped[str] = mapped_column(String(20), nullable=False, default=DispatchState.MATCHED)
    execution_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Lease start while RUNNING; a reclaimed job may take over once the lease lapses
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("event_id", "binding_id", name="uq_trigger_dispatch_event_binding"),
    )
