"""Playbook and playbook step models."""

from __future__ import annotations

from sqlalchemy import Boolean, ForeignKey, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from vigil.db.base import Base, TimestampMixin


class StepErrorPolicy:
    """Values accepted by PlaybookStep.on_error."""

    ABORT = "abort"
    CONTINUE = "continue"
    ROLLBACK = "rollback"

    ALL = (ABORT, CONTINUE, ROLLBACK)


class Playbook(Base, TimestampMixin):
    """An ordered, versioned sequence of automated response steps."""

    __tablename__ = "playbooks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    steps: Mapped[list[PlaybookStep]] = relationship(
        "PlaybookStep",
        back_populates="playbook",
        order_by="PlaybookStep.sequence",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class PlaybookStep(Base):
    """One step of a playbook. Immutable once the playbook is versioned."""

    __tablename__ = "playbook_steps"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    playbook_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("playbooks.id", ondelete="CASCADE"), nullable=False
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    step_key: Mapped[str] = mapped_column(String(100), nullable=False)
    action_id: Mapped[str] = mapped_column(String(100), nullable=False)
    """Name of the action in the action registry"""

    condition: Mapped[str | None] = mapped_column(Text, nullable=True)
    inputs: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    on_error: Mapped[str] = mapped_column(String(20), nullable=False, default=StepErrorPolicy.ABORT)
    timeout_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    playbook: Mapped[Playbook] = relationship("Playbook", back_populates="steps")

    __table_args__ = (
        Index("idx_playbook_steps_sequence", "playbook_id", "sequence"),
    )
