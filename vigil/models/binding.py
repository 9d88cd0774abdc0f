"""Playbook binding model."""

from __future__ import annotations

from sqlalchemy import Boolean, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from vigil.db.base import Base, TimestampMixin


class PlaybookBinding(Base, TimestampMixin):
    """Maps an event type plus an optional predicate to a playbook.

    Bindings are tenant-scoped. The predicate is validated when the binding
    is created or updated, so the trigger engine only ever sees predicates
    that parse.
    """

    __tablename__ = "playbook_bindings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[int] = mapped_column(Integer, nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    predicate: Mapped[str | None] = mapped_column(Text, nullable=True)
    playbook_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("playbooks.id", ondelete="CASCADE"), nullable=False
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("idx_playbook_bindings_lookup", "organization_id", "event_type", "is_active"),
    )
