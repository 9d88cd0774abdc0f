"""Incident model created from accepted correlation suggestions."""

from __future__ import annotations

from sqlalchemy import Float, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from vigil.db.base import Base, TimestampMixin


class Incident(Base, TimestampMixin):
    __tablename__ = "incidents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[int] = mapped_column(Integer, nullable=False)
    pattern_id: Mapped[str] = mapped_column(String(100), nullable=False)
    """Deterministic id of the correlation pattern the incident came from"""

    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="new")
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    related_alerts: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    timeline: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    mitre_tactics: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    analysis: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)

    __table_args__ = (
        UniqueConstraint("organization_id", "pattern_id", name="uq_incident_org_pattern"),
    )
