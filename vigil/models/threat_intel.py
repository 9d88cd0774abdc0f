from __future__ import annotations

from sqlalchemy import Integer, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from vigil.db.base import Base, TimestampMixin


class ThreatIntel(Base, TimestampMixin):
    """Threat-intelligence entry with its indicators of compromise."""

    __tablename__ = "threat_intel"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    iocs: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    """{"ips": [...], "domains": [...], "hashes": [...]}"""
