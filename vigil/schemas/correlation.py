"""Schemas for correlation patterns and incident suggestions."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class PatternEntity(BaseModel):
    type: str
    """Type: alert or threat_intel"""

    id: str
    role: str


class CorrelationPattern(BaseModel):
    """A group of alerts believed to represent one underlying event.

    Produced per analysis run; ids derive from the technique and the member
    entity ids so repeated runs over the same data yield the same id.
    """

    id: str
    name: str
    description: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    entities: list[PatternEntity]
    technique: str
    """Technique: temporal or graph_based"""

    rules: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    def alert_ids(self) -> list[str]:
        return [entity.id for entity in self.entities if entity.type == "alert"]


class TimelineEntry(BaseModel):
    alert_id: str
    title: str
    severity: str
    timestamp: datetime


class IncidentAnalysis(BaseModel):
    attack_pattern: str
    confidence: float
    risk_assessment: str
    recommendations: list[str]


class IncidentSuggestion(BaseModel):
    pattern_id: str
    title: str
    description: str
    severity: str
    related_alerts: list[str]
    timeline: list[TimelineEntry]
    mitre_tactics: list[str]
    analysis: IncidentAnalysis


class CorrelationRunRequest(BaseModel):
    lookback_hours: float | None = Field(None, gt=0, le=720)
    confidence_threshold: float | None = Field(None, ge=0.0, le=1.0)
    persist: bool | None = None


class CorrelationRunResponse(BaseModel):
    alerts_analyzed: int
    patterns: list[CorrelationPattern]
    suggestions: list[IncidentSuggestion]
    incidents_created: int = 0
