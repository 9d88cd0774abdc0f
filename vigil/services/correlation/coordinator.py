"""
Correlation coordinator.

Runs the temporal and graph correlators over the same batch of alerts, ranks
the combined patterns, and turns those above the confidence threshold into
incident suggestions.
"""

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from vigil.schemas.correlation import (
    CorrelationPattern,
    IncidentAnalysis,
    IncidentSuggestion,
    TimelineEntry,
)
from vigil.services.correlation.graph import GraphCorrelator
from vigil.services.correlation.temporal import TemporalCorrelator
from vigil.services.correlation.types import CorrelationAlert, ThreatIntelEntry
from vigil.services.stores import AlertSource, IncidentStore, ThreatIntelSource

logger = logging.getLogger(__name__)

RECOMMENDATIONS = [
    "Investigate the connections between these alerts",
    "Check whether other systems are affected by the same IOCs",
    "Consider preventive blocks for the identified IOCs",
]


@dataclass
class CorrelationResult:
    alerts_analyzed: int
    patterns: list[CorrelationPattern] = field(default_factory=list)
    suggestions: list[IncidentSuggestion] = field(default_factory=list)
    incidents_created: int = 0


def aggregate_severity(alerts: Sequence[CorrelationAlert]) -> str:
    """
    Severity of a group of alerts.

    Any critical alert makes the group critical; otherwise high or low win
    only by outnumbering the other two levels combined, and medium is the
    fallback.
    """
    counts = {level: 0 for level in ("critical", "high", "medium", "low")}
    for alert in alerts:
        if alert.severity in counts:
            counts[alert.severity] += 1

    if counts["critical"] > 0:
        return "critical"
    if counts["high"] > counts["medium"] + counts["low"]:
        return "high"
    if counts["low"] > counts["medium"] + counts["high"]:
        return "low"
    return "medium"


class CorrelationCoordinator:
    def __init__(
        self,
        temporal: TemporalCorrelator,
        graph: GraphCorrelator,
        alerts: AlertSource,
        threat_intel: ThreatIntelSource,
        incidents: IncidentStore | None = None,
        confidence_threshold: float = 0.65,
        lookback_hours: float = 24.0,
        min_alerts: int = 3,
    ):
        self.temporal = temporal
        self.graph = graph
        self.alerts = alerts
        self.threat_intel = threat_intel
        self.incidents = incidents
        self.confidence_threshold = confidence_threshold
        self.lookback_hours = lookback_hours
        self.min_alerts = min_alerts

    def correlate(
        self,
        alerts: Sequence[CorrelationAlert],
        threat_intel: Sequence[ThreatIntelEntry] = (),
        confidence_threshold: float | None = None,
    ) -> CorrelationResult:
        """Run both correlators over one batch and derive suggestions."""
        threshold = self.confidence_threshold if confidence_threshold is None else confidence_threshold

        patterns = [*self.temporal.find_patterns(alerts), *self.graph.find_patterns(alerts, threat_intel)]
        patterns.sort(key=lambda p: p.confidence, reverse=True)

        by_id = {alert.id: alert for alert in alerts}
        suggestions = []
        for pattern in patterns:
            if pattern.confidence < threshold:
                continue
            related = [by_id[alert_id] for alert_id in pattern.alert_ids() if alert_id in by_id]
            if not related:
                continue
            suggestions.append(self.to_suggestion(pattern, related))

        return CorrelationResult(alerts_analyzed=len(alerts), patterns=patterns, suggestions=suggestions)

    def to_suggestion(
        self, pattern: CorrelationPattern, related: Sequence[CorrelationAlert]
    ) -> IncidentSuggestion:
        timeline = sorted(
            (
                TimelineEntry(alert_id=a.id, title=a.title, severity=a.severity, timestamp=a.timestamp)
                for a in related
            ),
            key=lambda entry: entry.timestamp,
        )

        tactics: list[str] = []
        for alert in related:
            for tactic in alert.mitre_tactics:
                if tactic not in tactics:
                    tactics.append(tactic)

        return IncidentSuggestion(
            pattern_id=pattern.id,
            title=pattern.name,
            description=(
                f"{pattern.description}\n\nDetected by the \"{pattern.technique}\" correlation "
                f"technique with {pattern.confidence * 100:.1f}% confidence."
            ),
            severity=aggregate_severity(related),
            related_alerts=[a.id for a in related],
            timeline=timeline,
            mitre_tactics=tactics,
            analysis=IncidentAnalysis(
                attack_pattern=pattern.technique,
                confidence=pattern.confidence,
                risk_assessment=f"Risk assessment based on the correlation of {len(related)} related alerts.",
                recommendations=list(RECOMMENDATIONS),
            ),
        )

    async def analyze(
        self,
        organization_id: int,
        lookback_hours: float | None = None,
        confidence_threshold: float | None = None,
        persist: bool = False,
    ) -> CorrelationResult:
        """
        Correlate an organization's recent unresolved alerts.

        Fewer than ``min_alerts`` alerts in the lookback window yields an
        empty result. With ``persist`` set, suggestions are stored as
        incidents; an incident already created for a pattern is not
        duplicated.
        """
        hours = lookback_hours or self.lookback_hours
        since = datetime.now(UTC) - timedelta(hours=hours)
        alerts = await self.alerts.list_recent(organization_id, since)

        if len(alerts) < self.min_alerts:
            logger.info(
                f"Not enough recent alerts for correlation in org {organization_id} "
                f"({len(alerts)} < {self.min_alerts})"
            )
            return CorrelationResult(alerts_analyzed=len(alerts))

        intel = await self.threat_intel.list_for_organization(organization_id)
        result = self.correlate(alerts, intel, confidence_threshold)

        if persist and self.incidents is not None:
            for suggestion in result.suggestions:
                try:
                    if await self.incidents.create_from_suggestion(organization_id, suggestion):
                        result.incidents_created += 1
                except Exception as e:
                    logger.error(f"Failed to create incident from pattern {suggestion.pattern_id}: {e}")

        logger.info(
            f"Correlation for org {organization_id}: {len(alerts)} alerts, "
            f"{len(result.patterns)} patterns, {len(result.suggestions)} suggestions, "
            f"{result.incidents_created} incidents created"
        )
        return result
