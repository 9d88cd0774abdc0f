"""Temporal correlation: sliding windows over time-ordered alerts."""

import hashlib
import logging
import math
from collections.abc import Sequence

from vigil.schemas.correlation import CorrelationPattern, PatternEntity
from vigil.services.correlation.types import CorrelationAlert

logger = logging.getLogger(__name__)

TECHNIQUE = "temporal"

SEVERITY_WEIGHTS = {
    "critical": 1.0,
    "high": 0.75,
    "medium": 0.5,
    "low": 0.25,
}
DEFAULT_SEVERITY_WEIGHT = 0.5

# Checked in order; the first label with a keyword in the title or description wins
EVENT_TYPE_KEYWORDS = [
    ("authentication", ("login", "authentication")),
    ("malware", ("malware", "virus")),
    ("exploit", ("exploit", "vulnerability")),
    ("access", ("access", "permission")),
    ("data_movement", ("data", "exfiltration")),
    ("reconnaissance", ("scan", "reconnaissance")),
    ("command_and_control", ("command", "c2", "command and control")),
    ("lateral_movement", ("lateral", "movement")),
]

KNOWN_SOURCE_TYPES = ("firewall", "waf", "ids", "ips", "edr", "xdr", "ndr", "dlp")

SEQUENCE_ACCEPTANCE = 0.5
MAX_WINDOW = 5


def pattern_id(technique: str, member_ids: Sequence[str]) -> str:
    """Stable id for a pattern: same technique and members give the same id."""
    digest = hashlib.sha256("|".join(sorted(member_ids)).encode()).hexdigest()[:16]
    return f"{technique}-{digest}"


def normalize_event_type(alert: CorrelationAlert) -> str:
    """Coarse label for an alert from keywords in its title/description, else its source."""
    title = alert.title.lower()
    description = alert.description.lower()

    for label, keywords in EVENT_TYPE_KEYWORDS:
        if any(keyword in title or keyword in description for keyword in keywords):
            return label

    source = alert.source.lower()
    if any(known in source for known in KNOWN_SOURCE_TYPES):
        return source.split(" ")[0]

    return "generic_event"


def format_timespan(seconds: float) -> str:
    minutes = round(seconds / 60)
    if minutes < 60:
        return f"{minutes} minutes"
    if minutes < 1440:
        hours, mins = divmod(minutes, 60)
        return f"{hours} hours" + (f" {mins} minutes" if mins else "")
    days, rest = divmod(minutes, 1440)
    hours = rest // 60
    return f"{days} days" + (f" {hours} hours" if hours else "")


class TemporalCorrelator:
    """
    Finds short, tightly-spaced alert sequences.

    Windows of 2 to 5 consecutive alerts (by timestamp) whose span fits in
    ``time_window_hours`` are scored as
    ``0.4 * time + 0.4 * severity + 0.2 * source diversity``; only scores
    above 0.5 become patterns.
    """

    def __init__(self, time_window_hours: float = 24.0):
        self.time_window_hours = time_window_hours

    @property
    def window_ms(self) -> float:
        return self.time_window_hours * 60 * 60 * 1000

    def find_patterns(self, alerts: Sequence[CorrelationAlert]) -> list[CorrelationPattern]:
        if len(alerts) < 2:
            return []

        ordered = sorted(alerts, key=lambda a: a.timestamp)
        best: dict[frozenset[str], CorrelationPattern] = {}

        for size in range(2, min(MAX_WINDOW, len(ordered)) + 1):
            for start in range(len(ordered) - size + 1):
                window = ordered[start:start + size]
                span_ms = (window[-1].timestamp - window[0].timestamp).total_seconds() * 1000
                if span_ms > self.window_ms:
                    continue

                confidence = (
                    0.4 * self.time_factor(span_ms)
                    + 0.4 * self.severity_factor(window)
                    + 0.2 * self.source_factor(window)
                )
                if confidence <= SEQUENCE_ACCEPTANCE:
                    continue

                members = frozenset(alert.id for alert in window)
                current = best.get(members)
                if current is None or confidence > current.confidence:
                    best[members] = self._build_pattern(window, confidence, span_ms)

        patterns = sorted(best.values(), key=lambda p: p.confidence, reverse=True)
        logger.debug(f"Temporal correlation found {len(patterns)} sequences in {len(alerts)} alerts")
        return patterns

    def time_factor(self, span_ms: float) -> float:
        """1.0 for simultaneous alerts, decaying logarithmically to 0 at the window limit."""
        value = 1 - math.log(span_ms + 1) / math.log(self.window_ms + 1)
        return max(0.0, min(1.0, value))

    def severity_factor(self, alerts: Sequence[CorrelationAlert]) -> float:
        total = sum(SEVERITY_WEIGHTS.get(a.severity.lower(), DEFAULT_SEVERITY_WEIGHT) for a in alerts)
        return total / len(alerts)

    def source_factor(self, alerts: Sequence[CorrelationAlert]) -> float:
        return min(1.0, len({a.source for a in alerts}) / 3)

    def _build_pattern(
        self, window: Sequence[CorrelationAlert], confidence: float, span_ms: float
    ) -> CorrelationPattern:
        events = [normalize_event_type(alert) for alert in window]
        head = " -> ".join(events[:2]) + ("..." if len(events) > 2 else "")
        return CorrelationPattern(
            id=pattern_id(TECHNIQUE, [a.id for a in window]),
            name=f"Event sequence: {head}",
            description=(
                f"Temporal pattern across {len(window)} related events. "
                f"The sequence {' -> '.join(events)} suggests a coordinated campaign."
            ),
            confidence=confidence,
            entities=[PatternEntity(type="alert", id=a.id, role="sequence_member") for a in window],
            technique=TECHNIQUE,
            rules=["temporal_sequence", "causality_analysis"],
            metadata={
                "sequence_events": events,
                "timespan": format_timespan(span_ms / 1000),
                "timespan_ms": span_ms,
            },
        )
