"""Typed views of alerts and threat intel used by the correlators.

Indicators of compromise are extracted once, when the view is built, into an
IOCSet. The correlators index these sets per run instead of digging through
untyped metadata at every comparison.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from dateutil import parser as date_parser


def coerce_timestamp(value: datetime | str) -> datetime:
    """Return a timezone-aware datetime. Naive values are taken as UTC."""
    if isinstance(value, str):
        value = date_parser.isoparse(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value


def _normalized(values: Iterable[Any] | None, lower: bool = False) -> frozenset[str]:
    result = set()
    for value in values or ():
        if not isinstance(value, str):
            continue
        value = value.strip()
        if not value:
            continue
        result.add(value.lower() if lower else value)
    return frozenset(result)


@dataclass(frozen=True)
class IOCSet:
    ips: frozenset[str] = frozenset()
    domains: frozenset[str] = frozenset()
    hashes: frozenset[str] = frozenset()

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None, extra_ips: Iterable[str | None] = ()) -> "IOCSet":
        """Build from an ``{"ips", "domains", "hashes"}`` mapping."""
        data = data if isinstance(data, Mapping) else {}
        ips = list(data.get("ips") or []) + [ip for ip in extra_ips if ip]
        return cls(
            ips=_normalized(ips),
            domains=_normalized(data.get("domains"), lower=True),
            hashes=_normalized(data.get("hashes"), lower=True),
        )

    def is_empty(self) -> bool:
        return not (self.ips or self.domains or self.hashes)


@dataclass(frozen=True)
class CorrelationAlert:
    """Read-only alert as seen by the correlators."""

    id: str
    title: str
    severity: str
    source: str
    timestamp: datetime
    description: str = ""
    source_ip: str | None = None
    destination_ip: str | None = None
    status: str = "new"
    metadata: Mapping[str, Any] = field(default_factory=dict)
    iocs: IOCSet = field(default_factory=IOCSet)

    @classmethod
    def build(
        cls,
        id: Any,
        title: str,
        severity: str,
        source: str,
        timestamp: datetime | str,
        description: str | None = None,
        source_ip: str | None = None,
        destination_ip: str | None = None,
        status: str = "new",
        metadata: Mapping[str, Any] | None = None,
    ) -> "CorrelationAlert":
        """Construct a view, extracting IOCs from addresses and ``metadata.extractedIocs``."""
        metadata = dict(metadata or {})
        return cls(
            id=str(id),
            title=title,
            severity=(severity or "").lower(),
            source=source,
            timestamp=coerce_timestamp(timestamp),
            description=description or "",
            source_ip=source_ip,
            destination_ip=destination_ip,
            status=status,
            metadata=metadata,
            iocs=IOCSet.from_mapping(
                metadata.get("extractedIocs"), extra_ips=(source_ip, destination_ip)
            ),
        )

    @classmethod
    def from_model(cls, alert) -> "CorrelationAlert":
        return cls.build(
            id=alert.id,
            title=alert.title,
            severity=alert.severity,
            source=alert.source,
            timestamp=alert.timestamp,
            description=alert.description,
            source_ip=alert.source_ip,
            destination_ip=alert.destination_ip,
            status=alert.status,
            metadata=alert.alert_metadata,
        )

    @property
    def mitre_tactics(self) -> list[str]:
        analysis = self.metadata.get("aiAnalysis")
        tactics = None
        if isinstance(analysis, Mapping):
            tactics = analysis.get("mitreTactics")
        if tactics is None:
            tactics = self.metadata.get("mitreTactics")
        return [t for t in tactics or [] if isinstance(t, str)]


@dataclass(frozen=True)
class ThreatIntelEntry:
    id: str
    title: str
    iocs: IOCSet = field(default_factory=IOCSet)

    @classmethod
    def build(cls, id: Any, title: str, iocs: Mapping[str, Any] | None = None) -> "ThreatIntelEntry":
        return cls(id=str(id), title=title, iocs=IOCSet.from_mapping(iocs))

    @classmethod
    def from_model(cls, entry) -> "ThreatIntelEntry":
        return cls.build(entry.id, entry.title, entry.iocs)
