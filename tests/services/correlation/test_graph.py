"""Tests for graph-based community correlation."""

from datetime import UTC, datetime, timedelta

from vigil.services.correlation.graph import GraphCorrelator, build_ioc_indices
from vigil.services.correlation.types import CorrelationAlert, ThreatIntelEntry

BASE = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _alert(alert_id, source, minutes=0, source_ip=None, destination_ip=None, iocs=None, title=None):
    return CorrelationAlert.build(
        id=alert_id,
        title=title or f"Alert {alert_id}",
        severity="high",
        source=source,
        timestamp=BASE + timedelta(minutes=minutes),
        source_ip=source_ip,
        destination_ip=destination_ip,
        metadata={"extractedIocs": iocs} if iocs else None,
    )


class TestFindPatterns:
    def test_shared_ip_forms_a_two_node_community(self):
        alerts = [
            _alert("a", "firewall", source_ip="198.51.100.7"),
            _alert("b", "ids", destination_ip="198.51.100.7"),
            _alert("c", "okta", source_ip="203.0.113.50"),
        ]

        patterns = GraphCorrelator().find_patterns(alerts)

        assert len(patterns) == 1
        pattern = patterns[0]
        assert sorted(pattern.alert_ids()) == ["a", "b"]
        assert pattern.metadata["density"] == 1.0
        assert pattern.confidence == 1.0
        assert pattern.metadata["primary_iocs"] == ["198.51.100.7"]

    def test_threat_intel_joins_the_community(self):
        alerts = [
            _alert("a", "firewall", iocs={"domains": ["Evil.example"]}),
            _alert("b", "proxy", iocs={"domains": ["evil.example"]}),
        ]
        intel = [ThreatIntelEntry.build("t1", "Known C2", {"domains": ["evil.example"]})]

        pattern = GraphCorrelator().find_patterns(alerts, intel)[0]

        kinds = sorted((e.type, e.id) for e in pattern.entities)
        assert kinds == [("alert", "a"), ("alert", "b"), ("threat_intel", "t1")]
        assert pattern.metadata["community_size"] == 3

    def test_same_source_within_window(self):
        alerts = [_alert("a", "edr", 0), _alert("b", "edr", 30), _alert("c", "edr", 60 * 30)]

        patterns = GraphCorrelator(time_window_hours=1).find_patterns(alerts)

        assert len(patterns) == 1
        assert sorted(patterns[0].alert_ids()) == ["a", "b"]
        # 0.6 * density 1.0 + 0.4 * same-source weight 0.6
        assert abs(patterns[0].confidence - 0.84) < 1e-9

    def test_sparse_chain_is_rejected(self):
        alerts = [
            _alert("a", "s1", iocs={"hashes": ["h1"]}),
            _alert("b", "s2", iocs={"hashes": ["h1", "h2"]}),
            _alert("c", "s3", iocs={"hashes": ["h2", "h3"]}),
            _alert("d", "s4", iocs={"hashes": ["h3"]}),
        ]

        assert GraphCorrelator().find_patterns(alerts) == []

    def test_needs_two_alerts(self):
        assert GraphCorrelator().find_patterns([_alert("a", "edr")]) == []


class TestBuildGraph:
    def test_one_edge_per_pair_with_strongest_weight(self):
        alerts = [
            _alert("a", "edr", source_ip="198.51.100.7"),
            _alert("b", "edr", 5, source_ip="198.51.100.7"),
        ]

        graph = GraphCorrelator().build_graph(alerts, [])

        assert len(graph.edges) == 1
        edge = next(iter(graph.edges.values()))
        assert edge.weight == 1.0
        assert {r["type"] for r in edge.relations} == {"shares_ioc", "same_source"}

    def test_ioc_indices(self):
        alerts = [_alert("a", "edr", source_ip="198.51.100.7", iocs={"hashes": ["ABC"]})]
        intel = [ThreatIntelEntry.build("t1", "feed", {"hashes": ["abc"]})]

        indices = build_ioc_indices(alerts, intel)

        assert indices["ip"]["198.51.100.7"] == [("alert", "a")]
        assert indices["hash"]["abc"] == [("alert", "a"), ("threat_intel", "t1")]

    def test_central_node_titles_the_community(self):
        alerts = [
            _alert("hub", "s1", title="Beaconing from finance workstation", iocs={"ips": ["1.1.1.1", "2.2.2.2"]}),
            _alert("x", "s2", iocs={"ips": ["1.1.1.1"]}),
            _alert("y", "s3", iocs={"ips": ["2.2.2.2"]}),
        ]
        correlator = GraphCorrelator()

        communities = correlator.detect_communities(correlator.build_graph(alerts, []))

        assert len(communities) == 1
        assert communities[0].central_nodes[0] == (("alert", "hub"), 2)
        assert communities[0].name == "Group based on Beaconing from finance worksta"
