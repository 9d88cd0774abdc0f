"""
Graph correlation: connected communities of alerts and threat intel.

Nodes are alerts and threat-intel entries. Two nodes are linked when they
share an IP, domain or file hash, or (for alerts) come from the same source
within the time window. The graph is simple: a pair of nodes has at most one
edge, weighted by the strongest relation between them. Communities are the
connected components of that graph.
"""

import logging
from collections import defaultdict, deque
from collections.abc import Sequence
from dataclasses import dataclass, field

from vigil.schemas.correlation import CorrelationPattern, PatternEntity
from vigil.services.correlation.temporal import pattern_id
from vigil.services.correlation.types import CorrelationAlert, ThreatIntelEntry

logger = logging.getLogger(__name__)

TECHNIQUE = "graph_based"

IOC_WEIGHTS = {"ip": 1.0, "domain": 0.8, "hash": 1.0}
SAME_SOURCE_WEIGHT = 0.6
DENSITY_ACCEPTANCE = 0.5
CENTRAL_NODE_COUNT = 3

NodeKey = tuple[str, str]


@dataclass
class Edge:
    source: NodeKey
    target: NodeKey
    weight: float = 0.0
    relations: list[dict] = field(default_factory=list)

    def add_relation(self, relation: dict, weight: float) -> None:
        self.relations.append(relation)
        self.weight = max(self.weight, weight)


@dataclass
class EntityGraph:
    nodes: dict[NodeKey, CorrelationAlert | ThreatIntelEntry]
    edges: dict[frozenset, Edge]
    adjacency: dict[NodeKey, set[NodeKey]]


@dataclass
class Community:
    nodes: list[NodeKey]
    edges: list[Edge]
    density: float
    confidence: float
    central_nodes: list[tuple[NodeKey, int]]
    name: str


def build_ioc_indices(
    alerts: Sequence[CorrelationAlert], threat_intel: Sequence[ThreatIntelEntry]
) -> dict[str, dict[str, list[NodeKey]]]:
    """Index every node by each IOC it carries: {"ip": {value: [node, ...]}, ...}."""
    indices: dict[str, dict[str, list[NodeKey]]] = {kind: defaultdict(list) for kind in IOC_WEIGHTS}

    entries: list[tuple[NodeKey, CorrelationAlert | ThreatIntelEntry]] = [
        (("alert", a.id), a) for a in alerts
    ] + [(("threat_intel", t.id), t) for t in threat_intel]

    for key, entity in entries:
        for ip in sorted(entity.iocs.ips):
            indices["ip"][ip].append(key)
        for domain in sorted(entity.iocs.domains):
            indices["domain"][domain].append(key)
        for file_hash in sorted(entity.iocs.hashes):
            indices["hash"][file_hash].append(key)

    return indices


class GraphCorrelator:
    def __init__(self, time_window_hours: float = 24.0):
        self.time_window_hours = time_window_hours

    def find_patterns(
        self,
        alerts: Sequence[CorrelationAlert],
        threat_intel: Sequence[ThreatIntelEntry] = (),
    ) -> list[CorrelationPattern]:
        """
        Build the entity graph and turn dense communities into patterns.

        Only communities with at least two nodes and a density above 0.5 are
        reported, most confident first.
        """
        if len(alerts) < 2:
            return []

        graph = self.build_graph(alerts, threat_intel)
        patterns = []

        for community in self.detect_communities(graph):
            if len(community.nodes) < 2 or community.density <= DENSITY_ACCEPTANCE:
                continue
            patterns.append(self._build_pattern(community))

        patterns.sort(key=lambda p: p.confidence, reverse=True)
        logger.debug(
            f"Graph correlation: {len(graph.nodes)} nodes, {len(graph.edges)} edges, "
            f"{len(patterns)} communities accepted"
        )
        return patterns

    def build_graph(
        self, alerts: Sequence[CorrelationAlert], threat_intel: Sequence[ThreatIntelEntry]
    ) -> EntityGraph:
        nodes: dict[NodeKey, CorrelationAlert | ThreatIntelEntry] = {}
        for alert in alerts:
            nodes[("alert", alert.id)] = alert
        for entry in threat_intel:
            nodes[("threat_intel", entry.id)] = entry

        edges: dict[frozenset, Edge] = {}
        adjacency: dict[NodeKey, set[NodeKey]] = {key: set() for key in nodes}

        def link(a: NodeKey, b: NodeKey, relation: dict, weight: float) -> None:
            if a == b:
                return
            pair = frozenset((a, b))
            edge = edges.get(pair)
            if edge is None:
                edge = edges[pair] = Edge(source=a, target=b)
                adjacency[a].add(b)
                adjacency[b].add(a)
            edge.add_relation(relation, weight)

        for kind, index in build_ioc_indices(alerts, threat_intel).items():
            for value, members in index.items():
                for i in range(len(members)):
                    for j in range(i + 1, len(members)):
                        link(
                            members[i],
                            members[j],
                            {"type": "shares_ioc", "ioc": value, "ioc_type": kind},
                            IOC_WEIGHTS[kind],
                        )

        window_seconds = self.time_window_hours * 3600
        by_source: dict[str, list[CorrelationAlert]] = defaultdict(list)
        for alert in alerts:
            by_source[alert.source].append(alert)

        for source, members in by_source.items():
            for i in range(len(members)):
                for j in range(i + 1, len(members)):
                    gap = abs((members[i].timestamp - members[j].timestamp).total_seconds())
                    if gap <= window_seconds:
                        link(
                            ("alert", members[i].id),
                            ("alert", members[j].id),
                            {"type": "same_source", "source": source},
                            SAME_SOURCE_WEIGHT,
                        )

        return EntityGraph(nodes=nodes, edges=edges, adjacency=adjacency)

    def detect_communities(self, graph: EntityGraph) -> list[Community]:
        """Connected components via BFS over the adjacency map, most confident first."""
        if len(graph.nodes) < 2 or not graph.edges:
            return []

        visited: set[NodeKey] = set()
        communities: list[Community] = []

        for start in graph.nodes:
            if start in visited:
                continue
            component = [start]
            visited.add(start)
            queue = deque([start])
            while queue:
                current = queue.popleft()
                for neighbor in sorted(graph.adjacency[current]):
                    if neighbor not in visited:
                        visited.add(neighbor)
                        component.append(neighbor)
                        queue.append(neighbor)

            if len(component) < 2:
                continue
            communities.append(self._describe(graph, component, len(communities) + 1))

        return sorted(communities, key=lambda c: c.confidence, reverse=True)

    def _describe(self, graph: EntityGraph, component: list[NodeKey], ordinal: int) -> Community:
        members = set(component)
        edges = [edge for edge in graph.edges.values() if edge.source in members and edge.target in members]

        max_edges = len(component) * (len(component) - 1) / 2
        density = len(edges) / max_edges if max_edges else 0.0
        avg_weight = sum(edge.weight for edge in edges) / len(edges) if edges else 0.0
        confidence = 0.6 * density + 0.4 * avg_weight

        degree: dict[NodeKey, int] = defaultdict(int)
        for edge in edges:
            degree[edge.source] += 1
            degree[edge.target] += 1
        order = {key: position for position, key in enumerate(component)}
        central = sorted(degree.items(), key=lambda item: (-item[1], order[item[0]]))[:CENTRAL_NODE_COUNT]

        name = f"Activity group {ordinal}"
        if central:
            top = graph.nodes[central[0][0]]
            name = f"Group based on {top.title[:30]}"

        return Community(
            nodes=component,
            edges=edges,
            density=density,
            confidence=confidence,
            central_nodes=central,
            name=name,
        )

    def _build_pattern(self, community: Community) -> CorrelationPattern:
        central_keys = {key for key, _ in community.central_nodes}

        primary_iocs: list[str] = []
        for edge in community.edges:
            for relation in edge.relations:
                ioc = relation.get("ioc")
                if ioc and ioc not in primary_iocs:
                    primary_iocs.append(ioc)

        return CorrelationPattern(
            id=pattern_id(TECHNIQUE, [f"{kind}:{node_id}" for kind, node_id in community.nodes]),
            name=f"Related entity group: {community.name}",
            description=(
                f"Network of {len(community.nodes)} related entities with a connection density of "
                f"{community.density * 100:.1f}%. {len(community.edges)} connections identified."
            ),
            confidence=min(1.0, community.confidence),
            entities=[
                PatternEntity(
                    type=kind,
                    id=node_id,
                    role="central" if (kind, node_id) in central_keys else "member",
                )
                for kind, node_id in community.nodes
            ],
            technique=TECHNIQUE,
            rules=["entity_relationship", "graph_community_detection", "centrality_analysis"],
            metadata={
                "community_name": community.name,
                "community_size": len(community.nodes),
                "density": community.density,
                "connections": len(community.edges),
                "central_nodes": [f"{kind}:{node_id}" for (kind, node_id), _ in community.central_nodes],
                "primary_iocs": primary_iocs,
            },
        )
