"""
Causal Hypergraph: directed many-to-many relations between entries.

A hyperedge links a *set* of source entries to a *set* of target entries.
Expanding through one edge therefore reaches its whole opposite node set,
and the branching factor of a traversal is edge fan-out, not node degree.

Paths may revisit a node but never reuse an edge, which keeps traversal
finite on cyclic graphs without requiring acyclicity. Path strength is the
running product of edge strengths:

    s(path) = Π_k strength(e_k)

so it never increases with length.
"""

import logging
import time
import uuid
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

import networkx as nx

from sonagraph.exceptions import InvalidEdge, NotFound
from sonagraph.locks import StripedLock
from sonagraph.causal.types import (
    CausalGraphStats,
    CausalNode,
    CausalPath,
    CausalQuery,
    CausalTraversalResult,
    Direction,
    Hyperedge,
    Neighbor,
    RelationType,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 10
MAX_TRAVERSAL_DEPTH = 32


def _coerce_relation(value) -> RelationType:
    try:
        return RelationType(value)
    except ValueError:
        raise InvalidEdge(f"Unknown relation type: {value!r}")


class Hypergraph:
    """
    In-memory hypergraph over entry ids.

    Nodes are created implicitly by the first edge that references them and
    pruned when their last edge is removed.

    Attributes:
        nodes: Node id -> CausalNode
        edges: Edge id -> Hyperedge
    """

    def __init__(self, lock_stripes: int = 64):
        self.nodes: Dict[str, CausalNode] = {}
        self.edges: Dict[str, Hyperedge] = {}
        self._locks = StripedLock(lock_stripes)

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def add_hyperedge(self, relation_type, sources: Iterable[str], targets: Iterable[str],
                      strength: float, metadata: Optional[Dict[str, Any]] = None,
                      edge_id: Optional[str] = None,
                      created_at: Optional[float] = None) -> str:
        """
        Add a hyperedge and wire it into every endpoint's adjacency.

        Args:
            relation_type: RelationType (or its string value)
            sources: Non-empty collection of source entry ids
            targets: Non-empty collection of target entry ids
            strength: Edge strength in [0, 1]
            metadata: Optional metadata stored on the edge
            edge_id: Explicit id (a fresh uuid is generated when omitted)
            created_at: Explicit creation time (used when restoring)

        Returns:
            str: The edge id

        Raises:
            InvalidEdge: On empty endpoints, out-of-range strength, unknown
                relation type or a duplicate explicit id
        """
        rel = _coerce_relation(relation_type)
        source_set = frozenset(sources)
        target_set = frozenset(targets)

        if not source_set:
            raise InvalidEdge("Hyperedge needs at least one source")
        if not target_set:
            raise InvalidEdge("Hyperedge needs at least one target")
        try:
            strength = float(strength)
        except (TypeError, ValueError):
            raise InvalidEdge(f"Strength must be a number, got {strength!r}")
        if not 0.0 <= strength <= 1.0:
            raise InvalidEdge(f"Strength must be in [0, 1], got {strength}")

        edge_id = edge_id or uuid.uuid4().hex
        edge = Hyperedge(
            id=edge_id,
            relation_type=rel,
            sources=source_set,
            targets=target_set,
            strength=strength,
            metadata=dict(metadata) if metadata else None,
            created_at=created_at if created_at is not None else time.time(),
        )

        with self._locks.hold_many([edge_id, *edge.endpoints()]):
            if edge_id in self.edges:
                raise InvalidEdge(f"Duplicate hyperedge id: {edge_id}")
            self.edges[edge_id] = edge
            for node_id in source_set:
                self._ensure_node(node_id).outgoing.add(edge_id)
            for node_id in target_set:
                self._ensure_node(node_id).incoming.add(edge_id)

        logger.debug("Added hyperedge %s (%s, %d->%d, %.3f)",
                     edge_id, rel.value, len(source_set), len(target_set), strength)
        return edge_id

    def remove_hyperedge(self, edge_id: str) -> Hyperedge:
        """
        Remove a hyperedge from every node that references it.

        Nodes left without any adjacency are pruned.

        Returns:
            Hyperedge: The removed edge

        Raises:
            NotFound: If no edge has this id
        """
        edge = self.edges.get(edge_id)
        if edge is None:
            raise NotFound(f"Hyperedge not found: {edge_id}")

        with self._locks.hold_many([edge_id, *edge.endpoints()]):
            if self.edges.pop(edge_id, None) is None:
                raise NotFound(f"Hyperedge not found: {edge_id}")
            for node_id in edge.sources:
                node = self.nodes.get(node_id)
                if node is not None:
                    node.outgoing.discard(edge_id)
            for node_id in edge.targets:
                node = self.nodes.get(node_id)
                if node is not None:
                    node.incoming.discard(edge_id)
            for node_id in edge.endpoints():
                node = self.nodes.get(node_id)
                if node is not None and node.is_isolated:
                    del self.nodes[node_id]

        logger.debug("Removed hyperedge %s", edge_id)
        return edge

    def remove_node(self, node_id: str) -> List[str]:
        """
        Remove every hyperedge touching ``node_id``.

        Returns:
            List[str]: Ids of the removed edges (empty for unknown nodes)
        """
        node = self.nodes.get(node_id)
        if node is None:
            return []
        with self._locks.hold(node_id):
            edge_ids = sorted(node.outgoing | node.incoming)
        removed = []
        for edge_id in edge_ids:
            try:
                self.remove_hyperedge(edge_id)
                removed.append(edge_id)
            except NotFound:
                continue
        return removed

    def clear(self):
        """Drop all nodes and edges."""
        self.nodes.clear()
        self.edges.clear()

    def _ensure_node(self, node_id: str) -> CausalNode:
        node = self.nodes.get(node_id)
        if node is None:
            node = CausalNode(id=node_id)
            self.nodes[node_id] = node
        return node

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get_node(self, node_id: str) -> Optional[CausalNode]:
        return self.nodes.get(node_id)

    def get_edge(self, edge_id: str) -> Optional[Hyperedge]:
        return self.edges.get(edge_id)

    def _adjacent_edge_ids(self, node_id: str, direction: Direction) -> Tuple[Set[str], Set[str]]:
        node = self.nodes.get(node_id)
        if node is None:
            return set(), set()
        with self._locks.hold(node_id):
            outgoing = set(node.outgoing) if direction != Direction.BACKWARD else set()
            incoming = set(node.incoming) if direction != Direction.FORWARD else set()
        return outgoing, incoming

    def relations_for(self, node_id: str, direction: Direction = Direction.BOTH) -> List[Hyperedge]:
        """Edges where ``node_id`` is a source (forward), a target (backward) or either."""
        outgoing, incoming = self._adjacent_edge_ids(node_id, Direction(direction))
        edges = [self.edges.get(eid) for eid in sorted(outgoing | incoming)]
        return [e for e in edges if e is not None]

    def neighbors(self, node_id: str, direction: Direction = Direction.FORWARD,
                  relation_types: Optional[Iterable[RelationType]] = None,
                  min_strength: Optional[float] = None) -> List[Neighbor]:
        """
        One-hop expansion of a node.

        Following an outgoing edge yields all of its targets; following an
        incoming edge yields all of its sources. The node itself is never
        its own neighbour. Results are ordered by edge id then node id.

        Args:
            node_id: Node to expand
            direction: Which adjacency set(s) to follow
            relation_types: Only follow edges of these types
            min_strength: Only follow edges at least this strong

        Returns:
            List[Neighbor]: One entry per (edge, reached node) pair
        """
        direction = Direction(direction)
        allowed = {RelationType(r) for r in relation_types} if relation_types else None
        outgoing, incoming = self._adjacent_edge_ids(node_id, direction)

        result: List[Neighbor] = []
        seen: Set[Tuple[str, str]] = set()
        for edge_id in sorted(outgoing | incoming):
            edge = self.edges.get(edge_id)
            if edge is None:
                continue
            if allowed is not None and edge.relation_type not in allowed:
                continue
            if min_strength is not None and edge.strength < min_strength:
                continue

            sides = []
            if edge_id in outgoing:
                sides.append((edge.targets, "target"))
            if edge_id in incoming:
                sides.append((edge.sources, "source"))
            for members, role in sides:
                for other in sorted(members):
                    if other == node_id or (edge_id, other) in seen:
                        continue
                    seen.add((edge_id, other))
                    result.append(Neighbor(
                        node_id=other,
                        edge_id=edge_id,
                        strength=edge.strength,
                        relation_type=edge.relation_type,
                        role=role,
                    ))
        return result

    # ------------------------------------------------------------------
    # Traversal
    # ------------------------------------------------------------------

    def traverse(self, query: CausalQuery) -> CausalTraversalResult:
        """
        Enumerate causal paths from the query's start nodes.

        Depth-first expansion where every hop follows one hyperedge to one
        node of its opposite side. An edge is used at most once per path.
        Every path discovered within ``max_depth`` hops is emitted, ranked
        by total strength (strongest first), then by length.
        Start ids that are not in the graph are ignored.

        Args:
            query: CausalQuery describing start ids, direction and filters

        Returns:
            CausalTraversalResult: paths, visited node ids, visited edge ids
        """
        max_depth = DEFAULT_MAX_DEPTH if query.max_depth is None else query.max_depth
        if max_depth < 0:
            raise ValueError(f"max_depth must be >= 0, got {max_depth}")
        max_depth = min(max_depth, MAX_TRAVERSAL_DEPTH)
        direction = Direction(query.direction)

        paths: List[CausalPath] = []
        visited_nodes: Set[str] = set()
        visited_edges: Set[str] = set()

        def dfs(node_id: str, nodes: Tuple[str, ...], edges: Tuple[str, ...],
                strength: float, rel_types: Tuple[RelationType, ...]):
            visited_nodes.add(node_id)
            if len(edges) >= max_depth:
                return

            for nb in self.neighbors(node_id, direction, query.relation_types, query.min_strength):
                if nb.edge_id in edges:
                    continue
                visited_edges.add(nb.edge_id)

                new_nodes = nodes + (nb.node_id,)
                new_edges = edges + (nb.edge_id,)
                new_strength = strength * nb.strength
                new_types = rel_types + (nb.relation_type,)

                paths.append(CausalPath(new_nodes, new_edges, new_strength, new_types))
                dfs(nb.node_id, new_nodes, new_edges, new_strength, new_types)

        for start_id in dict.fromkeys(query.start_ids):
            if start_id not in self.nodes:
                continue
            dfs(start_id, (start_id,), (), 1.0, ())

        paths.sort(key=lambda p: (-p.total_strength, len(p.edges), p.nodes, p.edges))
        return CausalTraversalResult(paths=paths, visited_nodes=visited_nodes,
                                     visited_edges=visited_edges)

    def find_paths(self, source_id: str, target_id: str,
                   max_depth: int = DEFAULT_MAX_DEPTH) -> List[CausalPath]:
        """Forward paths from ``source_id`` that end at ``target_id``."""
        result = self.traverse(CausalQuery(start_ids=[source_id], direction=Direction.FORWARD,
                                           max_depth=max_depth))
        return [p for p in result.paths if p.nodes[-1] == target_id]

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def stats(self) -> CausalGraphStats:
        """Node/edge counts, mean degrees and per-relation edge counts."""
        nodes = list(self.nodes.values())
        edges = list(self.edges.values())

        counts: Dict[RelationType, int] = {}
        for edge in edges:
            counts[edge.relation_type] = counts.get(edge.relation_type, 0) + 1

        total_out = sum(len(n.outgoing) for n in nodes)
        total_in = sum(len(n.incoming) for n in nodes)
        n = len(nodes)

        return CausalGraphStats(
            node_count=n,
            edge_count=len(edges),
            avg_out_degree=total_out / n if n else 0.0,
            avg_in_degree=total_in / n if n else 0.0,
            relation_type_counts=counts,
        )

    def export(self) -> Dict[str, List[Dict[str, Any]]]:
        """
        Serializable summary for inspection tooling (no embeddings).

        Returns:
            dict: ``nodes`` (id, out_degree, in_degree) and ``edges``
                (id, type, sources, targets, strength)
        """
        nodes = [
            {'id': node.id, 'out_degree': len(node.outgoing), 'in_degree': len(node.incoming)}
            for node in sorted(self.nodes.values(), key=lambda n: n.id)
        ]
        edges = [
            {
                'id': edge.id,
                'type': edge.relation_type.value,
                'sources': sorted(edge.sources),
                'targets': sorted(edge.targets),
                'strength': edge.strength,
            }
            for edge in sorted(self.edges.values(), key=lambda e: e.id)
        ]
        return {'nodes': nodes, 'edges': edges}

    def to_mermaid(self) -> str:
        """Render every source->target pair as a Mermaid flowchart."""
        lines = ['graph LR']
        for edge in sorted(self.edges.values(), key=lambda e: e.id):
            label = f"{edge.relation_type.value}({edge.strength:.2f})"
            for source in sorted(edge.sources):
                for target in sorted(edge.targets):
                    lines.append(f"    {source} -->|{label}| {target}")
        return '\n'.join(lines)

    def to_networkx(self) -> nx.DiGraph:
        """
        Bipartite directed view: entry nodes and hyperedge nodes.

        Each hyperedge becomes a node (``kind='hyperedge'``) with arcs from
        its sources and to its targets, which keeps set semantics intact.
        """
        graph = nx.DiGraph()
        for node_id in self.nodes:
            graph.add_node(node_id, kind='entry')
        for edge in self.edges.values():
            graph.add_node(edge.id, kind='hyperedge', relation=edge.relation_type.value,
                           strength=edge.strength)
            for source in edge.sources:
                graph.add_edge(source, edge.id, weight=edge.strength)
            for target in edge.targets:
                graph.add_edge(edge.id, target, weight=edge.strength)
        return graph

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Full edge list with every field, for the persistence boundary."""
        return {
            'edges': [
                {
                    'id': edge.id,
                    'type': edge.relation_type.value,
                    'sources': sorted(edge.sources),
                    'targets': sorted(edge.targets),
                    'strength': edge.strength,
                    'metadata': edge.metadata,
                    'created_at': edge.created_at,
                }
                for edge in sorted(self.edges.values(), key=lambda e: e.created_at)
            ]
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Hypergraph":
        """
        Rebuild a hypergraph from ``to_dict`` output.

        Every edge goes back through ``add_hyperedge`` so node adjacency is
        reconstructed (and validated) rather than trusted from the payload.
        """
        graph = cls()
        for item in data.get('edges', []):
            graph.add_hyperedge(
                item['type'],
                item['sources'],
                item['targets'],
                item['strength'],
                metadata=item.get('metadata'),
                edge_id=item['id'],
                created_at=item.get('created_at'),
            )
        return graph

    def __len__(self):
        return len(self.edges)

    def __repr__(self):
        return f"Hypergraph(nodes={len(self.nodes)}, edges={len(self.edges)})"
