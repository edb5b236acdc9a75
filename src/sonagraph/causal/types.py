"""
Types for the causal hypergraph.

Nodes and edges live in flat id-keyed stores; adjacency is expressed as
sets of edge ids, never as object references.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Set, Tuple


class RelationType(str, Enum):
    """Closed set of relation kinds a hyperedge can carry."""
    CAUSES = "causes"
    ENABLES = "enables"
    PREVENTS = "prevents"
    CORRELATES = "correlates"
    PRECEDES = "precedes"
    TRIGGERS = "triggers"
    DERIVED_FROM = "derived_from"

    @property
    def is_provenance(self) -> bool:
        return self is RelationType.DERIVED_FROM

    @property
    def is_causal(self) -> bool:
        return not self.is_provenance


class Direction(str, Enum):
    """Which adjacency set to follow during expansion."""
    FORWARD = "forward"
    BACKWARD = "backward"
    BOTH = "both"


@dataclass
class CausalNode:
    """
    An entry id participating in at least one hyperedge.

    Attributes:
        id: Entry id
        outgoing: Ids of hyperedges where this node is a source
        incoming: Ids of hyperedges where this node is a target
    """
    id: str
    outgoing: Set[str] = field(default_factory=set)
    incoming: Set[str] = field(default_factory=set)

    @property
    def is_isolated(self) -> bool:
        return not self.outgoing and not self.incoming


@dataclass(frozen=True)
class Hyperedge:
    """
    A relation from a set of source entries to a set of target entries.

    Attributes:
        id: Edge id
        relation_type: Kind of relation
        sources: Non-empty set of source node ids
        targets: Non-empty set of target node ids
        strength: Confidence in [0, 1]
        metadata: Optional free-form metadata
        created_at: Creation timestamp (seconds since epoch)
    """
    id: str
    relation_type: RelationType
    sources: FrozenSet[str]
    targets: FrozenSet[str]
    strength: float
    metadata: Optional[Dict[str, Any]] = None
    created_at: float = field(default_factory=time.time)

    def endpoints(self) -> FrozenSet[str]:
        return self.sources | self.targets


@dataclass(frozen=True)
class Neighbor:
    """
    One node reached from another through a single hyperedge.

    ``role`` is ``"target"`` when reached by following the edge forward and
    ``"source"`` when reached backward.
    """
    node_id: str
    edge_id: str
    strength: float
    relation_type: RelationType
    role: str


@dataclass
class CausalQuery:
    """
    Traversal request.

    Attributes:
        start_ids: Nodes to expand from
        direction: forward (outgoing), backward (incoming) or both
        max_depth: Maximum hops per path (defaults to 10)
        relation_types: Only follow edges of these types
        min_strength: Only follow edges at least this strong
    """
    start_ids: List[str]
    direction: Direction = Direction.FORWARD
    max_depth: Optional[int] = None
    relation_types: Optional[List[RelationType]] = None
    min_strength: Optional[float] = None


@dataclass(frozen=True)
class CausalPath:
    """A chain of hops with its running-product strength."""
    nodes: Tuple[str, ...]
    edges: Tuple[str, ...]
    total_strength: float
    relation_types: Tuple[RelationType, ...]

    def __len__(self):
        return len(self.edges)


@dataclass
class CausalTraversalResult:
    paths: List[CausalPath]
    visited_nodes: Set[str]
    visited_edges: Set[str]


@dataclass
class CausalGraphStats:
    node_count: int
    edge_count: int
    avg_out_degree: float
    avg_in_degree: float
    relation_type_counts: Dict[RelationType, int]
