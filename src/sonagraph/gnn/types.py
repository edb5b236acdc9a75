"""
Types for ego-graph extraction and embedding enhancement.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

import numpy as np

from sonagraph.causal.types import Direction, RelationType


class Aggregation(str, Enum):
    MEAN = "mean"
    SUM = "sum"
    MAX = "max"
    ATTENTION = "attention"


class Activation(str, Enum):
    RELU = "relu"
    GELU = "gelu"
    TANH = "tanh"
    NONE = "none"


@dataclass(frozen=True)
class EgoGraphConfig:
    """
    Bounds for ego-graph extraction.

    Attributes:
        max_hops: Maximum BFS depth from the center
        max_neighbors_per_hop: Cap on nodes admitted per hop (heaviest kept)
        include_causal: Follow causal-family relations
        include_provenance: Follow derived_from relations
        min_edge_weight: Drop edges weaker than this
        direction: Adjacency followed from each node
    """
    max_hops: int = 2
    max_neighbors_per_hop: int = 50
    include_causal: bool = True
    include_provenance: bool = True
    min_edge_weight: float = 0.0
    direction: Direction = Direction.BOTH


@dataclass
class EgoNode:
    """
    One neighbour inside an ego graph.

    Attributes:
        id: Entry id
        hop: Distance from the center (>= 1)
        edge_weight: Strength of the edge that admitted this node
        embedding: Decoded vector, or None when unavailable
        relation_type: Relation of the admitting edge
        parent_id: Node this one was reached from
    """
    id: str
    hop: int
    edge_weight: float
    embedding: Optional[np.ndarray] = None
    relation_type: Optional[RelationType] = None
    parent_id: Optional[str] = None


@dataclass(frozen=True)
class EgoEdge:
    source: str
    target: str
    weight: float
    relation_type: RelationType
    edge_id: str


@dataclass
class EgoGraph:
    """
    Bounded neighbourhood around one entry.

    ``truncated`` is set when any hop had more candidates than the cap
    allowed; ``failures`` holds per-node embedding load errors.
    """
    center_id: str
    center_embedding: np.ndarray
    nodes: List[EgoNode] = field(default_factory=list)
    edges: List[EgoEdge] = field(default_factory=list)
    max_hops: int = 2
    truncated: bool = False
    failures: Dict[str, Exception] = field(default_factory=dict)

    @property
    def neighbor_count(self) -> int:
        return len(self.nodes)

    def at_hop(self, hop: int) -> List[EgoNode]:
        return [n for n in self.nodes if n.hop == hop]

    def node(self, node_id: str) -> Optional[EgoNode]:
        for n in self.nodes:
            if n.id == node_id:
                return n
        return None


@dataclass
class EgoGraphStats:
    node_count: int
    edge_count: int
    nodes_per_hop: Dict[int, int]
    embedded_nodes: int
    avg_edge_weight: float
    truncated: bool


@dataclass(frozen=True)
class MessagePassingConfig:
    """
    Neighbour aggregation settings.

    Attributes:
        aggregation: MEAN / SUM / MAX use decay weights, ATTENTION uses
            softmax attention instead
        self_loop_weight: Share of the center in the blend
        distance_decay: Per-hop decay for edge_weight * decay ** hop
        normalize: L2-normalise the blended vector
        attention_dim: Width of the query/key projections
        seed: Seed for the attention projections
    """
    aggregation: Aggregation = Aggregation.MEAN
    self_loop_weight: float = 0.5
    distance_decay: float = 0.7
    normalize: bool = True
    attention_dim: int = 64
    seed: int = 0


@dataclass(frozen=True)
class EnhancementConfig:
    """
    Projection from input_dim to output_dim.

    Attributes:
        input_dim: Width of raw embeddings
        output_dim: Width of enhanced embeddings
        hidden_dim: Width of the hidden layer
        activation: Non-linearity after the first projection
        dropout: Dropout rate (only applied in training mode)
        residual: Add a linear projection of the raw center to the output
        seed: Seed for weight initialisation and training-mode dropout
    """
    input_dim: int = 768
    output_dim: int = 1024
    hidden_dim: int = 512
    activation: Activation = Activation.GELU
    dropout: float = 0.1
    residual: bool = True
    seed: int = 0


@dataclass
class EnhancementResult:
    entry_id: str
    enhanced: np.ndarray
    neighbors_used: int
    neighbor_weights: Dict[str, float]
    processing_time_ms: float
    truncated: bool = False


@dataclass
class BatchEnhancementResult:
    results: Dict[str, EnhancementResult]
    failures: Dict[str, Exception]
    avg_neighbors: float
    total_time_ms: float


@dataclass
class EnhancerStats:
    enhancements: int
    avg_neighbors: float
    avg_time_ms: float
    failures: int
