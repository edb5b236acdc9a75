"""Ego-graph extraction, message passing and embedding enhancement."""

from sonagraph.gnn.ego_graph import EgoGraphExtractor, graph_stats
from sonagraph.gnn.enhancement import EnhancementLayer, GraphEnhancer
from sonagraph.gnn.message_passing import MessagePassing
from sonagraph.gnn.types import (
    Activation,
    Aggregation,
    BatchEnhancementResult,
    EgoEdge,
    EgoGraph,
    EgoGraphConfig,
    EgoGraphStats,
    EgoNode,
    EnhancementConfig,
    EnhancementResult,
    EnhancerStats,
    MessagePassingConfig,
)

__all__ = [
    "EgoGraphExtractor",
    "graph_stats",
    "EnhancementLayer",
    "GraphEnhancer",
    "MessagePassing",
    "Activation",
    "Aggregation",
    "BatchEnhancementResult",
    "EgoEdge",
    "EgoGraph",
    "EgoGraphConfig",
    "EgoGraphStats",
    "EgoNode",
    "EnhancementConfig",
    "EnhancementResult",
    "EnhancerStats",
    "MessagePassingConfig",
]
