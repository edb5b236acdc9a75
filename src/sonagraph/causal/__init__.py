"""Causal hypergraph over entry ids."""

from sonagraph.causal.hypergraph import Hypergraph, DEFAULT_MAX_DEPTH
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

__all__ = [
    "Hypergraph",
    "DEFAULT_MAX_DEPTH",
    "CausalGraphStats",
    "CausalNode",
    "CausalPath",
    "CausalQuery",
    "CausalTraversalResult",
    "Direction",
    "Hyperedge",
    "Neighbor",
    "RelationType",
]
