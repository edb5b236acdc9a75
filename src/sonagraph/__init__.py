"""
Sonagraph: retrieval core for a long-lived agent knowledge store.

Four cooperating components over shared entry ids:
- Causal hypergraph: many-to-many causal and provenance relations with
  bounded, ranked path traversal
- Tier manager: per-entry vector storage at a fidelity chosen by access
  pattern, with versioned product-quantization codebooks
- Graph enhancer: ego-graph extraction and neighbour message passing that
  lift an entry's embedding with its relational context
- Sona: feedback-driven ranking weights with importance damping, drift
  detection, checkpoints and rollback
"""

__version__ = "0.1.0"

from sonagraph.engine import CoreState, KnowledgeCore
from sonagraph.config import CoreSettings
from sonagraph.exceptions import (
    AlreadyFed,
    CodebookMismatch,
    CodebookRejected,
    DimensionMismatch,
    DriftCritical,
    InvalidEdge,
    InvalidInput,
    NotFound,
    ProviderUnavailable,
    SonagraphError,
)

__all__ = [
    "KnowledgeCore",
    "CoreState",
    "CoreSettings",
    "AlreadyFed",
    "CodebookMismatch",
    "CodebookRejected",
    "DimensionMismatch",
    "DriftCritical",
    "InvalidEdge",
    "InvalidInput",
    "NotFound",
    "ProviderUnavailable",
    "SonagraphError",
]
