"""Tiered vector compression and product quantization."""

from sonagraph.compression.quantizer import ProductQuantizer
from sonagraph.compression.tiers import TierManager, DEFAULT_EPSILONS
from sonagraph.compression.types import (
    BYTES_PER_DIM,
    CENTROIDS_PER_TIER,
    TIER_ORDER,
    WARM_RELATIVE_ERROR,
    Codebook,
    CompressedVector,
    CompressionStats,
    CompressionTier,
    TierTransition,
    TransitionConfig,
    TransitionReport,
    VectorAccessStats,
)

__all__ = [
    "ProductQuantizer",
    "TierManager",
    "DEFAULT_EPSILONS",
    "BYTES_PER_DIM",
    "CENTROIDS_PER_TIER",
    "TIER_ORDER",
    "WARM_RELATIVE_ERROR",
    "Codebook",
    "CompressedVector",
    "CompressionStats",
    "CompressionTier",
    "TierTransition",
    "TransitionConfig",
    "TransitionReport",
    "VectorAccessStats",
]
