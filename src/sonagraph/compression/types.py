"""
Types for tiered vector compression.

Tiers are ordered from highest to lowest fidelity. Each tier fixes its
encoding and the error bound documented below:

    HOT     float32 verbatim                      exact
    WARM    float16                               |e_i| <= 2^-11 * |v_i| (+ underflow)
    COOL    PQ, dim/8 segments x 256 centroids    mean |e_i| <= epsilon[COOL]
    COLD    PQ, dim/8 segments x 16 centroids     mean |e_i| <= epsilon[COLD]
    FROZEN  sign bits + one scale                 |e_i| <= |v_i| + scale
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

import numpy as np


class CompressionTier(str, Enum):
    HOT = "hot"
    WARM = "warm"
    COOL = "cool"
    COLD = "cold"
    FROZEN = "frozen"

    @property
    def rank(self) -> int:
        """0 for HOT (full fidelity) up to 4 for FROZEN."""
        return TIER_ORDER.index(self)

    @property
    def is_quantized(self) -> bool:
        return self in (CompressionTier.COOL, CompressionTier.COLD)

    def promoted(self) -> Optional["CompressionTier"]:
        """Next higher-fidelity tier, None at HOT."""
        return TIER_ORDER[self.rank - 1] if self.rank > 0 else None

    def demoted(self) -> Optional["CompressionTier"]:
        """Next coarser tier, None at FROZEN."""
        return TIER_ORDER[self.rank + 1] if self.rank < len(TIER_ORDER) - 1 else None


TIER_ORDER: List[CompressionTier] = [
    CompressionTier.HOT,
    CompressionTier.WARM,
    CompressionTier.COOL,
    CompressionTier.COLD,
    CompressionTier.FROZEN,
]

# Payload bytes per input dimension (PQ tiers exclude the shared codebook)
BYTES_PER_DIM: Dict[CompressionTier, float] = {
    CompressionTier.HOT: 4.0,
    CompressionTier.WARM: 2.0,
    CompressionTier.COOL: 1.0 / 8,
    CompressionTier.COLD: 1.0 / 16,
    CompressionTier.FROZEN: 1.0 / 8,
}

# Centroids per segment for the quantized tiers
CENTROIDS_PER_TIER: Dict[CompressionTier, int] = {
    CompressionTier.COOL: 256,
    CompressionTier.COLD: 16,
}

# Documented per-element relative bound of the float16 tier
WARM_RELATIVE_ERROR = 2.0 ** -11

SEGMENT_WIDTH = 8


@dataclass(frozen=True)
class CompressedVector:
    """
    One entry's vector at one tier.

    Never mutated; a tier transition builds a new instance and swaps it in.

    Attributes:
        entry_id: Owning entry
        tier: Encoding tier
        dim: Original dimensionality
        payload: float32 / float16 values, uint8 centroid indices, or packed sign bits
        codebook_version: Codebook used to encode (PQ tiers only)
        scale: Magnitude of every reconstructed element (FROZEN only)
    """
    entry_id: str
    tier: CompressionTier
    dim: int
    payload: np.ndarray
    codebook_version: Optional[int] = None
    scale: Optional[float] = None

    def __post_init__(self):
        self.payload.setflags(write=False)

    @property
    def nbytes(self) -> int:
        return int(self.payload.nbytes)


@dataclass
class VectorAccessStats:
    """
    Access bookkeeping for one stored vector.

    Attributes:
        entry_id: Owning entry
        access_count: Reads since the vector was stored
        last_access: Time of the last read (or of storage)
        window_accesses: Reads since the last transition evaluation
        last_transition: Time the tier last changed (or of storage)
    """
    entry_id: str
    access_count: int = 0
    last_access: float = 0.0
    window_accesses: int = 0
    last_transition: float = 0.0


@dataclass(frozen=True)
class Codebook:
    """
    Immutable product-quantization codebook.

    Attributes:
        version: Monotonic version number
        segments: Number of contiguous sub-vectors
        centroids_per_segment: Centroids per sub-vector codebook
        centroids: Shape (segments, centroids_per_segment, sub_dim)
        training_size: Number of training vectors
        mean_error: Mean absolute per-element reconstruction error on the
            training set
        trained_at: Training timestamp
    """
    version: int
    segments: int
    centroids_per_segment: int
    centroids: np.ndarray
    training_size: int
    mean_error: float
    trained_at: float = field(default_factory=time.time)

    @property
    def sub_dim(self) -> int:
        return int(self.centroids.shape[2])

    @property
    def dim(self) -> int:
        return self.segments * self.sub_dim


@dataclass(frozen=True)
class TierTransition:
    entry_id: str
    from_tier: CompressionTier
    to_tier: CompressionTier
    reason: str


def _default_promote() -> Dict[CompressionTier, int]:
    return {
        CompressionTier.WARM: 5,
        CompressionTier.COOL: 10,
        CompressionTier.COLD: 20,
        CompressionTier.FROZEN: 50,
    }


def _default_demote() -> Dict[CompressionTier, float]:
    hour = 3600.0
    return {
        CompressionTier.HOT: hour,
        CompressionTier.WARM: 24 * hour,
        CompressionTier.COOL: 7 * 24 * hour,
        CompressionTier.COLD: 30 * 24 * hour,
    }


@dataclass
class TransitionConfig:
    """
    Per-tier thresholds for ``TierManager.evaluate_transitions``.

    Attributes:
        promote_accesses: Accesses within one evaluation window that promote
            a vector out of the keyed tier (HOT is never promoted)
        demote_after_seconds: Idle time after which a vector in the keyed
            tier is demoted (FROZEN is never demoted)
    """
    promote_accesses: Dict[CompressionTier, int] = field(default_factory=_default_promote)
    demote_after_seconds: Dict[CompressionTier, float] = field(default_factory=_default_demote)


@dataclass
class TransitionReport:
    transitions: List[TierTransition] = field(default_factory=list)
    failures: Dict[str, Exception] = field(default_factory=dict)
    evaluated: int = 0

    @property
    def promoted(self) -> List[TierTransition]:
        return [t for t in self.transitions if t.to_tier.rank < t.from_tier.rank]

    @property
    def demoted(self) -> List[TierTransition]:
        return [t for t in self.transitions if t.to_tier.rank > t.from_tier.rank]


@dataclass
class CompressionStats:
    total_vectors: int
    vectors_per_tier: Dict[CompressionTier, int]
    bytes_per_tier: Dict[CompressionTier, int]
    uncompressed_bytes: int
    compressed_bytes: int
    compression_ratio: float
    codebook_versions: List[int]
