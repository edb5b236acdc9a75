"""
Compression Tier Manager: stores each entry's vector at a fidelity tier
chosen by its access pattern.

Frequently read vectors stay at full precision; idle ones are demoted one
tier at a time down to a sign-bit sketch. Every transition builds a new
CompressedVector and swaps it in under the entry's lock, so readers see
either the old encoding or the new one.

Codebooks are versioned. A vector always decodes against the version it
was encoded with; retraining never invalidates existing vectors.
"""

import asyncio
import logging
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Optional

import numpy as np

from sonagraph.exceptions import (
    CodebookMismatch,
    CodebookRejected,
    DimensionMismatch,
    InvalidInput,
    NotFound,
)
from sonagraph.locks import StripedLock
from sonagraph.compression.quantizer import ProductQuantizer
from sonagraph.compression.types import (
    BYTES_PER_DIM,
    CENTROIDS_PER_TIER,
    SEGMENT_WIDTH,
    TIER_ORDER,
    Codebook,
    CompressedVector,
    CompressionStats,
    CompressionTier,
    TierTransition,
    TransitionConfig,
    TransitionReport,
    VectorAccessStats,
)

logger = logging.getLogger(__name__)

DEFAULT_EPSILONS = {
    CompressionTier.COOL: 0.05,
    CompressionTier.COLD: 0.1,
}

SourceLookup = Callable[[str], Optional[np.ndarray]]


def _pack_nibbles(indices: np.ndarray) -> np.ndarray:
    """Two 4-bit codes per byte, low nibble first."""
    padded = indices.astype(np.uint8)
    if padded.shape[0] % 2:
        padded = np.append(padded, np.uint8(0))
    return (padded[0::2] & 0x0F) | ((padded[1::2] & 0x0F) << 4)


def _unpack_nibbles(packed: np.ndarray, count: int) -> np.ndarray:
    out = np.empty(packed.shape[0] * 2, dtype=np.uint8)
    out[0::2] = packed & 0x0F
    out[1::2] = packed >> 4
    return out[:count]


class TierManager:
    """
    Tiered vector store with access tracking and codebook versioning.

    Attributes:
        dim (int): Configured input dimensionality
        segment_width (int): Sub-vector width for the quantized tiers
        centroids_per_tier (dict): Codebook size for COOL and COLD
        epsilons (dict): Documented mean per-element error bound for COOL and COLD
    """

    def __init__(self, dim: int, segment_width: int = SEGMENT_WIDTH,
                 centroids_per_tier: Optional[Dict[CompressionTier, int]] = None,
                 epsilons: Optional[Dict[CompressionTier, float]] = None,
                 clock: Optional[Callable[[], float]] = None,
                 source_lookup: Optional[SourceLookup] = None,
                 seed: int = 0,
                 lock_stripes: int = 64):
        """
        Args:
            dim: Vector dimensionality
            segment_width: Sub-vector width for product quantization
            centroids_per_tier: Override of the COOL/COLD codebook sizes
            epsilons: Override of the COOL/COLD error bounds
            clock: Time source (defaults to ``time.time``)
            source_lookup: Returns the original vector for an entry id, or None.
                Used to re-encode from full precision on promotion.
            seed: Seed for codebook training
            lock_stripes: Number of per-entry lock stripes
        """
        if dim < 1:
            raise InvalidInput(f"dim must be positive, got {dim}")
        if dim % segment_width != 0:
            raise InvalidInput(f"dim {dim} is not a multiple of segment width {segment_width}")

        self.dim = dim
        self.segment_width = segment_width
        self.centroids_per_tier = dict(CENTROIDS_PER_TIER)
        self.centroids_per_tier.update(centroids_per_tier or {})
        self.epsilons = dict(DEFAULT_EPSILONS)
        self.epsilons.update(epsilons or {})
        self.seed = seed
        self.source_lookup = source_lookup
        self._clock = clock or time.time

        self._vectors: Dict[str, CompressedVector] = {}
        self._stats: Dict[str, VectorAccessStats] = {}
        self._codebooks: Dict[int, Codebook] = {}
        self._active: Dict[CompressionTier, int] = {}
        self._next_version = 1

        self._locks = StripedLock(lock_stripes)
        self._codebook_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Encoding
    # ------------------------------------------------------------------

    def _check_vector(self, vector) -> np.ndarray:
        arr = np.asarray(vector, dtype=np.float32).reshape(-1)
        if arr.shape[0] != self.dim:
            raise DimensionMismatch(self.dim, arr.shape[0])
        return arr

    def _quantizer_for(self, codebook: Codebook) -> ProductQuantizer:
        return ProductQuantizer(self.dim, codebook.segments, codebook.centroids_per_segment, self.seed)

    def compress(self, vector, tier: CompressionTier, entry_id: str = "") -> CompressedVector:
        """
        Encode a vector at the given tier.

        Args:
            vector: Shape (dim,) - raw vector
            tier: Target tier
            entry_id: Entry the result belongs to

        Returns:
            CompressedVector

        Raises:
            DimensionMismatch: If the vector length differs from ``dim``
            CodebookMismatch: For a PQ tier without a trained codebook
        """
        tier = CompressionTier(tier)
        v = self._check_vector(vector)

        if tier == CompressionTier.HOT:
            payload = v.copy()
            return CompressedVector(entry_id, tier, self.dim, payload)

        if tier == CompressionTier.WARM:
            return CompressedVector(entry_id, tier, self.dim, v.astype(np.float16))

        if tier == CompressionTier.FROZEN:
            scale = float(np.mean(np.abs(v)))
            payload = np.packbits(v >= 0)
            return CompressedVector(entry_id, tier, self.dim, payload, scale=scale)

        version = self._active.get(tier)
        if version is None:
            raise CodebookMismatch(f"No trained codebook for tier {tier.value}")
        codebook = self._codebooks[version]
        indices = self._quantizer_for(codebook).encode(v, codebook)
        if codebook.centroids_per_segment <= 16:
            indices = _pack_nibbles(indices)
        return CompressedVector(entry_id, tier, self.dim, indices, codebook_version=version)

    def decompress(self, compressed: CompressedVector) -> np.ndarray:
        """
        Reconstruct a vector from its encoding.

        Quantized tiers decode against the codebook version recorded on the
        vector, never the current one.

        Raises:
            CodebookMismatch: If that version is gone or incompatible
        """
        if compressed.dim != self.dim:
            raise DimensionMismatch(self.dim, compressed.dim)

        tier = compressed.tier
        if tier == CompressionTier.HOT:
            return compressed.payload.astype(np.float32, copy=True)
        if tier == CompressionTier.WARM:
            return compressed.payload.astype(np.float32)
        if tier == CompressionTier.FROZEN:
            bits = np.unpackbits(compressed.payload, count=self.dim)
            scale = np.float32(compressed.scale or 0.0)
            return np.where(bits == 1, scale, -scale).astype(np.float32)

        codebook = self._codebooks.get(compressed.codebook_version)
        if codebook is None:
            raise CodebookMismatch(
                f"Codebook v{compressed.codebook_version} not available for {compressed.entry_id!r}"
            )
        if codebook.dim != self.dim:
            raise CodebookMismatch(f"Codebook v{codebook.version} has dim {codebook.dim}, expected {self.dim}")
        indices = compressed.payload
        if codebook.centroids_per_segment <= 16:
            expected = (codebook.segments + 1) // 2
            if indices.shape[0] != expected:
                raise CodebookMismatch(f"Packed code length {indices.shape[0]} does not match codebook v{codebook.version}")
            indices = _unpack_nibbles(indices, codebook.segments)
        return self._quantizer_for(codebook).decode(indices, codebook)

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    def put(self, entry_id: str, vector, tier: CompressionTier = CompressionTier.HOT) -> CompressedVector:
        """Store (or replace) an entry's vector and reset its access stats."""
        compressed = self.compress(vector, tier, entry_id)
        now = self._clock()
        with self._locks.hold(entry_id):
            self._vectors[entry_id] = compressed
            self._stats[entry_id] = VectorAccessStats(
                entry_id=entry_id, last_access=now, last_transition=now
            )
        logger.debug("Stored %s at tier %s", entry_id, compressed.tier.value)
        return compressed

    def get_compressed(self, entry_id: str) -> CompressedVector:
        compressed = self._vectors.get(entry_id)
        if compressed is None:
            raise NotFound(f"No vector stored for {entry_id}")
        return compressed

    def get_vector(self, entry_id: str) -> np.ndarray:
        """Record an access and return the decoded vector."""
        with self._locks.hold(entry_id):
            compressed = self.get_compressed(entry_id)
            self._touch(entry_id)
        return self.decompress(compressed)

    def record_access(self, entry_id: str):
        """
        Count one read of ``entry_id``.

        Raises:
            NotFound: If the entry has no stored vector
        """
        with self._locks.hold(entry_id):
            if entry_id not in self._vectors:
                raise NotFound(f"No vector stored for {entry_id}")
            self._touch(entry_id)

    def _touch(self, entry_id: str):
        stats = self._stats[entry_id]
        stats.access_count += 1
        stats.window_accesses += 1
        stats.last_access = self._clock()

    def get_stats(self, entry_id: str) -> Optional[VectorAccessStats]:
        return self._stats.get(entry_id)

    def tier_of(self, entry_id: str) -> CompressionTier:
        return self.get_compressed(entry_id).tier

    def delete(self, entry_id: str) -> bool:
        """Drop an entry's vector and stats. Returns False if it was not stored."""
        with self._locks.hold(entry_id):
            existed = self._vectors.pop(entry_id, None) is not None
            self._stats.pop(entry_id, None)
        return existed

    def entry_ids(self) -> List[str]:
        return sorted(self._vectors)

    def __contains__(self, entry_id):
        return entry_id in self._vectors

    def __len__(self):
        return len(self._vectors)

    # ------------------------------------------------------------------
    # Tier transitions
    # ------------------------------------------------------------------

    def _decide(self, tier: CompressionTier, stats: VectorAccessStats,
                config: TransitionConfig, now: float):
        threshold = config.promote_accesses.get(tier)
        up = tier.promoted()
        if up is not None and threshold is not None and stats.window_accesses >= threshold:
            return up, f"{stats.window_accesses} accesses >= {threshold}"

        idle_limit = config.demote_after_seconds.get(tier)
        down = tier.demoted()
        idle = now - max(stats.last_access, stats.last_transition)
        if down is not None and idle_limit is not None and idle > idle_limit:
            return down, f"idle {idle:.0f}s > {idle_limit:.0f}s"

        return None, ""

    def _source_vector(self, compressed: CompressedVector) -> np.ndarray:
        if compressed.tier != CompressionTier.HOT and self.source_lookup is not None:
            original = self.source_lookup(compressed.entry_id)
            if original is not None:
                return self._check_vector(original)
        return self.decompress(compressed)

    def evaluate_transitions(self, config: Optional[TransitionConfig] = None) -> TransitionReport:
        """
        Promote hot vectors and demote idle ones, one tier per evaluation.

        A vector is promoted when its accesses since the previous evaluation
        reach ``promote_accesses[tier]``; otherwise it is demoted once it has
        been idle (no read and no transition) longer than
        ``demote_after_seconds[tier]``. Targets needing a codebook that has
        not been trained are skipped.

        Per-vector decode failures are collected in ``failures`` and do not
        stop the batch. Window counters reset for every evaluated vector.

        Args:
            config: Thresholds (defaults to ``TransitionConfig()``)

        Returns:
            TransitionReport
        """
        config = config or TransitionConfig()
        report = TransitionReport()
        now = self._clock()

        for entry_id in list(self._vectors):
            with self._locks.hold(entry_id):
                compressed = self._vectors.get(entry_id)
                stats = self._stats.get(entry_id)
                if compressed is None or stats is None:
                    continue
                report.evaluated += 1
                try:
                    target, reason = self._decide(compressed.tier, stats, config, now)
                    if target is None:
                        continue
                    if target.is_quantized and target not in self._active:
                        logger.debug("Skipping %s -> %s for %s: no codebook",
                                     compressed.tier.value, target.value, entry_id)
                        continue

                    replacement = self.compress(self._source_vector(compressed), target, entry_id)
                    self._vectors[entry_id] = replacement
                    stats.last_transition = now
                    report.transitions.append(
                        TierTransition(entry_id, compressed.tier, target, reason)
                    )
                except CodebookMismatch as e:
                    report.failures[entry_id] = e
                    logger.warning("Tier transition failed for %s: %s", entry_id, e)
                finally:
                    stats.window_accesses = 0

        if report.transitions or report.failures:
            logger.info("Tier evaluation: %d vectors, %d promoted, %d demoted, %d failed",
                        report.evaluated, len(report.promoted), len(report.demoted),
                        len(report.failures))
        return report

    # ------------------------------------------------------------------
    # Codebooks
    # ------------------------------------------------------------------

    def _fit_codebook(self, samples, segments: Optional[int], centroids_per_segment: int,
                      max_iter: int) -> Codebook:
        segments = segments if segments is not None else self.dim // self.segment_width
        quantizer = ProductQuantizer(self.dim, segments, centroids_per_segment, self.seed)
        return quantizer.train(samples, max_iter=max_iter)

    def _commit_codebook(self, fitted: Codebook, tier: Optional[CompressionTier]) -> int:
        if tier is not None:
            targets = [tier]
        else:
            targets = [t for t, k in self.centroids_per_tier.items()
                       if k == fitted.centroids_per_segment]
        for t in targets:
            epsilon = self.epsilons.get(t)
            if epsilon is not None and fitted.mean_error > epsilon:
                logger.warning("Rejected codebook for %s: mean error %.4f exceeds bound %.4f",
                               t.value, fitted.mean_error, epsilon)
                raise CodebookRejected(t.value, fitted.mean_error, epsilon)

        with self._codebook_lock:
            version = self._next_version
            self._next_version += 1
            codebook = Codebook(
                version=version,
                segments=fitted.segments,
                centroids_per_segment=fitted.centroids_per_segment,
                centroids=fitted.centroids,
                training_size=fitted.training_size,
                mean_error=fitted.mean_error,
                trained_at=fitted.trained_at,
            )
            self._codebooks[version] = codebook
            for t in targets:
                self._active[t] = version

        logger.info("Trained codebook v%d (%dx%d, %d samples, mean error %.5f) for %s",
                    version, codebook.segments, codebook.centroids_per_segment,
                    codebook.training_size, codebook.mean_error,
                    ", ".join(t.value for t in targets) or "no tier")
        return version

    def _resolve_training(self, centroids_per_segment: Optional[int],
                          tier: Optional[CompressionTier]):
        if tier is not None:
            tier = CompressionTier(tier)
            if not tier.is_quantized:
                raise InvalidInput(f"Tier {tier.value} does not use a codebook")
            if centroids_per_segment is None:
                centroids_per_segment = self.centroids_per_tier[tier]
        if centroids_per_segment is None:
            raise InvalidInput("centroids_per_segment is required when no tier is given")
        return centroids_per_segment, tier

    def train_codebook(self, samples, segments: Optional[int] = None,
                       centroids_per_segment: Optional[int] = None,
                       tier: Optional[CompressionTier] = None,
                       max_iter: int = 25) -> int:
        """
        Train and register a new codebook version.

        The new version becomes current for ``tier`` (or, when no tier is
        given, for every quantized tier with a matching centroid count).
        Vectors already encoded keep their old version.

        Args:
            samples: Shape (n, dim) - training vectors
            segments: Sub-vector count (defaults to dim / segment_width)
            centroids_per_segment: Codebook size (defaults to the tier's)
            tier: Quantized tier to activate the codebook for
            max_iter: k-means iterations per segment

        Returns:
            int: New codebook version

        Raises:
            CodebookRejected: If the codebook's mean error on ``samples`` exceeds
                the epsilon of a tier it would become current for. No version
                is registered and the previous codebook stays current.
        """
        centroids_per_segment, tier = self._resolve_training(centroids_per_segment, tier)
        fitted = self._fit_codebook(samples, segments, centroids_per_segment, max_iter)
        return self._commit_codebook(fitted, tier)

    async def atrain_codebook(self, samples, segments: Optional[int] = None,
                              centroids_per_segment: Optional[int] = None,
                              tier: Optional[CompressionTier] = None,
                              max_iter: int = 25,
                              timeout: Optional[float] = None) -> int:
        """
        Train a codebook in a worker thread.

        The codebook is registered only after training finishes inside
        ``timeout``. On timeout or cancellation nothing is committed and the
        exception propagates.
        """
        centroids_per_segment, tier = self._resolve_training(centroids_per_segment, tier)
        try:
            fitted = await asyncio.wait_for(
                asyncio.to_thread(self._fit_codebook, samples, segments,
                                  centroids_per_segment, max_iter),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Codebook training timed out after %ss; nothing committed", timeout)
            raise
        return self._commit_codebook(fitted, tier)

    def get_codebook(self, version: int) -> Codebook:
        codebook = self._codebooks.get(version)
        if codebook is None:
            raise NotFound(f"Codebook v{version} not found")
        return codebook

    def active_codebook(self, tier: CompressionTier) -> Optional[Codebook]:
        version = self._active.get(CompressionTier(tier))
        return self._codebooks.get(version) if version is not None else None

    def reencode(self, entry_ids: Optional[Iterable[str]] = None) -> TransitionReport:
        """
        Re-encode quantized vectors against their tier's current codebook.

        Vectors already on the current version are left alone. Each
        re-encoding is reported as a same-tier transition.
        """
        report = TransitionReport()
        ids = list(entry_ids) if entry_ids is not None else list(self._vectors)

        for entry_id in ids:
            with self._locks.hold(entry_id):
                compressed = self._vectors.get(entry_id)
                if compressed is None or not compressed.tier.is_quantized:
                    continue
                report.evaluated += 1
                current = self._active.get(compressed.tier)
                if current is None or current == compressed.codebook_version:
                    continue
                try:
                    replacement = self.compress(self._source_vector(compressed), compressed.tier, entry_id)
                    self._vectors[entry_id] = replacement
                    report.transitions.append(TierTransition(
                        entry_id, compressed.tier, compressed.tier,
                        f"codebook v{compressed.codebook_version} -> v{current}",
                    ))
                except CodebookMismatch as e:
                    report.failures[entry_id] = e
                    logger.warning("Re-encode failed for %s: %s", entry_id, e)

        logger.info("Re-encoded %d vectors (%d failed)", len(report.transitions), len(report.failures))
        return report

    def referenced_versions(self) -> Dict[int, int]:
        """Codebook version -> number of stored vectors encoded with it."""
        counts: Dict[int, int] = {}
        for compressed in list(self._vectors.values()):
            if compressed.codebook_version is not None:
                counts[compressed.codebook_version] = counts.get(compressed.codebook_version, 0) + 1
        return counts

    def drop_unreferenced_codebooks(self) -> List[int]:
        """Retire codebook versions that are neither current nor referenced."""
        with self._codebook_lock:
            keep = set(self.referenced_versions()) | set(self._active.values())
            dropped = sorted(v for v in self._codebooks if v not in keep)
            for version in dropped:
                del self._codebooks[version]
        if dropped:
            logger.info("Dropped codebook versions %s", dropped)
        return dropped

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def stats(self) -> CompressionStats:
        """Vector counts and payload bytes per tier against float32 storage."""
        per_tier = {tier: 0 for tier in TIER_ORDER}
        bytes_tier = {tier: 0 for tier in TIER_ORDER}
        for compressed in list(self._vectors.values()):
            per_tier[compressed.tier] += 1
            bytes_tier[compressed.tier] += compressed.nbytes

        total = sum(per_tier.values())
        uncompressed = int(total * self.dim * BYTES_PER_DIM[CompressionTier.HOT])
        compressed_bytes = sum(bytes_tier.values())
        return CompressionStats(
            total_vectors=total,
            vectors_per_tier=per_tier,
            bytes_per_tier=bytes_tier,
            uncompressed_bytes=uncompressed,
            compressed_bytes=compressed_bytes,
            compression_ratio=uncompressed / compressed_bytes if compressed_bytes else 1.0,
            codebook_versions=sorted(self._codebooks),
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Vectors, access stats and codebooks in a JSON-friendly form."""
        vectors = []
        for entry_id, cv in sorted(self._vectors.items()):
            vectors.append({
                'entry_id': entry_id,
                'tier': cv.tier.value,
                'dim': cv.dim,
                'dtype': str(cv.payload.dtype),
                'payload': cv.payload.tolist(),
                'codebook_version': cv.codebook_version,
                'scale': cv.scale,
            })
        stats = [
            {
                'entry_id': s.entry_id,
                'access_count': s.access_count,
                'last_access': s.last_access,
                'window_accesses': s.window_accesses,
                'last_transition': s.last_transition,
            }
            for _, s in sorted(self._stats.items())
        ]
        codebooks = [
            {
                'version': cb.version,
                'segments': cb.segments,
                'centroids_per_segment': cb.centroids_per_segment,
                'centroids': cb.centroids.tolist(),
                'training_size': cb.training_size,
                'mean_error': cb.mean_error,
                'trained_at': cb.trained_at,
            }
            for _, cb in sorted(self._codebooks.items())
        ]
        return {
            'dim': self.dim,
            'segment_width': self.segment_width,
            'centroids_per_tier': {t.value: k for t, k in self.centroids_per_tier.items()},
            'epsilons': {t.value: e for t, e in self.epsilons.items()},
            'seed': self.seed,
            'next_version': self._next_version,
            'active': {t.value: v for t, v in self._active.items()},
            'codebooks': codebooks,
            'vectors': vectors,
            'stats': stats,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], clock: Optional[Callable[[], float]] = None,
                  source_lookup: Optional[SourceLookup] = None) -> "TierManager":
        """
        Rebuild a manager from ``to_dict`` output.

        Raises:
            CodebookMismatch: If a stored vector references a missing codebook
            DimensionMismatch: If a stored vector has the wrong width
        """
        manager = cls(
            dim=data['dim'],
            segment_width=data.get('segment_width', SEGMENT_WIDTH),
            centroids_per_tier={CompressionTier(t): k for t, k in data.get('centroids_per_tier', {}).items()},
            epsilons={CompressionTier(t): e for t, e in data.get('epsilons', {}).items()},
            clock=clock,
            source_lookup=source_lookup,
            seed=data.get('seed', 0),
        )

        for item in data.get('codebooks', []):
            centroids = np.asarray(item['centroids'], dtype=np.float32)
            centroids.setflags(write=False)
            manager._codebooks[item['version']] = Codebook(
                version=item['version'],
                segments=item['segments'],
                centroids_per_segment=item['centroids_per_segment'],
                centroids=centroids,
                training_size=item['training_size'],
                mean_error=item['mean_error'],
                trained_at=item['trained_at'],
            )
        manager._active = {CompressionTier(t): v for t, v in data.get('active', {}).items()}
        manager._next_version = data.get('next_version', max(manager._codebooks, default=0) + 1)

        for item in data.get('vectors', []):
            if item['dim'] != manager.dim:
                raise DimensionMismatch(manager.dim, item['dim'])
            tier = CompressionTier(item['tier'])
            version = item.get('codebook_version')
            if tier.is_quantized and version not in manager._codebooks:
                raise CodebookMismatch(f"Vector {item['entry_id']!r} references missing codebook v{version}")
            payload = np.asarray(item['payload'], dtype=np.dtype(item['dtype']))
            manager._vectors[item['entry_id']] = CompressedVector(
                entry_id=item['entry_id'],
                tier=tier,
                dim=item['dim'],
                payload=payload,
                codebook_version=version,
                scale=item.get('scale'),
            )

        for item in data.get('stats', []):
            if item['entry_id'] in manager._vectors:
                manager._stats[item['entry_id']] = VectorAccessStats(**item)
        now = manager._clock()
        for entry_id in manager._vectors:
            manager._stats.setdefault(entry_id, VectorAccessStats(entry_id, last_access=now, last_transition=now))

        return manager

    def __repr__(self):
        return f"TierManager(dim={self.dim}, vectors={len(self._vectors)}, codebooks={len(self._codebooks)})"
