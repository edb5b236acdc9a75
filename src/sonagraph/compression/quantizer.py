"""
Product quantization.

A d-dimensional vector is split into ``segments`` contiguous sub-vectors.
Each sub-vector is replaced by the index of its nearest centroid in that
segment's codebook, so the stored code is ``segments`` small integers and
reconstruction concatenates the chosen centroids.

Codebooks are trained per segment with scikit-learn's KMeans (k-means++
initialisation, fixed seed) and are immutable once built.
"""

import logging
import time
from typing import Optional

import numpy as np
from sklearn.cluster import KMeans

from sonagraph.exceptions import CodebookMismatch, DimensionMismatch, InvalidInput
from sonagraph.compression.types import Codebook

logger = logging.getLogger(__name__)


class ProductQuantizer:
    """
    Trains codebooks and encodes/decodes vectors against them.

    The quantizer itself is stateless apart from its shape; every encode and
    decode takes the codebook explicitly, so vectors encoded against older
    versions keep decoding correctly after retraining.

    Attributes:
        dim (int): Input dimensionality
        segments (int): Number of sub-vectors
        sub_dim (int): Width of each sub-vector
        centroids_per_segment (int): Codebook size per segment
        seed (int): Seed for k-means initialisation
    """

    def __init__(self, dim: int, segments: Optional[int] = None,
                 centroids_per_segment: int = 256, seed: int = 0):
        """
        Args:
            dim: Input dimensionality
            segments: Number of sub-vectors (defaults to dim / 8)
            centroids_per_segment: Centroids per segment (at most 65536)
            seed: Seed for k-means initialisation
        """
        segments = segments if segments is not None else max(1, dim // 8)
        if segments < 1 or dim % segments != 0:
            raise InvalidInput(f"Dimension {dim} is not divisible into {segments} segments")
        if not 1 <= centroids_per_segment <= 65536:
            raise InvalidInput(f"centroids_per_segment must be in [1, 65536], got {centroids_per_segment}")

        self.dim = dim
        self.segments = segments
        self.sub_dim = dim // segments
        self.centroids_per_segment = centroids_per_segment
        self.seed = seed

    def train(self, samples: np.ndarray, max_iter: int = 25, version: int = 0) -> Codebook:
        """
        Fit one k-means codebook per segment.

        When there are fewer samples than centroids the sample set is tiled
        up to the centroid count, so every training vector is reproduced
        exactly and the surplus centroids are duplicates.

        Args:
            samples: Shape (n, dim) - training vectors
            max_iter: Maximum k-means iterations per segment
            version: Version number stamped on the codebook

        Returns:
            Codebook: Immutable codebook with its training mean error
        """
        samples = np.asarray(samples, dtype=np.float32)
        if samples.ndim != 2 or samples.shape[0] == 0:
            raise InvalidInput("Need a non-empty (n, dim) array of training vectors")
        if samples.shape[1] != self.dim:
            raise DimensionMismatch(self.dim, samples.shape[1])

        n = samples.shape[0]
        k = self.centroids_per_segment
        fit_set = samples
        if n < k:
            reps = int(np.ceil(k / n))
            fit_set = np.tile(samples, (reps, 1))[:k]
            logger.debug("Tiled %d training vectors to %d for %d centroids", n, k, k)

        start = time.time()
        centroids = np.empty((self.segments, k, self.sub_dim), dtype=np.float32)
        for s in range(self.segments):
            block = fit_set[:, s * self.sub_dim:(s + 1) * self.sub_dim]
            km = KMeans(
                n_clusters=k,
                init="k-means++",
                n_init=1,
                max_iter=max_iter,
                random_state=self.seed + s,
            )
            km.fit(block)
            centroids[s] = km.cluster_centers_.astype(np.float32)
        centroids.setflags(write=False)

        codebook = Codebook(
            version=version,
            segments=self.segments,
            centroids_per_segment=k,
            centroids=centroids,
            training_size=n,
            mean_error=0.0,
        )
        # Error is measured on the caller's samples, not the tiled set
        decoded = self.decode_batch(self.encode_batch(samples, codebook), codebook)
        mean_error = float(np.mean(np.abs(decoded - samples)))

        logger.debug("Trained %dx%d codebook on %d vectors in %.2fs (mean error %.5f)",
                     self.segments, k, n, time.time() - start, mean_error)

        return Codebook(
            version=version,
            segments=self.segments,
            centroids_per_segment=k,
            centroids=centroids,
            training_size=n,
            mean_error=mean_error,
            trained_at=codebook.trained_at,
        )

    def check_codebook(self, codebook: Codebook):
        if codebook.dim != self.dim or codebook.segments != self.segments:
            raise CodebookMismatch(
                f"Codebook v{codebook.version} has shape {codebook.segments}x{codebook.sub_dim}, "
                f"quantizer expects {self.segments}x{self.sub_dim}"
            )

    def encode(self, vector: np.ndarray, codebook: Codebook) -> np.ndarray:
        """
        Nearest-centroid index for each segment.

        Args:
            vector: Shape (dim,) - vector to encode
            codebook: Codebook to encode against

        Returns:
            np.ndarray: Shape (segments,) - centroid indices
        """
        vector = np.asarray(vector, dtype=np.float32).reshape(-1)
        if vector.shape[0] != self.dim:
            raise DimensionMismatch(self.dim, vector.shape[0])
        return self.encode_batch(vector[None, :], codebook)[0]

    def encode_batch(self, vectors: np.ndarray, codebook: Codebook) -> np.ndarray:
        """Shape (n, dim) -> (n, segments) centroid indices."""
        self.check_codebook(codebook)
        subs = vectors.reshape(vectors.shape[0], self.segments, 1, self.sub_dim)
        # (n, segments, k) squared distances
        dists = np.sum((subs - codebook.centroids[None, :, :, :]) ** 2, axis=-1)
        dtype = np.uint8 if codebook.centroids_per_segment <= 256 else np.uint16
        return np.argmin(dists, axis=-1).astype(dtype)

    def decode(self, indices: np.ndarray, codebook: Codebook) -> np.ndarray:
        """
        Concatenate the centroids selected by ``indices``.

        Returns:
            np.ndarray: Shape (dim,) approximate reconstruction
        """
        indices = np.asarray(indices).reshape(-1)
        if indices.shape[0] != codebook.segments:
            raise CodebookMismatch(
                f"Code has {indices.shape[0]} segments, codebook v{codebook.version} has {codebook.segments}"
            )
        if indices.size and int(indices.max()) >= codebook.centroids_per_segment:
            raise CodebookMismatch(
                f"Centroid index out of range for codebook v{codebook.version}"
            )
        return self.decode_batch(indices[None, :], codebook)[0]

    def decode_batch(self, indices: np.ndarray, codebook: Codebook) -> np.ndarray:
        """Shape (n, segments) indices -> (n, dim) reconstructions."""
        segment_idx = np.arange(codebook.segments)[None, :]
        chosen = codebook.centroids[segment_idx, indices.astype(np.int64)]
        return chosen.reshape(indices.shape[0], -1)

    def asymmetric_distance(self, query: np.ndarray, indices: np.ndarray,
                            codebook: Codebook) -> float:
        """
        Squared L2 distance between a raw query and an encoded vector.

        Uses a per-segment distance table so the encoded side is never
        decoded in full.
        """
        query = np.asarray(query, dtype=np.float32).reshape(-1)
        if query.shape[0] != self.dim:
            raise DimensionMismatch(self.dim, query.shape[0])
        self.check_codebook(codebook)

        subs = query.reshape(self.segments, 1, self.sub_dim)
        table = np.sum((codebook.centroids - subs) ** 2, axis=-1)  # (segments, k)
        indices = np.asarray(indices).reshape(-1).astype(np.int64)
        return float(table[np.arange(self.segments), indices].sum())

    def __repr__(self):
        return (f"ProductQuantizer(dim={self.dim}, segments={self.segments}, "
                f"centroids={self.centroids_per_segment})")
