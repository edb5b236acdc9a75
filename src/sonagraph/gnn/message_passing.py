"""
Neighbour aggregation for ego graphs.

Two weighting schemes, never combined in one call:

    decay:      w_i = edge_weight_i * distance_decay ** hop_i
    attention:  a_i = softmax_i( (W_q c) . (W_k x_i) / sqrt(attention_dim) )

Decay weights feed MEAN, SUM or MAX aggregation; ATTENTION aggregates
sum_i a_i x_i. The result is blended with the center:

    h = self_loop_weight * c + (1 - self_loop_weight) * agg
"""

import logging
from typing import Dict, List, Optional, Tuple

import numpy as np

from sonagraph.exceptions import DimensionMismatch
from sonagraph.utils import normalize
from sonagraph.gnn.types import Aggregation, EgoGraph, EgoNode, MessagePassingConfig

logger = logging.getLogger(__name__)


def xavier_uniform(rng: np.random.Generator, fan_in: int, fan_out: int) -> np.ndarray:
    """Glorot-uniform matrix of shape (fan_in, fan_out)."""
    limit = np.sqrt(6.0 / (fan_in + fan_out))
    return rng.uniform(-limit, limit, size=(fan_in, fan_out)).astype(np.float32)


def softmax(scores: np.ndarray) -> np.ndarray:
    shifted = scores - np.max(scores)
    exp = np.exp(shifted)
    return exp / exp.sum()


class MessagePassing:
    """
    Aggregates neighbour embeddings of an ego graph.

    Attention projections are fixed at construction from the config seed
    and can be replaced with ``load_attention``. Nothing here is trained.
    """

    def __init__(self, dim: int, config: Optional[MessagePassingConfig] = None):
        self.dim = dim
        self.config = config or MessagePassingConfig()
        rng = np.random.default_rng(self.config.seed)
        self.query_proj = xavier_uniform(rng, dim, self.config.attention_dim)
        self.key_proj = xavier_uniform(rng, dim, self.config.attention_dim)

    def load_attention(self, query: np.ndarray, key: np.ndarray):
        """Replace the query/key projections, both of shape (dim, attention_dim)."""
        query = np.asarray(query, dtype=np.float32)
        key = np.asarray(key, dtype=np.float32)
        if query.ndim != 2 or query.shape[0] != self.dim or query.shape != key.shape:
            raise DimensionMismatch(self.dim, query.shape[0] if query.ndim else 0)
        self.query_proj = query
        self.key_proj = key

    def _usable(self, ego: EgoGraph) -> List[EgoNode]:
        usable = []
        for node in ego.nodes:
            if node.embedding is None:
                continue
            if node.embedding.shape[0] != self.dim:
                logger.warning("Ignoring %s: %d-dim embedding in %d-dim ego graph",
                               node.id, node.embedding.shape[0], self.dim)
                continue
            usable.append(node)
        return usable

    def decay_weights(self, nodes: List[EgoNode]) -> np.ndarray:
        return np.array([n.edge_weight * self.config.distance_decay ** n.hop for n in nodes],
                        dtype=np.float32)

    def attention_weights(self, center: np.ndarray, nodes: List[EgoNode]) -> np.ndarray:
        q = center @ self.query_proj
        keys = np.stack([n.embedding for n in nodes]) @ self.key_proj
        scores = keys @ q / np.sqrt(self.config.attention_dim)
        return softmax(scores.astype(np.float64)).astype(np.float32)

    def aggregate(self, ego: EgoGraph) -> Tuple[np.ndarray, Dict[str, float]]:
        """
        Aggregate usable neighbours into one vector.

        Returns:
            Tuple of (aggregate of shape (dim,), neighbour id -> weight used).
            With no usable neighbours the aggregate is the zero vector and
            the weight map is empty.
        """
        nodes = self._usable(ego)
        if not nodes:
            return np.zeros(self.dim, dtype=np.float32), {}

        X = np.stack([n.embedding for n in nodes]).astype(np.float32)
        agg_type = self.config.aggregation

        if agg_type == Aggregation.ATTENTION:
            w = self.attention_weights(ego.center_embedding, nodes)
            agg = w @ X
        else:
            w = self.decay_weights(nodes)
            weighted = X * w[:, None]
            if agg_type == Aggregation.SUM:
                agg = weighted.sum(axis=0)
            elif agg_type == Aggregation.MAX:
                agg = weighted.max(axis=0)
            else:
                total = float(w.sum())
                agg = weighted.sum(axis=0) / total if total > 0 else np.zeros(self.dim, dtype=np.float32)

        return agg.astype(np.float32), {n.id: float(wi) for n, wi in zip(nodes, w)}

    def propagate(self, ego: EgoGraph) -> Tuple[np.ndarray, Dict[str, float]]:
        """
        Blend the center with its aggregated neighbourhood.

        A center with no usable neighbours is returned as is (normalised
        when configured).
        """
        center = np.asarray(ego.center_embedding, dtype=np.float32)
        if center.shape[0] != self.dim:
            raise DimensionMismatch(self.dim, center.shape[0])

        agg, weights = self.aggregate(ego)
        if weights:
            s = self.config.self_loop_weight
            blended = s * center + (1.0 - s) * agg
        else:
            blended = center.copy()

        if self.config.normalize:
            blended = normalize(blended)
        return blended.astype(np.float32), weights
