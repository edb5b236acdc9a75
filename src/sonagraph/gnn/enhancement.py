"""
Graph-context embedding enhancement.

    h   = MessagePassing(ego)                      (dim = input_dim)
    z   = act(h W1 + b1)  [dropout in training]    (dim = hidden_dim)
    out = z W2 + b2  [+ c W_res if residual]       (dim = output_dim)
    out = out / ||out||

Weights are drawn once from a seeded generator, so a fixed ego graph and
fixed configs give bit-identical output at inference time.
"""

import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Dict, Iterable, Optional

import numpy as np

from sonagraph.causal.hypergraph import Hypergraph
from sonagraph.compression.tiers import TierManager
from sonagraph.exceptions import DimensionMismatch, InvalidInput, SonagraphError
from sonagraph.utils import normalize
from sonagraph.gnn.ego_graph import EgoGraphExtractor
from sonagraph.gnn.message_passing import MessagePassing, xavier_uniform
from sonagraph.gnn.types import (
    Activation,
    BatchEnhancementResult,
    EgoGraph,
    EgoGraphConfig,
    EnhancementConfig,
    EnhancementResult,
    EnhancerStats,
    MessagePassingConfig,
)

logger = logging.getLogger(__name__)

# Per-config layers kept by EnhancementLayer.enhance (least recently used dropped)
MAX_VARIANTS = 8


def activate(x: np.ndarray, activation: Activation) -> np.ndarray:
    if activation == Activation.RELU:
        return np.maximum(x, 0.0)
    if activation == Activation.GELU:
        return 0.5 * x * (1.0 + np.tanh(np.sqrt(2.0 / np.pi) * (x + 0.044715 * x ** 3)))
    if activation == Activation.TANH:
        return np.tanh(x)
    return x


class EnhancementLayer:
    """
    Two-layer projection from input_dim to output_dim with optional residual.

    Attributes:
        config (EnhancementConfig): Layer shape and behaviour
        W1 (np.ndarray): Shape (input_dim, hidden_dim)
        W2 (np.ndarray): Shape (hidden_dim, output_dim)
        W_res (np.ndarray): Shape (input_dim, output_dim), None without residual
    """

    def __init__(self, config: Optional[EnhancementConfig] = None):
        config = config or EnhancementConfig()
        if min(config.input_dim, config.output_dim, config.hidden_dim) < 1:
            raise InvalidInput("Enhancement dimensions must be positive")
        if not 0.0 <= config.dropout < 1.0:
            raise InvalidInput(f"dropout must be in [0, 1), got {config.dropout}")

        self.config = config
        rng = np.random.default_rng(config.seed)
        self.W1 = xavier_uniform(rng, config.input_dim, config.hidden_dim)
        self.b1 = np.zeros(config.hidden_dim, dtype=np.float32)
        self.W2 = xavier_uniform(rng, config.hidden_dim, config.output_dim)
        self.b2 = np.zeros(config.output_dim, dtype=np.float32)
        self.W_res = xavier_uniform(rng, config.input_dim, config.output_dim) if config.residual else None

        # Dropout masks draw from their own stream so inference stays untouched
        self._dropout_rng = np.random.default_rng(config.seed + 1)
        self._passers: Dict[MessagePassingConfig, MessagePassing] = {}
        self._variants: "OrderedDict[EnhancementConfig, EnhancementLayer]" = OrderedDict()
        self._lock = threading.Lock()

    def _passer(self, config: MessagePassingConfig) -> MessagePassing:
        with self._lock:
            passer = self._passers.get(config)
            if passer is None:
                passer = MessagePassing(self.config.input_dim, config)
                self._passers[config] = passer
            return passer

    def load_attention(self, query: np.ndarray, key: np.ndarray,
                       message_config: Optional[MessagePassingConfig] = None):
        """Install attention projections for one message-passing config of this layer only."""
        self._passer(message_config or MessagePassingConfig()).load_attention(query, key)

    def project(self, h: np.ndarray, center: np.ndarray, training: bool = False) -> np.ndarray:
        """Hidden projection, optional residual, L2 normalisation."""
        z = activate(h @ self.W1 + self.b1, self.config.activation)
        if training and self.config.dropout > 0:
            keep = 1.0 - self.config.dropout
            mask = self._dropout_rng.random(z.shape) < keep
            z = z * mask / keep
        out = z @ self.W2 + self.b2
        if self.W_res is not None:
            out = out + center @ self.W_res
        return normalize(out.astype(np.float32))

    def enhance(self, ego: EgoGraph, message_config: Optional[MessagePassingConfig] = None,
                enhancement_config: Optional[EnhancementConfig] = None,
                training: bool = False) -> EnhancementResult:
        """
        Enhance the center embedding of an ego graph.

        Args:
            ego: Extracted ego graph
            message_config: Aggregation settings (defaults to MessagePassingConfig())
            enhancement_config: Use a layer built from this config instead of
                this layer's own. Up to MAX_VARIANTS such layers are cached;
                each has its own seeded weights and default attention, and
                attention installed with load_attention on this layer does
                not carry over to them.
            training: Apply dropout

        Returns:
            EnhancementResult with a unit-norm vector of length output_dim

        Raises:
            DimensionMismatch: If the center embedding is not input_dim wide
        """
        if enhancement_config is not None and enhancement_config != self.config:
            with self._lock:
                variant = self._variants.get(enhancement_config)
                if variant is None:
                    variant = EnhancementLayer(enhancement_config)
                    self._variants[enhancement_config] = variant
                    if len(self._variants) > MAX_VARIANTS:
                        self._variants.popitem(last=False)
                else:
                    self._variants.move_to_end(enhancement_config)
            return variant.enhance(ego, message_config, training=training)

        start = time.perf_counter()
        center = np.asarray(ego.center_embedding, dtype=np.float32).reshape(-1)
        if center.shape[0] != self.config.input_dim:
            raise DimensionMismatch(self.config.input_dim, center.shape[0])

        h, weights = self._passer(message_config or MessagePassingConfig()).propagate(ego)
        enhanced = self.project(h, center, training=training)

        return EnhancementResult(
            entry_id=ego.center_id,
            enhanced=enhanced,
            neighbors_used=len(weights),
            neighbor_weights=weights,
            processing_time_ms=(time.perf_counter() - start) * 1000,
            truncated=ego.truncated,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Projection weights as nested lists."""
        return {
            'config': {
                'input_dim': self.config.input_dim,
                'output_dim': self.config.output_dim,
                'hidden_dim': self.config.hidden_dim,
                'activation': self.config.activation.value,
                'dropout': self.config.dropout,
                'residual': self.config.residual,
                'seed': self.config.seed,
            },
            'W1': self.W1.tolist(),
            'b1': self.b1.tolist(),
            'W2': self.W2.tolist(),
            'b2': self.b2.tolist(),
            'W_res': self.W_res.tolist() if self.W_res is not None else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EnhancementLayer":
        cfg = dict(data['config'])
        cfg['activation'] = Activation(cfg['activation'])
        layer = cls(EnhancementConfig(**cfg))
        layer.load_dict(data)
        return layer

    def load_dict(self, data: Dict[str, Any]):
        """Replace projection weights, checking every shape against the config."""
        c = self.config
        expected = {
            'W1': (c.input_dim, c.hidden_dim),
            'b1': (c.hidden_dim,),
            'W2': (c.hidden_dim, c.output_dim),
            'b2': (c.output_dim,),
        }
        if c.residual:
            expected['W_res'] = (c.input_dim, c.output_dim)

        loaded = {}
        for name, shape in expected.items():
            arr = np.asarray(data[name], dtype=np.float32)
            if arr.shape != shape:
                raise InvalidInput(f"{name} has shape {arr.shape}, expected {shape}")
            loaded[name] = arr
        for name, arr in loaded.items():
            setattr(self, name, arr)


class GraphEnhancer:
    """
    Extract-then-enhance for entries stored in the core.

    Keeps running totals for ``stats()``.
    """

    def __init__(self, graph: Hypergraph, tiers: TierManager,
                 layer: Optional[EnhancementLayer] = None,
                 ego_config: Optional[EgoGraphConfig] = None,
                 message_config: Optional[MessagePassingConfig] = None):
        self.extractor = EgoGraphExtractor(graph, tiers)
        self.layer = layer or EnhancementLayer(EnhancementConfig(input_dim=tiers.dim))
        self.ego_config = ego_config or EgoGraphConfig()
        self.message_config = message_config or MessagePassingConfig()

        self._lock = threading.Lock()
        self._count = 0
        self._failures = 0
        self._total_neighbors = 0
        self._total_time_ms = 0.0

    def enhance(self, center_id: str, ego_config: Optional[EgoGraphConfig] = None,
                message_config: Optional[MessagePassingConfig] = None,
                center_embedding=None, training: bool = False) -> EnhancementResult:
        """Extract the ego graph of ``center_id`` and enhance it."""
        ego = self.extractor.extract(center_id, ego_config or self.ego_config, center_embedding)
        result = self.layer.enhance(ego, message_config or self.message_config, training=training)
        with self._lock:
            self._count += 1
            self._total_neighbors += result.neighbors_used
            self._total_time_ms += result.processing_time_ms
        return result

    def batch_enhance(self, center_ids: Iterable[str],
                      ego_config: Optional[EgoGraphConfig] = None,
                      message_config: Optional[MessagePassingConfig] = None) -> BatchEnhancementResult:
        """
        Enhance several entries; a failing entry is recorded, not raised.

        Returns:
            BatchEnhancementResult with per-id results and failures
        """
        start = time.perf_counter()
        results: Dict[str, EnhancementResult] = {}
        failures: Dict[str, Exception] = {}

        for center_id in center_ids:
            try:
                results[center_id] = self.enhance(center_id, ego_config, message_config)
            except SonagraphError as e:
                failures[center_id] = e
                logger.warning("Enhancement failed for %s: %s", center_id, e)

        if failures:
            with self._lock:
                self._failures += len(failures)

        neighbors = [r.neighbors_used for r in results.values()]
        return BatchEnhancementResult(
            results=results,
            failures=failures,
            avg_neighbors=float(np.mean(neighbors)) if neighbors else 0.0,
            total_time_ms=(time.perf_counter() - start) * 1000,
        )

    def stats(self) -> EnhancerStats:
        with self._lock:
            n = self._count
            return EnhancerStats(
                enhancements=n,
                avg_neighbors=self._total_neighbors / n if n else 0.0,
                avg_time_ms=self._total_time_ms / n if n else 0.0,
                failures=self._failures,
            )
