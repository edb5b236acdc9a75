"""
KnowledgeCore: wires the hypergraph, tier manager, enhancer and learning
engine into the query-time data flow.

    candidates (external similarity) -> rank()     -> adjusted scores + trajectory
    entry id                         -> enhance()  -> graph-context embedding
    trajectory id + quality          -> feedback() -> weight update, drift status
    entry ids                        -> explain()  -> ranked causal paths
"""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

import numpy as np

from sonagraph.causal import CausalGraphStats, CausalQuery, CausalTraversalResult, Direction, Hypergraph
from sonagraph.compression import (
    CompressedVector,
    CompressionStats,
    CompressionTier,
    TierManager,
    TransitionConfig,
    TransitionReport,
)
from sonagraph.config import CoreSettings
from sonagraph.gnn import (
    EgoGraphConfig,
    EnhancementConfig,
    EnhancementLayer,
    EnhancementResult,
    EnhancerStats,
    GraphEnhancer,
    MessagePassingConfig,
)
from sonagraph.ingestion import EmbeddingProvider
from sonagraph.learning import (
    FeedbackResult,
    LearningStats,
    MaintenanceConfig,
    PruneResult,
    SonaConfig,
    SonaEngine,
    TrackedQueryResult,
)
from sonagraph.storage import SnapshotStore, load_components, save_components

logger = logging.getLogger(__name__)

COMPONENTS = ["graph", "tiers", "sona", "enhancement"]


@dataclass
class CoreState:
    graph: CausalGraphStats
    compression: CompressionStats
    learning: LearningStats
    enhancement: EnhancerStats


class KnowledgeCore:
    """
    Retrieval core of an agent knowledge store.

    Writes made through the core are serialised against ``snapshot()``;
    writes made directly on a component bypass that lock.

    Attributes:
        settings (CoreSettings): Dimensionality and seed
        graph (Hypergraph): Causal/provenance relations between entries
        tiers (TierManager): Tiered vector storage
        enhancer (GraphEnhancer): Ego-graph enhancement
        sona (SonaEngine): Learned ranking weights
    """

    def __init__(self, settings: Optional[CoreSettings] = None,
                 sona_config: Optional[SonaConfig] = None,
                 enhancement_config: Optional[EnhancementConfig] = None,
                 ego_config: Optional[EgoGraphConfig] = None,
                 message_config: Optional[MessagePassingConfig] = None,
                 clock: Optional[Callable[[], float]] = None,
                 source_lookup: Optional[Callable[[str], Optional[np.ndarray]]] = None):
        """
        Args:
            settings: Dimensionality and seed (defaults to CoreSettings())
            sona_config: Learning configuration
            enhancement_config: Projection shape (defaults to dimensions -> output_dim)
            ego_config: Default ego-graph bounds
            message_config: Default aggregation settings
            clock: Time source shared by every component
            source_lookup: Returns an entry's original vector for lossless promotion
        """
        self.settings = settings or CoreSettings()
        self._clock = clock

        self.graph = Hypergraph()
        self.tiers = TierManager(self.settings.dimensions, clock=clock,
                                 source_lookup=source_lookup, seed=self.settings.seed)
        enhancement_config = enhancement_config or EnhancementConfig(
            input_dim=self.settings.dimensions,
            output_dim=self.settings.output_dim,
            seed=self.settings.seed,
        )
        self.enhancer = GraphEnhancer(
            self.graph,
            self.tiers,
            EnhancementLayer(enhancement_config),
            ego_config=ego_config,
            message_config=message_config,
        )
        self.sona = SonaEngine(sona_config, clock)
        # Serialises core-level writes against snapshot()
        self._write_lock = threading.RLock()

    @classmethod
    def from_env(cls, env_file=None, **kwargs) -> "KnowledgeCore":
        return cls(CoreSettings.from_env(env_file), **kwargs)

    # ------------------------------------------------------------------
    # Entries and relations
    # ------------------------------------------------------------------

    def add_entry(self, entry_id: str, vector,
                  tier: CompressionTier = CompressionTier.HOT) -> CompressedVector:
        """Store an entry's vector (replacing any previous one)."""
        with self._write_lock:
            return self.tiers.put(entry_id, vector, tier)

    def relate(self, relation_type, sources: Iterable[str], targets: Iterable[str],
               strength: float, metadata: Optional[Dict[str, Any]] = None) -> str:
        """Add a hyperedge. Returns its id."""
        with self._write_lock:
            return self.graph.add_hyperedge(relation_type, sources, targets, strength, metadata)

    def unrelate(self, edge_id: str):
        with self._write_lock:
            self.graph.remove_hyperedge(edge_id)

    def forget(self, entry_id: str) -> bool:
        """
        Drop an entry's vector, access stats and every hyperedge touching it.

        Learned weights are kept for audit.

        Returns:
            bool: True if anything was removed
        """
        with self._write_lock:
            had_vector = self.tiers.delete(entry_id)
            removed_edges = self.graph.remove_node(entry_id)
        if had_vector or removed_edges:
            logger.info("Forgot %s (%d relations removed)", entry_id, len(removed_edges))
        return had_vector or bool(removed_edges)

    # ------------------------------------------------------------------
    # Query time
    # ------------------------------------------------------------------

    def rank(self, candidates: Iterable, query: str = "", query_embedding=None,
             record: bool = True) -> TrackedQueryResult:
        """Re-rank externally scored candidates with learned weights."""
        with self._write_lock:
            return self.sona.apply_weights(candidates, query, query_embedding, record=record)

    def explain(self, entry_ids: List[str], direction: Direction = Direction.FORWARD,
                max_depth: Optional[int] = None, relation_types=None,
                min_strength: Optional[float] = None) -> CausalTraversalResult:
        """Causal paths out of (or into) the given entries."""
        return self.graph.traverse(CausalQuery(
            start_ids=list(entry_ids),
            direction=direction,
            max_depth=max_depth,
            relation_types=relation_types,
            min_strength=min_strength,
        ))

    def enhance(self, entry_id: str, ego_config: Optional[EgoGraphConfig] = None,
                message_config: Optional[MessagePassingConfig] = None) -> EnhancementResult:
        return self.enhancer.enhance(entry_id, ego_config, message_config)

    async def aenhance(self, entry_id: str, provider: EmbeddingProvider,
                       texts: Mapping[str, str], ego_config: Optional[EgoGraphConfig] = None,
                       message_config: Optional[MessagePassingConfig] = None,
                       timeout: Optional[float] = None) -> EnhancementResult:
        """Enhance, embedding neighbours without a stored vector through ``provider``."""
        ego = await self.enhancer.extractor.aextract(
            entry_id, provider, texts, ego_config or self.enhancer.ego_config, timeout=timeout)
        return self.enhancer.layer.enhance(ego, message_config or self.enhancer.message_config)

    def feedback(self, trajectory_id: str, quality: float,
                 notes: Optional[str] = None) -> FeedbackResult:
        with self._write_lock:
            return self.sona.provide_feedback(trajectory_id, quality, notes)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def maintenance(self, config: Optional[MaintenanceConfig] = None) -> PruneResult:
        with self._write_lock:
            return self.sona.maintenance(config)

    def evaluate_tiers(self, config: Optional[TransitionConfig] = None) -> TransitionReport:
        with self._write_lock:
            return self.tiers.evaluate_transitions(config)

    def train_codebook(self, samples, tier: CompressionTier) -> int:
        return self.tiers.train_codebook(samples, tier=tier)

    def get_state(self) -> CoreState:
        return CoreState(
            graph=self.graph.stats(),
            compression=self.tiers.stats(),
            learning=self.sona.stats(),
            enhancement=self.enhancer.stats(),
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        """
        Every component's state, keyed by component name.

        Taken under the core write lock, so all components reflect the same
        point in the sequence of core-level writes.
        """
        with self._write_lock:
            return {
                'graph': self.graph.to_dict(),
                'tiers': self.tiers.to_dict(),
                'sona': self.sona.snapshot(),
                'enhancement': self.enhancer.layer.to_dict(),
            }

    @classmethod
    def restore(cls, snapshot: Mapping[str, Dict[str, Any]],
                settings: Optional[CoreSettings] = None, **kwargs) -> "KnowledgeCore":
        """
        Rebuild a core from ``snapshot()`` output.

        Every component is reconstructed (and validated) before the core is
        returned. Missing components start empty.
        """
        core = cls(settings, **kwargs)
        if snapshot.get('graph') is not None:
            core.graph = Hypergraph.from_dict(snapshot['graph'])
        if snapshot.get('tiers') is not None:
            core.tiers = TierManager.from_dict(snapshot['tiers'], clock=kwargs.get('clock'),
                                               source_lookup=kwargs.get('source_lookup'))
        if snapshot.get('enhancement') is not None:
            layer = EnhancementLayer.from_dict(snapshot['enhancement'])
        else:
            layer = core.enhancer.layer
        core.enhancer = GraphEnhancer(core.graph, core.tiers, layer,
                                      ego_config=core.enhancer.ego_config,
                                      message_config=core.enhancer.message_config)
        core.sona.initialize(snapshot.get('sona'))
        logger.info("Restored core: %d entries, %d relations", len(core.tiers), len(core.graph))
        return core

    def save(self, store: SnapshotStore, prefix: str = ""):
        save_components(store, self.snapshot(), prefix)
        logger.info("Saved core snapshot (%s)", ", ".join(COMPONENTS))

    @classmethod
    def load(cls, store: SnapshotStore, prefix: str = "",
             settings: Optional[CoreSettings] = None, **kwargs) -> "KnowledgeCore":
        return cls.restore(load_components(store, COMPONENTS, prefix), settings, **kwargs)

    def shutdown(self, store: Optional[SnapshotStore] = None, prefix: str = ""):
        """Flush every component to ``store`` and stop the learning engine."""
        if store is not None:
            self.save(store, prefix)
        self.sona.shutdown()
