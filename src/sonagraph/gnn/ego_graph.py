"""
Ego-graph extraction.

Breadth-first expansion from a center entry over the causal hypergraph,
bounded by hop count and a per-hop neighbour cap. When a hop has more
candidates than the cap, the heaviest edges win (ties broken by id), so
extraction is deterministic.

Neighbour embeddings are decoded through the Tier Manager. A neighbour
whose vector is missing or cannot be decoded stays in the graph with no
embedding and is ignored by aggregation.
"""

import dataclasses
import logging
from typing import Dict, List, Mapping, Optional, Tuple

import numpy as np

from sonagraph.causal.hypergraph import Hypergraph
from sonagraph.causal.types import RelationType
from sonagraph.compression.tiers import TierManager
from sonagraph.exceptions import CodebookMismatch, NotFound
from sonagraph.ingestion.embeddings import EmbeddingProvider, embed_all_with_timeout
from sonagraph.gnn.types import EgoEdge, EgoGraph, EgoGraphConfig, EgoGraphStats, EgoNode

logger = logging.getLogger(__name__)

CAUSAL_RELATIONS = [r for r in RelationType if r.is_causal]
PROVENANCE_RELATIONS = [r for r in RelationType if r.is_provenance]


def _relation_filter(config: EgoGraphConfig) -> Optional[List[RelationType]]:
    if config.include_causal and config.include_provenance:
        return None
    if config.include_causal:
        return CAUSAL_RELATIONS
    if config.include_provenance:
        return PROVENANCE_RELATIONS
    return []


class EgoGraphExtractor:
    """
    Builds EgoGraphs from a hypergraph and a tier manager.

    Attributes:
        graph: Causal hypergraph to expand over
        tiers: Source of stored embeddings (optional)
    """

    def __init__(self, graph: Hypergraph, tiers: Optional[TierManager] = None):
        self.graph = graph
        self.tiers = tiers

    def _load_embedding(self, node_id: str, failures: Dict[str, Exception]) -> Optional[np.ndarray]:
        if self.tiers is None:
            return None
        try:
            return self.tiers.get_vector(node_id)
        except NotFound:
            return None
        except CodebookMismatch as e:
            failures[node_id] = e
            logger.warning("Could not decode embedding for %s: %s", node_id, e)
            return None

    def _center_embedding(self, center_id: str, center_embedding) -> np.ndarray:
        if center_embedding is not None:
            return np.asarray(center_embedding, dtype=np.float32).reshape(-1)
        if self.tiers is None:
            raise NotFound(f"No embedding supplied for center {center_id}")
        return self.tiers.get_vector(center_id)

    def extract(self, center_id: str, config: Optional[EgoGraphConfig] = None,
                center_embedding=None) -> EgoGraph:
        """
        Extract the bounded neighbourhood of ``center_id``.

        Args:
            center_id: Entry at the center
            config: Extraction bounds (defaults to ``EgoGraphConfig()``)
            center_embedding: Center vector to use instead of the stored one

        Returns:
            EgoGraph

        Raises:
            NotFound: If no center embedding is supplied and none is stored
        """
        config = config or EgoGraphConfig()
        center = self._center_embedding(center_id, center_embedding)
        ego = EgoGraph(center_id=center_id, center_embedding=center, max_hops=config.max_hops)

        relations = _relation_filter(config)
        if relations == [] or config.max_hops < 1 or config.max_neighbors_per_hop < 1:
            return ego

        visited = {center_id}
        frontier = [center_id]

        for hop in range(1, config.max_hops + 1):
            # Best admitting edge per unseen candidate
            candidates: Dict[str, Tuple[float, str, RelationType, str]] = {}
            for parent in frontier:
                for nb in self.graph.neighbors(parent, config.direction, relations,
                                               config.min_edge_weight):
                    if nb.node_id in visited:
                        continue
                    best = candidates.get(nb.node_id)
                    if best is None or nb.strength > best[0]:
                        candidates[nb.node_id] = (nb.strength, parent, nb.relation_type, nb.edge_id)

            ranked = sorted(candidates.items(), key=lambda kv: (-kv[1][0], kv[0]))
            if len(ranked) > config.max_neighbors_per_hop:
                ego.truncated = True
                logger.debug("Hop %d around %s truncated from %d to %d neighbours",
                             hop, center_id, len(ranked), config.max_neighbors_per_hop)
                ranked = ranked[:config.max_neighbors_per_hop]

            frontier = []
            for node_id, (weight, parent, relation, edge_id) in ranked:
                ego.nodes.append(EgoNode(
                    id=node_id,
                    hop=hop,
                    edge_weight=weight,
                    embedding=self._load_embedding(node_id, ego.failures),
                    relation_type=relation,
                    parent_id=parent,
                ))
                ego.edges.append(EgoEdge(parent, node_id, weight, relation, edge_id))
                visited.add(node_id)
                frontier.append(node_id)

            if not frontier:
                break

        return ego

    async def aextract(self, center_id: str, provider: EmbeddingProvider,
                       texts: Mapping[str, str], config: Optional[EgoGraphConfig] = None,
                       center_embedding=None, timeout: Optional[float] = None) -> EgoGraph:
        """
        Extract an ego graph, filling missing embeddings from ``provider``.

        Nodes without a stored vector whose text is in ``texts`` are embedded
        concurrently under one timeout. If the provider fails or times out,
        ProviderUnavailable propagates and no graph is returned.

        Args:
            center_id: Entry at the center
            provider: Embedding provider
            texts: Entry id -> text for entries that may need embedding
            config: Extraction bounds
            center_embedding: Center vector to use instead of the stored one
            timeout: Overall provider timeout in seconds

        Returns:
            EgoGraph
        """
        dimension = self.tiers.dim if self.tiers is not None else None

        if center_embedding is None and center_id in texts and (
                self.tiers is None or center_id not in self.tiers):
            center_embedding = (await embed_all_with_timeout(
                provider, [texts[center_id]], timeout, dimension))[0]

        ego = self.extract(center_id, config, center_embedding)
        missing = [n for n in ego.nodes if n.embedding is None and n.id in texts]
        if not missing:
            return ego

        vectors = await embed_all_with_timeout(
            provider, [texts[n.id] for n in missing], timeout, dimension)
        filled = dict(zip((n.id for n in missing), vectors))

        nodes = [
            dataclasses.replace(n, embedding=filled[n.id]) if n.id in filled else n
            for n in ego.nodes
        ]
        failures = {k: v for k, v in ego.failures.items() if k not in filled}
        logger.debug("Filled %d embeddings from provider around %s", len(filled), center_id)
        return dataclasses.replace(ego, nodes=nodes, failures=failures)


def graph_stats(ego: EgoGraph) -> EgoGraphStats:
    """Per-hop counts, embedding coverage and mean edge weight."""
    per_hop: Dict[int, int] = {}
    for node in ego.nodes:
        per_hop[node.hop] = per_hop.get(node.hop, 0) + 1
    weights = [e.weight for e in ego.edges]
    return EgoGraphStats(
        node_count=len(ego.nodes),
        edge_count=len(ego.edges),
        nodes_per_hop=per_hop,
        embedded_nodes=sum(1 for n in ego.nodes if n.embedding is not None),
        avg_edge_weight=float(np.mean(weights)) if weights else 0.0,
        truncated=ego.truncated,
    )
