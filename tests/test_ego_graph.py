"""
Unit tests for ego-graph extraction.
"""

import asyncio
import dataclasses

import numpy as np
import pytest

from sonagraph.causal import Direction, Hypergraph, RelationType
from sonagraph.compression import CompressionTier, TierManager
from sonagraph.exceptions import CodebookMismatch, NotFound, ProviderUnavailable
from sonagraph.gnn import EgoGraphConfig, EgoGraphExtractor, graph_stats

DIM = 8


class FakeProvider:
    """Deterministic provider: each text maps to a constant vector."""

    def __init__(self, dimension=DIM, delay=0.0):
        self.dimension = dimension
        self.delay = delay
        self.calls = []

    async def embed(self, text):
        self.calls.append(text)
        if self.delay:
            await asyncio.sleep(self.delay)
        return [float(len(text))] * self.dimension


@pytest.fixture
def star():
    """
    center -> n1..n5 with strengths 0.1..0.5, n5 -> m1 (0.9), n1 -> m2 (0.9).
    Every node has a stored vector.
    """
    graph = Hypergraph()
    tiers = TierManager(DIM)
    tiers.put("center", np.ones(DIM))
    for i in range(1, 6):
        graph.add_hyperedge(RelationType.CAUSES, ["center"], [f"n{i}"], i / 10)
        tiers.put(f"n{i}", np.full(DIM, float(i)))
    graph.add_hyperedge(RelationType.CAUSES, ["n5"], ["m1"], 0.9)
    graph.add_hyperedge(RelationType.CAUSES, ["n1"], ["m2"], 0.9)
    tiers.put("m1", np.full(DIM, 10.0))
    tiers.put("m2", np.full(DIM, 20.0))
    return graph, tiers


class TestExtract:
    """Test bounded BFS extraction."""

    def test_all_neighbours_within_cap(self, star):
        graph, tiers = star
        ego = EgoGraphExtractor(graph, tiers).extract("center")

        assert sorted(n.id for n in ego.at_hop(1)) == ["n1", "n2", "n3", "n4", "n5"]
        assert sorted(n.id for n in ego.at_hop(2)) == ["m1", "m2"]
        assert not ego.truncated
        assert ego.neighbor_count == 7

    def test_cap_keeps_heaviest(self, star):
        """Test that the per-hop cap keeps the heaviest edges."""
        graph, tiers = star
        config = EgoGraphConfig(max_hops=2, max_neighbors_per_hop=2)

        ego = EgoGraphExtractor(graph, tiers).extract("center", config)

        assert [n.id for n in ego.at_hop(1)] == ["n5", "n4"]
        assert [n.id for n in ego.at_hop(2)] == ["m1"]
        assert ego.truncated
        assert ego.node("m1").parent_id == "n5"

    def test_ties_broken_by_id(self):
        graph = Hypergraph()
        for name in ["c", "a", "b"]:
            graph.add_hyperedge(RelationType.CAUSES, ["x"], [name], 0.5)

        ego = EgoGraphExtractor(graph).extract(
            "x", EgoGraphConfig(max_neighbors_per_hop=2), center_embedding=np.zeros(DIM))

        assert [n.id for n in ego.nodes] == ["a", "b"]

    def test_hop_limit(self, star):
        graph, tiers = star
        ego = EgoGraphExtractor(graph, tiers).extract("center", EgoGraphConfig(max_hops=1))
        assert {n.hop for n in ego.nodes} == {1}

    def test_zero_hops(self, star):
        graph, tiers = star
        ego = EgoGraphExtractor(graph, tiers).extract("center", EgoGraphConfig(max_hops=0))
        assert ego.nodes == []
        assert np.array_equal(ego.center_embedding, np.ones(DIM, dtype=np.float32))

    def test_min_edge_weight(self, star):
        graph, tiers = star
        ego = EgoGraphExtractor(graph, tiers).extract(
            "center", EgoGraphConfig(max_hops=1, min_edge_weight=0.35))
        assert sorted(n.id for n in ego.nodes) == ["n4", "n5"]

    def test_relation_families(self):
        graph = Hypergraph()
        graph.add_hyperedge(RelationType.CAUSES, ["c"], ["a"], 0.5)
        graph.add_hyperedge(RelationType.DERIVED_FROM, ["c"], ["b"], 0.5)
        extractor = EgoGraphExtractor(graph)
        center = np.zeros(DIM)

        causal = extractor.extract("c", EgoGraphConfig(include_provenance=False), center)
        provenance = extractor.extract("c", EgoGraphConfig(include_causal=False), center)
        neither = extractor.extract(
            "c", EgoGraphConfig(include_causal=False, include_provenance=False), center)

        assert [n.id for n in causal.nodes] == ["a"]
        assert [n.id for n in provenance.nodes] == ["b"]
        assert neither.nodes == []

    def test_direction(self, star):
        graph, tiers = star
        ego = EgoGraphExtractor(graph, tiers).extract(
            "n5", EgoGraphConfig(max_hops=1, direction=Direction.BACKWARD))
        assert [n.id for n in ego.nodes] == ["center"]

    def test_embeddings_loaded(self, star):
        graph, tiers = star
        ego = EgoGraphExtractor(graph, tiers).extract("center")
        assert np.allclose(ego.node("n3").embedding, 3.0)

    def test_missing_vector_leaves_none(self, star):
        graph, tiers = star
        tiers.delete("n2")

        ego = EgoGraphExtractor(graph, tiers).extract("center")

        assert ego.node("n2").embedding is None
        assert "n2" not in ego.failures

    def test_undecodable_vector_recorded(self, star):
        graph, tiers = star
        tiers.train_codebook(np.stack([np.full(DIM, float(i)) for i in range(1, 6)]),
                             tier=CompressionTier.COLD)
        tiers.put("n3", np.full(DIM, 3.0), CompressionTier.COLD)
        tiers._vectors["n3"] = dataclasses.replace(tiers.get_compressed("n3"), codebook_version=42)

        ego = EgoGraphExtractor(graph, tiers).extract("center")

        assert ego.node("n3").embedding is None
        assert isinstance(ego.failures["n3"], CodebookMismatch)
        assert ego.node("n4").embedding is not None

    def test_missing_center(self, star):
        graph, tiers = star
        with pytest.raises(NotFound):
            EgoGraphExtractor(graph, tiers).extract("ghost")

    def test_stats(self, star):
        graph, tiers = star
        tiers.delete("m2")
        ego = EgoGraphExtractor(graph, tiers).extract("center")

        stats = graph_stats(ego)

        assert stats.node_count == 7
        assert stats.edge_count == 7
        assert stats.nodes_per_hop == {1: 5, 2: 2}
        assert stats.embedded_nodes == 6
        assert stats.avg_edge_weight == pytest.approx((0.1 + 0.2 + 0.3 + 0.4 + 0.5 + 0.9 + 0.9) / 7)


class TestAsyncExtract:
    """Test provider-backed embedding fill-in."""

    @pytest.mark.asyncio
    async def test_fills_missing_embeddings(self, star):
        graph, tiers = star
        tiers.delete("n2")
        tiers.delete("m1")
        provider = FakeProvider()

        ego = await EgoGraphExtractor(graph, tiers).aextract(
            "center", provider, {"n2": "two", "m1": "eleven", "n4": "unused"}, timeout=1.0)

        assert np.allclose(ego.node("n2").embedding, 3.0)
        assert np.allclose(ego.node("m1").embedding, 6.0)
        assert sorted(provider.calls) == ["eleven", "two"]

    @pytest.mark.asyncio
    async def test_center_from_provider(self):
        graph = Hypergraph()
        graph.add_hyperedge(RelationType.CAUSES, ["c"], ["a"], 0.5)

        ego = await EgoGraphExtractor(graph).aextract("c", FakeProvider(), {"c": "abcd"})

        assert np.allclose(ego.center_embedding, 4.0)

    @pytest.mark.asyncio
    async def test_nothing_missing_skips_provider(self, star):
        graph, tiers = star
        provider = FakeProvider()
        await EgoGraphExtractor(graph, tiers).aextract("center", provider, {"n1": "one"})
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_timeout(self, star):
        graph, tiers = star
        tiers.delete("n1")

        with pytest.raises(ProviderUnavailable):
            await EgoGraphExtractor(graph, tiers).aextract(
                "center", FakeProvider(delay=1.0), {"n1": "one"}, timeout=0.01)
