"""
Unit tests for message passing and embedding enhancement.

Tests aggregation weights, output shape and norm, determinism and the
batch enhancer's failure handling.
"""

import numpy as np
import pytest

from sonagraph.causal import Hypergraph, RelationType
from sonagraph.compression import TierManager
from sonagraph.exceptions import DimensionMismatch, InvalidInput, NotFound
from sonagraph.gnn import (
    Activation,
    Aggregation,
    EgoGraph,
    EgoGraphConfig,
    EgoNode,
    EnhancementConfig,
    EnhancementLayer,
    GraphEnhancer,
    MessagePassing,
    MessagePassingConfig,
)
from sonagraph.gnn.enhancement import MAX_VARIANTS

DIM = 8
CONFIG = EnhancementConfig(input_dim=DIM, output_dim=12, hidden_dim=16)


def make_ego(n_neighbors=3, seed=0):
    rng = np.random.default_rng(seed)
    nodes = [
        EgoNode(id=f"n{i}", hop=1 + i % 2, edge_weight=0.5 + 0.1 * i,
                embedding=rng.normal(size=DIM).astype(np.float32))
        for i in range(n_neighbors)
    ]
    return EgoGraph(center_id="c", center_embedding=rng.normal(size=DIM).astype(np.float32),
                    nodes=nodes)


class TestMessagePassing:
    """Test neighbour aggregation."""

    def test_decay_weights(self):
        ego = make_ego()
        passer = MessagePassing(DIM, MessagePassingConfig(distance_decay=0.5))

        _, weights = passer.aggregate(ego)

        assert weights["n0"] == pytest.approx(0.5 * 0.5)
        assert weights["n1"] == pytest.approx(0.6 * 0.25)
        assert weights["n2"] == pytest.approx(0.7 * 0.5)

    def test_mean_is_weighted_average(self):
        ego = make_ego()
        passer = MessagePassing(DIM)

        agg, weights = passer.aggregate(ego)

        w = np.array([weights[n.id] for n in ego.nodes])
        X = np.stack([n.embedding for n in ego.nodes])
        assert np.allclose(agg, (w[:, None] * X).sum(axis=0) / w.sum(), atol=1e-6)

    def test_sum_and_max(self):
        ego = make_ego()
        w = MessagePassing(DIM).decay_weights(ego.nodes)
        X = np.stack([n.embedding for n in ego.nodes]) * w[:, None]

        agg_sum, _ = MessagePassing(DIM, MessagePassingConfig(aggregation=Aggregation.SUM)).aggregate(ego)
        agg_max, _ = MessagePassing(DIM, MessagePassingConfig(aggregation=Aggregation.MAX)).aggregate(ego)

        assert np.allclose(agg_sum, X.sum(axis=0), atol=1e-6)
        assert np.allclose(agg_max, X.max(axis=0), atol=1e-6)

    def test_attention_weights_sum_to_one(self):
        ego = make_ego(5)
        passer = MessagePassing(DIM, MessagePassingConfig(aggregation=Aggregation.ATTENTION, attention_dim=4))

        _, weights = passer.aggregate(ego)

        assert sum(weights.values()) == pytest.approx(1.0, abs=1e-5)
        assert all(w > 0 for w in weights.values())

    def test_load_attention(self):
        ego = make_ego(4)
        config = MessagePassingConfig(aggregation=Aggregation.ATTENTION, attention_dim=4)
        passer = MessagePassing(DIM, config)
        passer.load_attention(np.zeros((DIM, 4)), np.zeros((DIM, 4)))

        _, weights = passer.aggregate(ego)

        # Zero projections score every neighbour equally
        assert all(w == pytest.approx(0.25) for w in weights.values())

    def test_load_attention_shape_checked(self):
        with pytest.raises(DimensionMismatch):
            MessagePassing(DIM).load_attention(np.zeros((DIM + 1, 64)), np.zeros((DIM + 1, 64)))

    def test_no_neighbours_returns_center(self):
        ego = make_ego(0)
        h, weights = MessagePassing(DIM).propagate(ego)

        assert weights == {}
        assert np.allclose(h, ego.center_embedding / np.linalg.norm(ego.center_embedding))

    def test_missing_embeddings_ignored(self):
        ego = make_ego(3)
        ego.nodes[1] = EgoNode(id="n1", hop=1, edge_weight=0.9, embedding=None)

        _, weights = MessagePassing(DIM).aggregate(ego)

        assert set(weights) == {"n0", "n2"}

    def test_self_loop_blend(self):
        ego = make_ego(2)
        config = MessagePassingConfig(self_loop_weight=1.0, normalize=False)

        h, _ = MessagePassing(DIM, config).propagate(ego)

        assert np.allclose(h, ego.center_embedding)


class TestEnhancementLayer:
    """Test the projection layer."""

    def test_output_dim_without_neighbours(self):
        """Test that an isolated entry still yields a unit output_dim vector."""
        result = EnhancementLayer(CONFIG).enhance(make_ego(0))

        assert result.enhanced.shape == (12,)
        assert np.linalg.norm(result.enhanced) == pytest.approx(1.0, abs=1e-5)
        assert result.neighbors_used == 0

    def test_output_with_neighbours(self):
        result = EnhancementLayer(CONFIG).enhance(make_ego(4))

        assert result.enhanced.shape == (12,)
        assert result.neighbors_used == 4
        assert result.entry_id == "c"

    def test_deterministic(self):
        """Test bit-identical output for identical inputs and configs."""
        ego = make_ego(3)
        a = EnhancementLayer(CONFIG).enhance(ego).enhanced
        b = EnhancementLayer(CONFIG).enhance(ego).enhanced
        c = EnhancementLayer(CONFIG).enhance(make_ego(3)).enhanced

        assert np.array_equal(a, b)
        assert np.array_equal(a, c)

    def test_neighbours_change_output(self):
        layer = EnhancementLayer(CONFIG)
        ego = make_ego(3)
        alone = EgoGraph(center_id="c", center_embedding=ego.center_embedding)

        assert not np.allclose(layer.enhance(ego).enhanced, layer.enhance(alone).enhanced)

    def test_training_dropout(self):
        layer = EnhancementLayer(EnhancementConfig(input_dim=DIM, output_dim=12, hidden_dim=64, dropout=0.5))
        ego = make_ego(3)

        inference = layer.enhance(ego).enhanced
        training = layer.enhance(ego, training=True).enhanced

        assert not np.allclose(inference, training)
        assert np.array_equal(inference, layer.enhance(ego).enhanced)

    @pytest.mark.parametrize("activation", list(Activation))
    def test_activations(self, activation):
        config = EnhancementConfig(input_dim=DIM, output_dim=6, hidden_dim=16, activation=activation)
        result = EnhancementLayer(config).enhance(make_ego(2))
        assert result.enhanced.shape == (6,)

    def test_without_residual(self):
        config = EnhancementConfig(input_dim=DIM, output_dim=6, hidden_dim=16, residual=False)
        layer = EnhancementLayer(config)

        assert layer.W_res is None
        assert layer.enhance(make_ego(2)).enhanced.shape == (6,)

    def test_variant_config(self):
        layer = EnhancementLayer(CONFIG)
        other = EnhancementConfig(input_dim=DIM, output_dim=5, hidden_dim=16)

        result = layer.enhance(make_ego(2), enhancement_config=other)

        assert result.enhanced.shape == (5,)

    def test_variant_cache_bounded(self):
        layer = EnhancementLayer(CONFIG)
        ego = make_ego(2)
        configs = [EnhancementConfig(input_dim=DIM, output_dim=20 + i, hidden_dim=16)
                   for i in range(MAX_VARIANTS + 2)]

        for config in configs:
            layer.enhance(ego, enhancement_config=config)
        # Touch the oldest survivor so it outlives the next insert
        layer.enhance(ego, enhancement_config=configs[2])
        layer.enhance(ego, enhancement_config=EnhancementConfig(input_dim=DIM, output_dim=3, hidden_dim=16))

        assert len(layer._variants) == MAX_VARIANTS
        assert configs[0] not in layer._variants
        assert configs[2] in layer._variants
        assert configs[3] not in layer._variants

    def test_variant_keeps_own_attention(self):
        config = MessagePassingConfig(aggregation=Aggregation.ATTENTION, attention_dim=4)
        other = EnhancementConfig(input_dim=DIM, output_dim=5, hidden_dim=16)
        layer = EnhancementLayer(CONFIG)
        layer.load_attention(np.zeros((DIM, 4)), np.zeros((DIM, 4)), config)
        ego = make_ego(4)

        base = layer.enhance(ego, config)
        variant = layer.enhance(ego, config, enhancement_config=other)

        assert all(w == pytest.approx(0.25) for w in base.neighbor_weights.values())
        assert variant.neighbor_weights == EnhancementLayer(other).enhance(ego, config).neighbor_weights

    def test_wrong_center_width(self):
        ego = EgoGraph(center_id="c", center_embedding=np.ones(DIM + 2, dtype=np.float32))
        with pytest.raises(DimensionMismatch):
            EnhancementLayer(CONFIG).enhance(ego)

    def test_invalid_config(self):
        with pytest.raises(InvalidInput):
            EnhancementLayer(EnhancementConfig(input_dim=DIM, dropout=1.0))

    def test_round_trip(self):
        layer = EnhancementLayer(CONFIG)
        layer.W2 = layer.W2 * 2.0
        ego = make_ego(3)

        restored = EnhancementLayer.from_dict(layer.to_dict())

        assert np.array_equal(restored.enhance(ego).enhanced, layer.enhance(ego).enhanced)

    def test_load_dict_shape_checked(self):
        layer = EnhancementLayer(CONFIG)
        data = layer.to_dict()
        data['W1'] = np.zeros((3, 3)).tolist()

        with pytest.raises(InvalidInput):
            layer.load_dict(data)


class TestGraphEnhancer:
    """Test extract-then-enhance over stored entries."""

    @pytest.fixture
    def enhancer(self):
        rng = np.random.default_rng(3)
        graph = Hypergraph()
        tiers = TierManager(DIM)
        for name in ["a", "b", "c"]:
            tiers.put(name, rng.normal(size=DIM))
        graph.add_hyperedge(RelationType.CAUSES, ["a"], ["b", "c"], 0.8)
        return GraphEnhancer(graph, tiers, layer=EnhancementLayer(CONFIG),
                             ego_config=EgoGraphConfig(max_hops=1))

    def test_enhance(self, enhancer):
        result = enhancer.enhance("a")
        assert result.neighbors_used == 2
        assert set(result.neighbor_weights) == {"b", "c"}

    def test_batch_isolates_failures(self, enhancer):
        batch = enhancer.batch_enhance(["a", "ghost", "b"])

        assert set(batch.results) == {"a", "b"}
        assert isinstance(batch.failures["ghost"], NotFound)
        assert batch.avg_neighbors == pytest.approx((2 + 1) / 2)

    def test_stats(self, enhancer):
        enhancer.batch_enhance(["a", "ghost"])
        enhancer.enhance("c")

        stats = enhancer.stats()

        assert stats.enhancements == 2
        assert stats.failures == 1
        assert stats.avg_neighbors == pytest.approx(1.5)
