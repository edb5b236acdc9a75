"""
Unit tests for the compression tier manager.

Tests per-tier fidelity, codebook versioning, access-driven transitions
and persistence.
"""

import asyncio
import dataclasses
import json
import time
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from sonagraph.compression import (
    TIER_ORDER,
    WARM_RELATIVE_ERROR,
    CompressionTier,
    TierManager,
    TransitionConfig,
)
from sonagraph.exceptions import (
    CodebookMismatch,
    CodebookRejected,
    DimensionMismatch,
    InvalidInput,
    NotFound,
)

DIM = 16
HOUR = 3600.0
DAY = 24 * HOUR


class FakeClock:
    def __init__(self, t=0.0):
        self.t = t

    def __call__(self):
        return self.t

    def advance(self, seconds):
        self.t += seconds


@pytest.fixture
def clock():
    return FakeClock(1000.0)


@pytest.fixture
def vectors():
    rng = np.random.default_rng(11)
    return rng.normal(size=(8, DIM)).astype(np.float32)


@pytest.fixture
def manager(clock):
    return TierManager(DIM, centroids_per_tier={CompressionTier.COOL: 32}, clock=clock)


@pytest.fixture
def trained(manager, vectors):
    """Manager with a COOL (32) and a COLD (16) codebook trained on ``vectors``."""
    manager.train_codebook(vectors, tier=CompressionTier.COOL)
    manager.train_codebook(vectors, tier=CompressionTier.COLD)
    return manager


class TestFidelity:
    """Test the documented error bound of every tier."""

    def test_hot_is_exact(self, manager, vectors):
        compressed = manager.compress(vectors[0], CompressionTier.HOT)
        assert np.array_equal(manager.decompress(compressed), vectors[0])
        assert compressed.nbytes == DIM * 4

    def test_hot_payload_is_a_copy(self, manager, vectors):
        v = vectors[0].copy()
        compressed = manager.compress(v, CompressionTier.HOT)
        v[0] = 99.0
        assert manager.decompress(compressed)[0] != 99.0

    @pytest.mark.parametrize("tier", list(CompressionTier))
    def test_payload_is_read_only(self, trained, vectors, tier):
        trained.put("a", vectors[0], tier)
        compressed = trained.get_compressed("a")

        with pytest.raises(ValueError):
            compressed.payload[0] = 0

    def test_warm_relative_error(self, manager, vectors):
        """Test the float16 per-element bound."""
        for v in vectors:
            decoded = manager.decompress(manager.compress(v, CompressionTier.WARM))
            err = np.abs(decoded - v)
            assert np.all(err <= WARM_RELATIVE_ERROR * np.abs(v) + 1e-7)

    @pytest.mark.parametrize("tier", [CompressionTier.COOL, CompressionTier.COLD])
    def test_quantized_within_epsilon(self, trained, vectors, tier):
        """Test that training vectors decode within the tier's epsilon."""
        errors = [
            np.mean(np.abs(trained.decompress(trained.compress(v, tier)) - v))
            for v in vectors
        ]
        assert np.mean(errors) <= trained.epsilons[tier]
        assert trained.active_codebook(tier).mean_error <= trained.epsilons[tier]

    def test_cold_packs_two_codes_per_byte(self, trained, vectors):
        compressed = trained.compress(vectors[0], CompressionTier.COLD)
        assert compressed.payload.dtype == np.uint8
        assert compressed.nbytes == 1  # 2 segments, 4 bits each

    def test_frozen_keeps_signs(self, manager, vectors):
        """Test the sign-bit sketch bound |e_i| <= |v_i| + scale."""
        v = vectors[0]
        compressed = manager.compress(v, CompressionTier.FROZEN)
        decoded = manager.decompress(compressed)

        assert compressed.scale == pytest.approx(float(np.mean(np.abs(v))))
        assert np.all(np.abs(decoded - v) <= np.abs(v) + compressed.scale + 1e-6)
        assert np.array_equal(decoded >= 0, v >= 0)
        assert compressed.nbytes == DIM // 8

    def test_wrong_dimension(self, manager):
        with pytest.raises(DimensionMismatch) as exc:
            manager.compress(np.zeros(DIM + 1), CompressionTier.HOT)
        assert exc.value.expected == DIM
        assert exc.value.got == DIM + 1

    def test_quantized_tier_needs_codebook(self, manager, vectors):
        with pytest.raises(CodebookMismatch):
            manager.compress(vectors[0], CompressionTier.COOL)

    def test_dim_must_divide_into_segments(self):
        with pytest.raises(InvalidInput):
            TierManager(12)


class TestStorage:
    """Test put/get and access accounting."""

    def test_put_get(self, manager, vectors):
        manager.put("a", vectors[0])
        assert "a" in manager
        assert manager.tier_of("a") == CompressionTier.HOT
        assert np.array_equal(manager.get_vector("a"), vectors[0])

    def test_get_counts_access(self, manager, vectors, clock):
        manager.put("a", vectors[0])
        clock.advance(10)
        manager.get_vector("a")
        manager.record_access("a")

        stats = manager.get_stats("a")
        assert stats.access_count == 2
        assert stats.window_accesses == 2
        assert stats.last_access == clock.t

    def test_missing(self, manager):
        with pytest.raises(NotFound):
            manager.get_vector("ghost")
        with pytest.raises(NotFound):
            manager.record_access("ghost")

    def test_delete(self, manager, vectors):
        manager.put("a", vectors[0])
        assert manager.delete("a") is True
        assert manager.delete("a") is False
        assert manager.get_stats("a") is None
        assert len(manager) == 0


class TestCodebookVersions:
    """Test codebook versioning and re-encoding."""

    def test_versions_increase(self, manager, vectors):
        v1 = manager.train_codebook(vectors, tier=CompressionTier.COLD)
        v2 = manager.train_codebook(vectors * 2, tier=CompressionTier.COLD)

        assert (v1, v2) == (1, 2)
        assert manager.active_codebook(CompressionTier.COLD).version == 2

    def test_untiered_training_matches_centroid_count(self, manager, vectors):
        version = manager.train_codebook(vectors, centroids_per_segment=16)
        assert manager.active_codebook(CompressionTier.COLD).version == version
        assert manager.active_codebook(CompressionTier.COOL) is None

    def test_codebook_over_bound_not_committed(self, manager, vectors):
        """Test that a codebook missing the tier epsilon never becomes current."""
        good = manager.train_codebook(vectors, tier=CompressionTier.COLD)
        wide = np.random.default_rng(3).normal(size=(400, DIM))

        with pytest.raises(CodebookRejected) as exc:
            manager.train_codebook(wide, tier=CompressionTier.COLD)

        assert exc.value.mean_error > manager.epsilons[CompressionTier.COLD]
        assert manager.active_codebook(CompressionTier.COLD).version == good
        assert manager.stats().codebook_versions == [good]
        assert manager.train_codebook(vectors, tier=CompressionTier.COLD) == good + 1

    def test_untiered_codebook_over_bound(self, manager):
        wide = np.random.default_rng(3).normal(size=(400, DIM))

        with pytest.raises(CodebookRejected):
            manager.train_codebook(wide, centroids_per_segment=16)

        assert manager.active_codebook(CompressionTier.COLD) is None
        with pytest.raises(CodebookMismatch):
            manager.compress(wide[0], CompressionTier.COLD)

    def test_non_quantized_tier_rejected(self, manager, vectors):
        with pytest.raises(InvalidInput):
            manager.train_codebook(vectors, tier=CompressionTier.WARM)

    def test_old_vectors_decode_after_retrain(self, manager, vectors):
        """Test that retraining never changes how existing vectors decode."""
        manager.train_codebook(vectors, tier=CompressionTier.COLD)
        manager.put("a", vectors[0], CompressionTier.COLD)
        before = manager.get_vector("a")

        manager.train_codebook(vectors[::-1] * 3, tier=CompressionTier.COLD)

        assert manager.get_compressed("a").codebook_version == 1
        assert np.array_equal(manager.get_vector("a"), before)

    def test_reencode_and_drop(self, manager, vectors):
        manager.train_codebook(vectors, tier=CompressionTier.COLD)
        manager.put("a", vectors[0], CompressionTier.COLD)
        manager.put("b", vectors[1], CompressionTier.COLD)
        manager.train_codebook(vectors, tier=CompressionTier.COLD)

        assert manager.drop_unreferenced_codebooks() == []

        report = manager.reencode()

        assert len(report.transitions) == 2
        assert report.transitions[0].from_tier == report.transitions[0].to_tier
        assert report.transitions[0].reason == "codebook v1 -> v2"
        assert manager.referenced_versions() == {2: 2}
        assert manager.drop_unreferenced_codebooks() == [1]
        with pytest.raises(NotFound):
            manager.get_codebook(1)

    def test_missing_codebook_version(self, trained, vectors):
        compressed = trained.compress(vectors[0], CompressionTier.COOL)
        stale = dataclasses.replace(compressed, codebook_version=99)
        with pytest.raises(CodebookMismatch):
            trained.decompress(stale)


class TestTransitions:
    """Test access-driven promotion and idle demotion."""

    def test_idle_hot_vector_demoted(self, manager, vectors, clock):
        manager.put("a", vectors[0])
        clock.advance(HOUR + 1)

        report = manager.evaluate_transitions()

        assert [(t.entry_id, t.from_tier, t.to_tier) for t in report.transitions] == [
            ("a", CompressionTier.HOT, CompressionTier.WARM)
        ]
        assert report.demoted == report.transitions
        assert manager.tier_of("a") == CompressionTier.WARM

    def test_one_tier_per_evaluation(self, manager, vectors, clock):
        """Test that a transition resets the idle clock."""
        manager.put("a", vectors[0])
        clock.advance(10 * DAY)

        manager.evaluate_transitions()
        report = manager.evaluate_transitions()

        assert report.transitions == []
        assert manager.tier_of("a") == CompressionTier.WARM

    def test_recent_access_prevents_demotion(self, manager, vectors, clock):
        manager.put("a", vectors[0])
        clock.advance(HOUR - 1)
        manager.record_access("a")
        clock.advance(10)

        assert manager.evaluate_transitions().transitions == []

    def test_promotion_after_threshold(self, manager, vectors, clock):
        manager.put("a", vectors[0], CompressionTier.WARM)
        for _ in range(5):
            manager.record_access("a")

        report = manager.evaluate_transitions()

        assert len(report.promoted) == 1
        assert manager.tier_of("a") == CompressionTier.HOT
        assert manager.get_stats("a").window_accesses == 0

    def test_window_resets_without_transition(self, manager, vectors):
        manager.put("a", vectors[0], CompressionTier.WARM)
        for _ in range(4):
            manager.record_access("a")
        manager.evaluate_transitions()
        manager.record_access("a")

        assert manager.evaluate_transitions().transitions == []
        assert manager.tier_of("a") == CompressionTier.WARM

    def test_promotion_uses_source_vector(self, vectors, clock):
        """Test that promotion re-encodes from the original when available."""
        originals = {"a": vectors[0]}
        manager = TierManager(DIM, clock=clock, source_lookup=originals.get)
        manager.put("a", vectors[0], CompressionTier.WARM)
        for _ in range(5):
            manager.record_access("a")

        manager.evaluate_transitions()

        assert manager.tier_of("a") == CompressionTier.HOT
        assert np.array_equal(manager.get_vector("a"), vectors[0])

    def test_quantized_target_skipped_without_codebook(self, manager, vectors, clock):
        manager.put("a", vectors[0], CompressionTier.WARM)
        clock.advance(DAY + 1)

        report = manager.evaluate_transitions()

        assert report.transitions == []
        assert report.failures == {}
        assert manager.tier_of("a") == CompressionTier.WARM

    def test_failure_isolated(self, trained, vectors, clock):
        """Test that one undecodable vector does not stop the batch."""
        trained.put("a", vectors[0], CompressionTier.COOL)
        trained.put("b", vectors[1], CompressionTier.COOL)
        broken = dataclasses.replace(trained.get_compressed("b"), codebook_version=99)
        trained._vectors["b"] = broken
        clock.advance(7 * DAY + 1)

        report = trained.evaluate_transitions()

        assert report.evaluated == 2
        assert [t.entry_id for t in report.transitions] == ["a"]
        assert trained.tier_of("a") == CompressionTier.COLD
        assert isinstance(report.failures["b"], CodebookMismatch)
        assert trained.get_compressed("b") is broken

    def test_custom_thresholds(self, manager, vectors, clock):
        config = TransitionConfig(promote_accesses={}, demote_after_seconds={CompressionTier.HOT: 5})
        manager.put("a", vectors[0])
        clock.advance(6)

        assert len(manager.evaluate_transitions(config).demoted) == 1

    def test_frozen_never_demoted(self, manager, vectors, clock):
        manager.put("a", vectors[0], CompressionTier.FROZEN)
        clock.advance(365 * DAY)
        assert manager.evaluate_transitions().transitions == []


class TestAsyncTraining:
    """Test off-thread codebook training."""

    @pytest.mark.asyncio
    async def test_atrain_commits(self, manager, vectors):
        version = await manager.atrain_codebook(vectors, tier=CompressionTier.COLD, timeout=60)
        assert manager.active_codebook(CompressionTier.COLD).version == version

    @pytest.mark.asyncio
    async def test_timeout_commits_nothing(self, manager, vectors):
        def slow_fit(*args):
            time.sleep(0.5)

        manager._fit_codebook = slow_fit

        with pytest.raises(asyncio.TimeoutError):
            await manager.atrain_codebook(vectors, tier=CompressionTier.COLD, timeout=0.05)

        assert manager.stats().codebook_versions == []
        assert manager.active_codebook(CompressionTier.COLD) is None


class TestInspection:
    """Test stats and persistence."""

    def test_stats(self, trained, vectors):
        trained.put("a", vectors[0])
        trained.put("b", vectors[1], CompressionTier.WARM)
        trained.put("c", vectors[2], CompressionTier.COLD)

        stats = trained.stats()

        assert stats.total_vectors == 3
        assert stats.vectors_per_tier[CompressionTier.HOT] == 1
        assert stats.vectors_per_tier[CompressionTier.FROZEN] == 0
        assert stats.uncompressed_bytes == 3 * DIM * 4
        assert stats.compressed_bytes == DIM * 4 + DIM * 2 + 1
        assert stats.compression_ratio > 1.0
        assert stats.codebook_versions == [1, 2]

    def test_round_trip(self, trained, vectors, clock):
        """Test that a restored manager decodes every vector identically."""
        for i, tier in enumerate([CompressionTier.HOT, CompressionTier.WARM, CompressionTier.COOL,
                                  CompressionTier.COLD, CompressionTier.FROZEN]):
            trained.put(f"e{i}", vectors[i], tier)
        trained.record_access("e0")

        data = json.loads(json.dumps(trained.to_dict()))
        restored = TierManager.from_dict(data, clock=clock)

        assert restored.entry_ids() == trained.entry_ids()
        for entry_id in trained.entry_ids():
            assert restored.tier_of(entry_id) == trained.tier_of(entry_id)
            assert np.array_equal(restored.decompress(restored.get_compressed(entry_id)),
                                  trained.decompress(trained.get_compressed(entry_id)))
        assert restored.get_stats("e0").access_count == 1
        assert restored.train_codebook(vectors, tier=CompressionTier.COLD) == 3

    def test_restore_rejects_missing_codebook(self, trained, vectors):
        trained.put("a", vectors[0], CompressionTier.COLD)
        data = trained.to_dict()
        data['codebooks'] = []

        with pytest.raises(CodebookMismatch):
            TierManager.from_dict(data)


class TestConcurrency:
    """Test reads racing tier evaluation."""

    def test_get_vector_during_evaluation(self, trained, vectors):
        """
        Test that readers always decode a whole vector while evaluations
        keep moving every entry between tiers, and that no read is lost
        from the access counts.
        """
        for i, tier in enumerate(TIER_ORDER):
            trained.put(f"e{i}", vectors[i], tier)
        entry_ids = trained.entry_ids()
        # Everything idle demotes, a couple of reads promote
        config = TransitionConfig(
            promote_accesses={tier: 2 for tier in TIER_ORDER[1:]},
            demote_after_seconds={tier: -1.0 for tier in TIER_ORDER[:-1]},
        )
        reads_per_entry = 60

        def evaluate(_):
            reports = [trained.evaluate_transitions(config) for _ in range(20)]
            return sum(len(r.failures) for r in reports)

        def read(entry_id):
            for _ in range(reads_per_entry):
                v = trained.get_vector(entry_id)
                assert v.shape == (DIM,)
                assert np.all(np.isfinite(v))

        with ThreadPoolExecutor(max_workers=8) as pool:
            evaluations = [pool.submit(evaluate, w) for w in range(3)]
            reads = [pool.submit(read, entry_id) for entry_id in entry_ids]
            for f in reads:
                f.result()
            assert sum(f.result() for f in evaluations) == 0

        for entry_id in entry_ids:
            assert trained.get_stats(entry_id).access_count == reads_per_entry
            assert trained.get_vector(entry_id).shape == (DIM,)
