"""
Unit tests for shared vector and weight helpers.
"""

import numpy as np
import pytest

from sonagraph.utils import clamp, normalize, relative_weight_drift, summarize


class TestNormalize:
    """Test unit-length scaling."""

    def test_unit_length(self):
        v = normalize(np.array([3.0, 4.0]))
        assert np.allclose(v, [0.6, 0.8])

    def test_zero_vector_unchanged(self):
        v = np.zeros(3)
        assert np.array_equal(normalize(v), v)


class TestWeightHelpers:
    """Test clamp, drift and summaries."""

    def test_clamp(self):
        assert clamp(5.0, 0.0, 2.0) == 2.0
        assert clamp(-1.0, 0.0, 2.0) == 0.0
        assert clamp(1.5, 0.0, 2.0) == 1.5

    def test_drift_identical(self):
        assert relative_weight_drift({'a': 1.5}, {'a': 1.5}) == 0.0

    def test_drift_relative_l2(self):
        drift = relative_weight_drift({'a': 2.0, 'b': 1.0}, {'a': 1.0, 'b': 1.0})
        assert drift == pytest.approx(1.0 / np.sqrt(2.0))

    def test_drift_missing_ids_read_as_default(self):
        assert relative_weight_drift({'new': 1.0}, {}) == 0.0
        assert relative_weight_drift({}, {'old': 1.0}) == 0.0

    def test_drift_empty(self):
        assert relative_weight_drift({}, {}) == 0.0

    def test_summarize(self):
        assert summarize({'a': 1.0, 'b': 3.0}) == {'mean': 2.0, 'min': 1.0, 'max': 3.0}
        assert summarize({}) == {'mean': 0.0, 'min': 0.0, 'max': 0.0}
