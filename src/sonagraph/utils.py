"""
Utility functions for the retrieval core.

Vector normalisation, clamping and drift helpers shared by the
enhancement and learning components.
"""

import numpy as np
from typing import Dict, Mapping


def normalize(vector: np.ndarray, epsilon: float = 1e-12) -> np.ndarray:
    """
    Scale a vector to unit length.

    Zero vectors are returned unchanged rather than divided by zero.

    Args:
        vector: Shape (d,) - vector to normalise
        epsilon: Norms below this are treated as zero

    Returns:
        np.ndarray: Shape (d,) unit vector (or the input if its norm is ~0)
    """
    norm = np.linalg.norm(vector)
    if norm < epsilon:
        return vector
    return vector / norm


def clamp(value: float, low: float, high: float) -> float:
    """Clamp ``value`` into [low, high]."""
    return max(low, min(high, value))


def relative_weight_drift(current: Mapping[str, float],
                          baseline: Mapping[str, float],
                          default: float = 1.0) -> float:
    """
    Relative L2 change of a weight mapping against a baseline.

    drift = ||w - b|| / ||b||

    Ids present on only one side read as ``default`` on the other, so a
    newly tracked pattern at the default weight contributes nothing.

    Args:
        current: Pattern id -> current weight
        baseline: Pattern id -> weight at the baseline
        default: Weight assumed for ids missing from either side

    Returns:
        float: Non-negative drift magnitude (0.0 for an empty union)
    """
    keys = sorted(set(current) | set(baseline))
    if not keys:
        return 0.0

    cur = np.array([current.get(k, default) for k in keys], dtype=np.float64)
    base = np.array([baseline.get(k, default) for k in keys], dtype=np.float64)

    base_norm = np.linalg.norm(base)
    if base_norm < 1e-12:
        return float(np.linalg.norm(cur - base))
    return float(np.linalg.norm(cur - base) / base_norm)


def summarize(values: Dict[str, float]) -> Dict[str, float]:
    """
    Mean / min / max of a mapping's values.

    Returns zeros for an empty mapping.
    """
    if not values:
        return {'mean': 0.0, 'min': 0.0, 'max': 0.0}
    arr = np.fromiter(values.values(), dtype=np.float64)
    return {'mean': float(arr.mean()), 'min': float(arr.min()), 'max': float(arr.max())}
