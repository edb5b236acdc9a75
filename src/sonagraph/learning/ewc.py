"""
Elastic-weight-consolidation style regulariser.

A pattern's accumulated importance damps every later update:

    delta = learning_rate * (q - 0.5) * 2 * match_score / (1 + importance * lambda_)

so well-established patterns move slowly while new ones adapt quickly.
After each update the pattern earns importance proportional to how
decisive the feedback was:

    importance += importance_growth * |q - 0.5| * 2
"""

import logging

from sonagraph.utils import clamp
from sonagraph.learning.types import PatternWeight
from sonagraph.learning.weights import WeightStore

logger = logging.getLogger(__name__)


class EWCRegularizer:
    """
    Importance-damped weight steps.

    Attributes:
        lambda_ (float): Regularisation strength
        importance_growth (float): Importance gained per fully decisive update
    """

    def __init__(self, lambda_: float = 0.5, importance_growth: float = 0.05):
        self.lambda_ = lambda_
        self.importance_growth = importance_growth

    def damping(self, importance: float) -> float:
        """Multiplier 1 / (1 + importance * lambda_) applied to raw steps."""
        return 1.0 / (1.0 + importance * self.lambda_)

    def delta(self, learning_rate: float, quality: float, match_score: float,
              importance: float) -> float:
        return learning_rate * (quality - 0.5) * 2.0 * match_score * self.damping(importance)

    def step(self, pw: PatternWeight, learning_rate: float, quality: float,
             match_score: float, floor: float, ceiling: float):
        """
        Regularised update of one pattern.

        Returns:
            Tuple of (new weight clamped to [floor, ceiling], new importance)
        """
        new_weight = clamp(pw.weight + self.delta(learning_rate, quality, match_score, pw.importance),
                           floor, ceiling)
        new_importance = pw.importance + self.importance_growth * abs(quality - 0.5) * 2.0
        return new_weight, new_importance

    def recalibrate(self, store: WeightStore) -> int:
        """
        Rescale every importance into [0, 1] by the current maximum.

        Keeps importance from growing without bound over a long run.

        Returns:
            int: Number of records rewritten
        """
        records = store.records()
        top = max((pw.importance for pw in records), default=0.0)
        if top <= 0:
            return 0
        for pw in records:
            store.update(pw.pattern_id, importance=pw.importance / top, updated_at=pw.updated_at)
        logger.info("Recalibrated importance of %d patterns (max was %.3f)", len(records), top)
        return len(records)

