"""
Types for the continual learning engine.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

import numpy as np


class FeedbackPolicy(str, Enum):
    """What to do when a trajectory receives feedback a second time."""
    REJECT = "reject"
    OVERWRITE = "overwrite"


class DriftStatus(str, Enum):
    OK = "ok"
    ALERT = "alert"
    CRITICAL = "critical"


@dataclass
class SonaConfig:
    """
    Learning-rate, regularisation and drift settings.

    Attributes:
        learning_rate: Maximum weight step per feedback (at zero importance)
        lambda_: EWC strength; steps are divided by (1 + importance * lambda_)
        importance_growth: Importance added per update at |quality - 0.5| = 0.5
        drift_alert: Drift at or above which status is ALERT
        drift_critical: Drift at or above which status is CRITICAL
        min_uses_for_update: Uses a pattern needs before its weight can move
        success_threshold: Quality at or above which a use counts as a success
        weight_floor: Lower clamp for every weight
        weight_ceiling: Upper clamp for every weight
        feedback_policy: Reject or overwrite repeated feedback
        auto_rollback: Restore the latest checkpoint on critical drift
        auto_checkpoint_on_alert: Checkpoint when drift reaches ALERT
        max_checkpoints: Checkpoints kept (oldest dropped first)
    """
    learning_rate: float = 0.05
    lambda_: float = 0.5
    importance_growth: float = 0.05
    drift_alert: float = 0.3
    drift_critical: float = 0.5
    min_uses_for_update: int = 3
    success_threshold: float = 0.5
    weight_floor: float = 0.01
    weight_ceiling: float = 10.0
    feedback_policy: FeedbackPolicy = FeedbackPolicy.REJECT
    auto_rollback: bool = False
    auto_checkpoint_on_alert: bool = True
    max_checkpoints: int = 10


@dataclass(frozen=True)
class Trajectory:
    """
    One query and what it matched.

    Attributes:
        id: Trajectory id
        query: Query text
        matched_ids: Pattern (entry) ids in ranked order
        match_scores: Raw similarity score per matched id
        query_embedding: Optional query vector
        route: Optional routing label
        created_at: Creation time
        has_feedback: Whether feedback has been recorded
    """
    id: str
    query: str
    matched_ids: List[str]
    match_scores: List[float]
    query_embedding: Optional[np.ndarray] = None
    route: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    has_feedback: bool = False


@dataclass(frozen=True)
class TrajectoryFeedback:
    """
    One feedback record.

    ``weight_deltas`` and ``importance_deltas`` hold the change this
    feedback actually applied to each pattern, so an overwrite can take it
    back before applying the replacement.
    """
    trajectory_id: str
    quality: float
    notes: Optional[str] = None
    route: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    weight_deltas: Dict[str, float] = field(default_factory=dict)
    importance_deltas: Dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class PatternWeight:
    """
    Learned ranking weight of one pattern.

    Replaced as a whole on every update, never mutated.
    """
    pattern_id: str
    weight: float = 1.0
    importance: float = 0.0
    use_count: int = 0
    success_count: int = 0
    updated_at: float = field(default_factory=time.time)
    pruned: bool = False

    @property
    def success_rate(self) -> float:
        return self.success_count / self.use_count if self.use_count else 0.0


@dataclass(frozen=True)
class WeightCheckpoint:
    id: str
    created_at: float
    weights: Dict[str, PatternWeight]
    drift_score: float

    def weight_map(self) -> Dict[str, float]:
        return {pid: pw.weight for pid, pw in self.weights.items()}


@dataclass
class FeedbackResult:
    """
    Outcome of one ``provide_feedback`` call.

    Attributes:
        trajectory_id: Trajectory the feedback applied to
        quality: Feedback quality
        counted: Patterns whose use/success counts include this trajectory
        updated: Patterns whose weight moved
        drift_score: Drift after the update
        drift_status: OK / ALERT / CRITICAL
        should_rollback: True when drift is critical
        checkpoint_id: Checkpoint taken automatically on alert, if any
        rolled_back_to: Checkpoint restored automatically, if any
        overwritten: True when this replaced earlier feedback
    """
    trajectory_id: str
    quality: float
    counted: List[str]
    updated: List[str]
    drift_score: float
    drift_status: DriftStatus
    should_rollback: bool
    checkpoint_id: Optional[str] = None
    rolled_back_to: Optional[str] = None
    overwritten: bool = False


@dataclass
class MaintenanceConfig:
    """
    Pruning and boosting thresholds.

    Attributes:
        prune_threshold: Success rate below which a well-used pattern is pruned
        prune_min_uses: Uses required before pruning is considered
        boost_threshold: Success rate at or above which a pattern is boosted
        boost_multiplier: Weight multiplier for boosted patterns
        boost_min_uses: Uses required before boosting is considered
        boost_cap: Maximum boosted weight (defaults to the weight ceiling)
    """
    prune_threshold: float = 0.4
    prune_min_uses: int = 100
    boost_threshold: float = 0.8
    boost_multiplier: float = 1.1
    boost_min_uses: int = 0
    boost_cap: Optional[float] = None


@dataclass
class PruneResult:
    pruned: List[str]
    boosted: List[str]
    examined: int


@dataclass
class DriftMetrics:
    drift_score: float
    status: DriftStatus
    should_rollback: bool
    baseline_size: int


@dataclass(frozen=True)
class ScoredCandidate:
    entry_id: str
    raw_score: float
    adjusted_score: float
    weight: float


@dataclass
class TrackedQueryResult:
    trajectory_id: Optional[str]
    results: List[ScoredCandidate]


@dataclass
class LearningStats:
    total_trajectories: int
    trajectories_with_feedback: int
    tracked_patterns: int
    pruned_patterns: int
    avg_weight: float
    min_weight: float
    max_weight: float
    avg_success_rate: float
    drift_score: float
    drift_status: DriftStatus
    checkpoints: int
