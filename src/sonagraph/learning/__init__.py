"""Continual learning of ranking weights (Sona)."""

from sonagraph.learning.ewc import EWCRegularizer
from sonagraph.learning.sona import SonaEngine
from sonagraph.learning.trajectories import TrajectoryLog
from sonagraph.learning.types import (
    DriftMetrics,
    DriftStatus,
    FeedbackPolicy,
    FeedbackResult,
    LearningStats,
    MaintenanceConfig,
    PatternWeight,
    PruneResult,
    ScoredCandidate,
    SonaConfig,
    TrackedQueryResult,
    Trajectory,
    TrajectoryFeedback,
    WeightCheckpoint,
)
from sonagraph.learning.weights import WeightStore

__all__ = [
    "EWCRegularizer",
    "SonaEngine",
    "TrajectoryLog",
    "WeightStore",
    "DriftMetrics",
    "DriftStatus",
    "FeedbackPolicy",
    "FeedbackResult",
    "LearningStats",
    "MaintenanceConfig",
    "PatternWeight",
    "PruneResult",
    "ScoredCandidate",
    "SonaConfig",
    "TrackedQueryResult",
    "Trajectory",
    "TrajectoryFeedback",
    "WeightCheckpoint",
]
