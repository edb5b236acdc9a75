"""
Sona: continual learning of retrieval ranking weights.

Queries are recorded as trajectories; feedback on a trajectory nudges the
weights of the patterns it matched. Updates are damped by each pattern's
accumulated importance, and global drift since the last checkpoint is
tracked so runaway learning can be detected and rolled back.

The only hook into ranking is ``adjusted_score``: raw * weight.
"""

import dataclasses
import logging
import threading
import time
import uuid
import warnings
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from sonagraph.exceptions import AlreadyFed, DriftCritical, InvalidInput, NotFound, SonagraphError
from sonagraph.locks import StripedLock
from sonagraph.utils import clamp, relative_weight_drift, summarize
from sonagraph.learning.ewc import EWCRegularizer
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
    TrajectoryFeedback,
    WeightCheckpoint,
)
from sonagraph.learning.weights import DEFAULT_WEIGHT, WeightStore

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400.0


def _candidate_pair(candidate) -> Tuple[str, float]:
    if isinstance(candidate, dict):
        return candidate['entry_id'], float(candidate['score'])
    entry_id, score = candidate
    return entry_id, float(score)


class SonaEngine:
    """
    Feedback-driven weight engine with drift detection and rollback.

    Lifecycle: construct, optionally ``initialize(snapshot)`` to restore
    state, serve, then ``shutdown(store)`` to flush. A shut-down engine
    rejects further writes.

    Attributes:
        config (SonaConfig): Learning configuration
        weights (WeightStore): Pattern weight table
        trajectories (TrajectoryLog): Query and feedback log
        ewc (EWCRegularizer): Importance damping
    """

    SNAPSHOT_NAME = "sona"

    def __init__(self, config: Optional[SonaConfig] = None,
                 clock: Optional[Callable[[], float]] = None):
        self.config = config or SonaConfig()
        self._validate_config(self.config)
        self._clock = clock or time.time

        self.weights = WeightStore(self.config.weight_floor, self.config.weight_ceiling, self._clock)
        self.trajectories = TrajectoryLog(self._clock)
        self.ewc = EWCRegularizer(self.config.lambda_, self.config.importance_growth)

        self._checkpoints: List[WeightCheckpoint] = []
        self._baseline: Dict[str, float] = {}
        self._drift_offset = 0.0

        # Guards checkpoint history, baseline and offset
        self._state_lock = threading.RLock()
        self._feedback_locks = StripedLock()
        self._closed = False

    @staticmethod
    def _validate_config(config: SonaConfig):
        if config.weight_floor > config.weight_ceiling:
            raise InvalidInput("weight_floor exceeds weight_ceiling")
        if config.drift_alert > config.drift_critical:
            raise InvalidInput("drift_alert exceeds drift_critical")
        if config.max_checkpoints < 1:
            raise InvalidInput("max_checkpoints must be >= 1")

    def _ensure_open(self):
        if self._closed:
            raise SonagraphError("Learning engine has been shut down")

    # ------------------------------------------------------------------
    # Trajectories and feedback
    # ------------------------------------------------------------------

    def record_trajectory(self, query: str, matched_ids: Sequence[str],
                          match_scores: Sequence[float], query_embedding=None,
                          route: Optional[str] = None) -> str:
        """
        Record one query and its matches.

        Returns:
            str: Trajectory id

        Raises:
            InvalidInput: If matched_ids and match_scores differ in length
        """
        self._ensure_open()
        trajectory = self.trajectories.record(query, matched_ids, match_scores,
                                              query_embedding, route)
        logger.debug("Recorded trajectory %s with %d matches", trajectory.id, len(matched_ids))
        return trajectory.id

    def get_trajectory(self, trajectory_id: str):
        return self.trajectories.get(trajectory_id)

    def provide_feedback(self, trajectory_id: str, quality: float,
                         notes: Optional[str] = None,
                         route: Optional[str] = None) -> FeedbackResult:
        """
        Apply quality feedback to every pattern a trajectory matched.

        Each matched pattern has its use count (and success count when
        ``quality >= success_threshold``) incremented. Its weight moves only
        if it had already been used ``min_uses_for_update`` times before this
        trajectory was counted. Under the OVERWRITE policy a second call
        replaces the first one's effect instead of adding to it: use counts
        are unchanged and the earlier weight step is taken back. Drift is
        recomputed afterwards.

        Args:
            trajectory_id: Trajectory to rate
            quality: Quality in [0, 1]
            notes: Free-form notes kept with the feedback
            route: Optional routing label

        Returns:
            FeedbackResult

        Raises:
            InvalidInput: If quality is outside [0, 1]
            NotFound: If the trajectory is unknown
            AlreadyFed: If feedback exists and the policy is REJECT
        """
        self._ensure_open()
        try:
            quality = float(quality)
        except (TypeError, ValueError):
            raise InvalidInput(f"Quality must be a number, got {quality!r}")
        if not 0.0 <= quality <= 1.0:
            raise InvalidInput(f"Quality must be in [0, 1], got {quality}")

        with self._feedback_locks.hold(trajectory_id):
            trajectory = self.trajectories.get(trajectory_id)
            previous = None
            if trajectory.has_feedback:
                if self.config.feedback_policy == FeedbackPolicy.REJECT:
                    raise AlreadyFed(f"Trajectory {trajectory_id} already has feedback")
                previous = self.trajectories.latest_feedback(trajectory_id)
                logger.info("Overwriting feedback for trajectory %s", trajectory_id)

            counted, updated, weight_deltas, importance_deltas = self._apply(
                trajectory.matched_ids, trajectory.match_scores, quality, previous)
            self.trajectories.add_feedback(trajectory_id, quality, notes, route,
                                           weight_deltas, importance_deltas)
        overwritten = trajectory.has_feedback

        metrics = self.check_drift()
        result = FeedbackResult(
            trajectory_id=trajectory_id,
            quality=quality,
            counted=counted,
            updated=updated,
            drift_score=metrics.drift_score,
            drift_status=metrics.status,
            should_rollback=metrics.should_rollback,
            overwritten=overwritten,
        )

        if metrics.status == DriftStatus.CRITICAL:
            message = (f"Weight drift {metrics.drift_score:.3f} reached critical threshold "
                       f"{self.config.drift_critical}")
            logger.warning(message)
            warnings.warn(message, DriftCritical, stacklevel=2)
            if self.config.auto_rollback and self._checkpoints:
                result.rolled_back_to = self.rollback_to_latest()
        elif metrics.status == DriftStatus.ALERT:
            logger.warning("Weight drift %.3f reached alert threshold %s",
                           metrics.drift_score, self.config.drift_alert)
            if self.config.auto_checkpoint_on_alert:
                result.checkpoint_id = self.checkpoint()

        return result

    def _apply(self, matched_ids: Sequence[str], match_scores: Sequence[float],
               quality: float, previous: Optional[TrajectoryFeedback] = None):
        """
        Count and step every matched pattern.

        With ``previous`` set, the trajectory has already been counted once:
        use counts stay put, the success count follows the new quality, and
        the weight and importance changes ``previous`` applied are taken back
        before the new step.

        Returns:
            Tuple of (counted ids, updated ids, weight deltas, importance deltas)
        """
        cfg = self.config
        success = quality >= cfg.success_threshold
        counted: List[str] = []
        updated: List[str] = []
        weight_deltas: Dict[str, float] = {}
        importance_deltas: Dict[str, float] = {}

        undo_weight: Dict[str, float] = {}
        undo_importance: Dict[str, float] = {}
        success_change = 1 if success else 0
        if previous is not None:
            undo_weight = dict(previous.weight_deltas)
            undo_importance = dict(previous.importance_deltas)
            success_change -= 1 if previous.quality >= cfg.success_threshold else 0

        with self.weights.locks.hold_many(matched_ids):
            for pattern_id, match_score in zip(matched_ids, match_scores):
                pw = self.weights.get_or_default(pattern_id)
                if previous is None:
                    uses_before = pw.use_count
                    changes = {
                        'use_count': pw.use_count + 1,
                        'success_count': pw.success_count + success_change,
                    }
                else:
                    uses_before = pw.use_count - 1
                    pw = dataclasses.replace(
                        pw,
                        weight=clamp(pw.weight - undo_weight.pop(pattern_id, 0.0),
                                     cfg.weight_floor, cfg.weight_ceiling),
                        importance=max(0.0, pw.importance - undo_importance.pop(pattern_id, 0.0)),
                    )
                    changes = {
                        'success_count': min(pw.use_count, max(0, pw.success_count + success_change)),
                        'weight': pw.weight,
                        'importance': pw.importance,
                    }

                if uses_before >= cfg.min_uses_for_update:
                    weight, importance = self.ewc.step(pw, cfg.learning_rate, quality, match_score,
                                                       cfg.weight_floor, cfg.weight_ceiling)
                    changes['weight'] = weight
                    changes['importance'] = importance
                    weight_deltas[pattern_id] = weight_deltas.get(pattern_id, 0.0) + weight - pw.weight
                    importance_deltas[pattern_id] = (importance_deltas.get(pattern_id, 0.0)
                                                     + importance - pw.importance)
                    updated.append(pattern_id)
                self.weights.update(pattern_id, **changes)
                counted.append(pattern_id)

        logger.debug("Feedback %.2f: %d counted, %d updated", quality, len(counted), len(updated))
        return counted, updated, weight_deltas, importance_deltas

    def pending_feedback(self, limit: int = 10):
        return self.trajectories.pending(limit)

    def cleanup(self, older_than_days: float = 30) -> int:
        """Drop trajectories older than ``older_than_days``. Returns the count removed."""
        return self.trajectories.cleanup(older_than_days * SECONDS_PER_DAY)

    # ------------------------------------------------------------------
    # Ranking
    # ------------------------------------------------------------------

    def get_pattern(self, pattern_id: str) -> Optional[PatternWeight]:
        return self.weights.get(pattern_id)

    def weight_of(self, pattern_id: str) -> float:
        return self.weights.weight_of(pattern_id)

    def adjusted_score(self, entry_id: str, raw_score: float) -> float:
        """
        raw_score * weight(entry_id).

        Untracked entries use weight 1.0. A pruned pattern can still be
        damped by its weight but never boosted.
        """
        pw = self.weights.get(entry_id)
        if pw is None:
            return raw_score * DEFAULT_WEIGHT
        if pw.pruned:
            return raw_score * min(pw.weight, 1.0)
        return raw_score * pw.weight

    def apply_weights(self, candidates: Iterable, query: str = "", query_embedding=None,
                      route: Optional[str] = None, record: bool = True) -> TrackedQueryResult:
        """
        Re-rank candidates by adjusted score and record the trajectory.

        Args:
            candidates: (entry_id, raw_score) pairs or dicts with
                ``entry_id`` and ``score``
            query: Query text stored on the trajectory
            query_embedding: Optional query vector stored on the trajectory
            route: Optional routing label
            record: Record a trajectory for later feedback

        Returns:
            TrackedQueryResult sorted by adjusted score (highest first)
        """
        scored = []
        for candidate in candidates:
            entry_id, raw = _candidate_pair(candidate)
            scored.append(ScoredCandidate(
                entry_id=entry_id,
                raw_score=raw,
                adjusted_score=self.adjusted_score(entry_id, raw),
                weight=self.weights.weight_of(entry_id),
            ))
        scored.sort(key=lambda c: (-c.adjusted_score, c.entry_id))

        trajectory_id = None
        if record:
            trajectory_id = self.record_trajectory(
                query,
                [c.entry_id for c in scored],
                [c.raw_score for c in scored],
                query_embedding=query_embedding,
                route=route,
            )
        return TrackedQueryResult(trajectory_id=trajectory_id, results=scored)

    # ------------------------------------------------------------------
    # Drift, checkpoints, rollback
    # ------------------------------------------------------------------

    def drift_score(self) -> float:
        """offset + ||w - baseline|| / ||baseline|| over the union of ids."""
        with self._state_lock:
            baseline = dict(self._baseline)
            offset = self._drift_offset
        return offset + relative_weight_drift(self.weights.weight_map(), baseline, DEFAULT_WEIGHT)

    def _classify(self, drift: float) -> DriftStatus:
        if drift >= self.config.drift_critical:
            return DriftStatus.CRITICAL
        if drift >= self.config.drift_alert:
            return DriftStatus.ALERT
        return DriftStatus.OK

    def check_drift(self) -> DriftMetrics:
        drift = self.drift_score()
        status = self._classify(drift)
        return DriftMetrics(
            drift_score=drift,
            status=status,
            should_rollback=status == DriftStatus.CRITICAL,
            baseline_size=len(self._baseline),
        )

    def checkpoint(self) -> str:
        """
        Snapshot every pattern record and the current drift score.

        The snapshot becomes the new drift baseline.

        Returns:
            str: Checkpoint id
        """
        self._ensure_open()
        with self._state_lock:
            drift = self.drift_score()
            checkpoint = WeightCheckpoint(
                id=uuid.uuid4().hex,
                created_at=self._clock(),
                weights=self.weights.snapshot(),
                drift_score=drift,
            )
            self._checkpoints.append(checkpoint)
            if len(self._checkpoints) > self.config.max_checkpoints:
                self._checkpoints = self._checkpoints[-self.config.max_checkpoints:]
            self._baseline = checkpoint.weight_map()
            self._drift_offset = 0.0

        logger.info("Checkpoint %s captured %d patterns (drift %.3f)",
                    checkpoint.id, len(checkpoint.weights), drift)
        return checkpoint.id

    def rollback(self, checkpoint_id: str):
        """
        Restore the pattern table captured by a checkpoint.

        Drift resets to the drift score recorded at capture time.

        Raises:
            NotFound: If the checkpoint is unknown
        """
        self._ensure_open()
        with self._state_lock:
            checkpoint = self._find_checkpoint(checkpoint_id)
            self.weights.replace_all(checkpoint.weights)
            self._baseline = checkpoint.weight_map()
            self._drift_offset = checkpoint.drift_score
        logger.info("Rolled back to checkpoint %s (%d patterns)", checkpoint_id, len(checkpoint.weights))

    def rollback_to_latest(self) -> str:
        """
        Roll back to the newest checkpoint.

        Returns:
            str: The checkpoint id restored

        Raises:
            NotFound: If no checkpoint exists
        """
        with self._state_lock:
            if not self._checkpoints:
                raise NotFound("No checkpoints to roll back to")
            checkpoint_id = self._checkpoints[-1].id
            self.rollback(checkpoint_id)
        return checkpoint_id

    def _find_checkpoint(self, checkpoint_id: str) -> WeightCheckpoint:
        for checkpoint in self._checkpoints:
            if checkpoint.id == checkpoint_id:
                return checkpoint
        raise NotFound(f"Checkpoint not found: {checkpoint_id}")

    def get_checkpoint(self, checkpoint_id: str) -> WeightCheckpoint:
        with self._state_lock:
            return self._find_checkpoint(checkpoint_id)

    def checkpoints(self) -> List[WeightCheckpoint]:
        with self._state_lock:
            return list(self._checkpoints)

    def recalibrate_baseline(self):
        """Accept the current weights as the drift baseline without checkpointing."""
        with self._state_lock:
            self._baseline = self.weights.weight_map()
            self._drift_offset = 0.0

    def recalibrate_importance(self) -> int:
        """Rescale importance into [0, 1]. Returns the number of patterns touched."""
        self._ensure_open()
        return self.ewc.recalibrate(self.weights)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def maintenance(self, config: Optional[MaintenanceConfig] = None) -> PruneResult:
        """
        Prune consistently failing patterns and boost consistently good ones.

        A pattern with at least ``prune_min_uses`` uses and a success rate
        below ``prune_threshold`` is marked pruned; its record is kept. A
        pattern that was not pruned, has at least ``boost_min_uses`` uses and
        a success rate of at least ``boost_threshold`` has its weight
        multiplied by ``boost_multiplier`` up to ``boost_cap``. Pruning wins
        when both apply.

        Returns:
            PruneResult
        """
        self._ensure_open()
        config = config or MaintenanceConfig()
        cap = config.boost_cap if config.boost_cap is not None else self.config.weight_ceiling
        cap = min(cap, self.config.weight_ceiling)

        pruned: List[str] = []
        boosted: List[str] = []
        records = self.weights.records()

        for pw in records:
            with self.weights.locks.hold(pw.pattern_id):
                current = self.weights.get(pw.pattern_id)
                if current is None:
                    continue
                if current.use_count >= config.prune_min_uses and current.success_rate < config.prune_threshold:
                    if not current.pruned:
                        self.weights.update(current.pattern_id, pruned=True)
                        pruned.append(current.pattern_id)
                    continue
                if current.pruned:
                    continue
                if current.use_count >= config.boost_min_uses and current.success_rate >= config.boost_threshold:
                    new_weight = min(current.weight * config.boost_multiplier, cap)
                    self.weights.update(current.pattern_id, weight=new_weight)
                    boosted.append(current.pattern_id)

        logger.info("Maintenance: %d pruned, %d boosted of %d patterns",
                    len(pruned), len(boosted), len(records))
        return PruneResult(pruned=pruned, boosted=boosted, examined=len(records))

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def stats(self) -> LearningStats:
        total, with_feedback = self.trajectories.counts()
        records = self.weights.records()
        weights = summarize({pw.pattern_id: pw.weight for pw in records})
        rates = summarize({pw.pattern_id: pw.success_rate for pw in records})
        metrics = self.check_drift()
        return LearningStats(
            total_trajectories=total,
            trajectories_with_feedback=with_feedback,
            tracked_patterns=len(records),
            pruned_patterns=sum(1 for pw in records if pw.pruned),
            avg_weight=weights['mean'],
            min_weight=weights['min'],
            max_weight=weights['max'],
            avg_success_rate=rates['mean'],
            drift_score=metrics.drift_score,
            drift_status=metrics.status,
            checkpoints=len(self._checkpoints),
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def snapshot(self) -> Dict[str, Any]:
        """Weights, checkpoints, drift state and trajectories as plain data."""
        with self._state_lock:
            checkpoints = [
                {
                    'id': cp.id,
                    'created_at': cp.created_at,
                    'drift_score': cp.drift_score,
                    'weights': [WeightStore.record_to_dict(pw) for pw in cp.weights.values()],
                }
                for cp in self._checkpoints
            ]
            baseline = dict(self._baseline)
            offset = self._drift_offset
        return {
            'weights': [WeightStore.record_to_dict(pw) for pw in self.weights.records()],
            'checkpoints': checkpoints,
            'baseline': baseline,
            'drift_offset': offset,
            'trajectories': self.trajectories.to_dict(),
        }

    def initialize(self, snapshot: Optional[Dict[str, Any]] = None):
        """
        Reset state, optionally restoring from ``snapshot()`` output.

        Every record is validated before anything is replaced.
        """
        if snapshot is None:
            records: Dict[str, PatternWeight] = {}
            checkpoints: List[WeightCheckpoint] = []
            baseline: Dict[str, float] = {}
            offset = 0.0
            log = TrajectoryLog(self._clock)
        else:
            records = {}
            for item in snapshot.get('weights', []):
                record = WeightStore.record_from_dict(item)
                records[record.pattern_id] = record
            checkpoints = []
            for item in snapshot.get('checkpoints', []):
                cp_records = {}
                for w in item['weights']:
                    record = WeightStore.record_from_dict(w)
                    cp_records[record.pattern_id] = record
                checkpoints.append(WeightCheckpoint(item['id'], item['created_at'],
                                                    cp_records, item['drift_score']))
            baseline = {k: float(v) for k, v in snapshot.get('baseline', {}).items()}
            offset = float(snapshot.get('drift_offset', 0.0))
            log = TrajectoryLog.from_dict(snapshot.get('trajectories', {}), self._clock)

        with self._state_lock:
            self.weights.replace_all({})
            for record in records.values():
                self.weights.put(record)
            self._checkpoints = checkpoints[-self.config.max_checkpoints:]
            self._baseline = baseline
            self._drift_offset = offset
            self.trajectories = log
            self._closed = False

        logger.info("Learning engine initialised with %d patterns, %d checkpoints, %d trajectories",
                    len(records), len(checkpoints), len(log))

    @classmethod
    def from_snapshot(cls, snapshot: Dict[str, Any], config: Optional[SonaConfig] = None,
                      clock: Optional[Callable[[], float]] = None) -> "SonaEngine":
        engine = cls(config, clock)
        engine.initialize(snapshot)
        return engine

    def shutdown(self, store=None, name: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """
        Flush state and stop accepting writes.

        Args:
            store: SnapshotStore to save into (optional)
            name: Snapshot name (defaults to ``"sona"``)

        Returns:
            The final snapshot
        """
        snapshot = self.snapshot()
        if store is not None:
            store.save(name or self.SNAPSHOT_NAME, snapshot)
        self._closed = True
        logger.info("Learning engine shut down")
        return snapshot
