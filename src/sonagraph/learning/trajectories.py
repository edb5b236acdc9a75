"""
Trajectory log: every ranked query and the feedback it received.
"""

import dataclasses
import logging
import threading
import time
import uuid
from typing import Any, Callable, Dict, List, Optional, Sequence

import numpy as np

from sonagraph.exceptions import InvalidInput, NotFound
from sonagraph.learning.types import Trajectory, TrajectoryFeedback

logger = logging.getLogger(__name__)


class TrajectoryLog:
    """
    In-memory trajectory and feedback store.

    Trajectories are immutable; recording feedback swaps in a copy with
    ``has_feedback`` set. Every feedback record is kept for audit, including
    ones later overwritten.
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None):
        self._clock = clock or time.time
        self._trajectories: Dict[str, Trajectory] = {}
        self._feedback: Dict[str, List[TrajectoryFeedback]] = {}
        self._lock = threading.RLock()

    def record(self, query: str, matched_ids: Sequence[str], match_scores: Sequence[float],
               query_embedding=None, route: Optional[str] = None) -> Trajectory:
        """
        Create a trajectory.

        Raises:
            InvalidInput: If matched_ids and match_scores differ in length
        """
        matched_ids = list(matched_ids)
        match_scores = [float(s) for s in match_scores]
        if len(matched_ids) != len(match_scores):
            raise InvalidInput(
                f"{len(matched_ids)} matched ids but {len(match_scores)} match scores"
            )

        embedding = None
        if query_embedding is not None:
            embedding = np.asarray(query_embedding, dtype=np.float32).reshape(-1)

        trajectory = Trajectory(
            id=uuid.uuid4().hex,
            query=query,
            matched_ids=matched_ids,
            match_scores=match_scores,
            query_embedding=embedding,
            route=route,
            created_at=self._clock(),
        )
        with self._lock:
            self._trajectories[trajectory.id] = trajectory
        return trajectory

    def get(self, trajectory_id: str) -> Trajectory:
        trajectory = self._trajectories.get(trajectory_id)
        if trajectory is None:
            raise NotFound(f"Trajectory not found: {trajectory_id}")
        return trajectory

    def add_feedback(self, trajectory_id: str, quality: float, notes: Optional[str] = None,
                     route: Optional[str] = None,
                     weight_deltas: Optional[Dict[str, float]] = None,
                     importance_deltas: Optional[Dict[str, float]] = None) -> TrajectoryFeedback:
        with self._lock:
            trajectory = self.get(trajectory_id)
            feedback = TrajectoryFeedback(trajectory_id, quality, notes, route, self._clock(),
                                          dict(weight_deltas or {}), dict(importance_deltas or {}))
            self._feedback.setdefault(trajectory_id, []).append(feedback)
            self._trajectories[trajectory_id] = dataclasses.replace(trajectory, has_feedback=True)
        return feedback

    def feedback_for(self, trajectory_id: str) -> List[TrajectoryFeedback]:
        return list(self._feedback.get(trajectory_id, []))

    def latest_feedback(self, trajectory_id: str) -> Optional[TrajectoryFeedback]:
        records = self._feedback.get(trajectory_id)
        return records[-1] if records else None

    def pending(self, limit: int = 10) -> List[Trajectory]:
        """Oldest trajectories still waiting for feedback."""
        waiting = [t for t in list(self._trajectories.values()) if not t.has_feedback]
        waiting.sort(key=lambda t: t.created_at)
        return waiting[:limit]

    def cleanup(self, older_than_seconds: float) -> int:
        """Drop trajectories (and their feedback) created before the cutoff."""
        cutoff = self._clock() - older_than_seconds
        with self._lock:
            stale = [tid for tid, t in self._trajectories.items() if t.created_at < cutoff]
            for tid in stale:
                del self._trajectories[tid]
                self._feedback.pop(tid, None)
        if stale:
            logger.info("Removed %d trajectories older than %.0fs", len(stale), older_than_seconds)
        return len(stale)

    def counts(self):
        """(total, with feedback)."""
        values = list(self._trajectories.values())
        return len(values), sum(1 for t in values if t.has_feedback)

    def __len__(self):
        return len(self._trajectories)

    def __contains__(self, trajectory_id):
        return trajectory_id in self._trajectories

    def to_dict(self) -> Dict[str, Any]:
        trajectories = []
        for t in sorted(self._trajectories.values(), key=lambda t: t.created_at):
            trajectories.append({
                'id': t.id,
                'query': t.query,
                'matched_ids': list(t.matched_ids),
                'match_scores': list(t.match_scores),
                'query_embedding': t.query_embedding.tolist() if t.query_embedding is not None else None,
                'route': t.route,
                'created_at': t.created_at,
                'has_feedback': t.has_feedback,
            })
        feedback = [
            {
                'trajectory_id': f.trajectory_id,
                'quality': f.quality,
                'notes': f.notes,
                'route': f.route,
                'created_at': f.created_at,
                'weight_deltas': dict(f.weight_deltas),
                'importance_deltas': dict(f.importance_deltas),
            }
            for records in self._feedback.values()
            for f in records
        ]
        return {'trajectories': trajectories, 'feedback': feedback}

    @classmethod
    def from_dict(cls, data: Dict[str, Any], clock: Optional[Callable[[], float]] = None) -> "TrajectoryLog":
        log = cls(clock)
        for item in data.get('trajectories', []):
            embedding = item.get('query_embedding')
            trajectory = Trajectory(
                id=item['id'],
                query=item['query'],
                matched_ids=list(item['matched_ids']),
                match_scores=[float(s) for s in item['match_scores']],
                query_embedding=np.asarray(embedding, dtype=np.float32) if embedding is not None else None,
                route=item.get('route'),
                created_at=item['created_at'],
                has_feedback=item.get('has_feedback', False),
            )
            if len(trajectory.matched_ids) != len(trajectory.match_scores):
                raise InvalidInput(f"Trajectory {trajectory.id} has mismatched scores")
            log._trajectories[trajectory.id] = trajectory
        for item in data.get('feedback', []):
            if item['trajectory_id'] in log._trajectories:
                log._feedback.setdefault(item['trajectory_id'], []).append(TrajectoryFeedback(**item))
        return log
