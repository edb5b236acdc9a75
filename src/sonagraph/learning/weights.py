"""
Pattern weight table.

Each PatternWeight is immutable and replaced wholesale, so a reader sees
either the old record or the new one. Writers to the same pattern are
serialised by a per-pattern lock stripe.
"""

import dataclasses
import time
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from sonagraph.locks import StripedLock
from sonagraph.utils import clamp
from sonagraph.learning.types import PatternWeight

DEFAULT_WEIGHT = 1.0


class WeightStore:
    """
    Pattern id -> PatternWeight.

    Attributes:
        floor (float): Minimum weight
        ceiling (float): Maximum weight
    """

    def __init__(self, floor: float = 0.01, ceiling: float = 10.0,
                 clock: Optional[Callable[[], float]] = None, lock_stripes: int = 64):
        if floor > ceiling:
            raise ValueError(f"weight floor {floor} exceeds ceiling {ceiling}")
        self.floor = floor
        self.ceiling = ceiling
        self._clock = clock or time.time
        self._weights: Dict[str, PatternWeight] = {}
        self.locks = StripedLock(lock_stripes)

    def get(self, pattern_id: str) -> Optional[PatternWeight]:
        return self._weights.get(pattern_id)

    def weight_of(self, pattern_id: str) -> float:
        pw = self._weights.get(pattern_id)
        return pw.weight if pw is not None else DEFAULT_WEIGHT

    def get_or_default(self, pattern_id: str) -> PatternWeight:
        pw = self._weights.get(pattern_id)
        if pw is None:
            pw = PatternWeight(pattern_id=pattern_id, updated_at=self._clock())
        return pw

    def put(self, record: PatternWeight) -> PatternWeight:
        """Store a record, clamping its weight into [floor, ceiling]."""
        clamped = clamp(record.weight, self.floor, self.ceiling)
        if clamped != record.weight:
            record = dataclasses.replace(record, weight=clamped)
        with self.locks.hold(record.pattern_id):
            self._weights[record.pattern_id] = record
        return record

    def update(self, pattern_id: str, **changes) -> PatternWeight:
        """Replace a record with a copy carrying ``changes``."""
        with self.locks.hold(pattern_id):
            current = self.get_or_default(pattern_id)
            changes.setdefault('updated_at', self._clock())
            return self.put(dataclasses.replace(current, **changes))

    def replace_all(self, records: Mapping[str, PatternWeight]):
        """Swap the whole table (used by rollback and restore)."""
        self._weights = dict(records)

    def snapshot(self) -> Dict[str, PatternWeight]:
        return dict(self._weights)

    def weight_map(self) -> Dict[str, float]:
        return {pid: pw.weight for pid, pw in list(self._weights.items())}

    def records(self) -> List[PatternWeight]:
        return sorted(self._weights.values(), key=lambda pw: pw.pattern_id)

    def ids(self) -> Iterable[str]:
        return list(self._weights)

    def __len__(self):
        return len(self._weights)

    def __contains__(self, pattern_id):
        return pattern_id in self._weights

    @staticmethod
    def record_to_dict(pw: PatternWeight) -> Dict[str, Any]:
        return {
            'pattern_id': pw.pattern_id,
            'weight': pw.weight,
            'importance': pw.importance,
            'use_count': pw.use_count,
            'success_count': pw.success_count,
            'updated_at': pw.updated_at,
            'pruned': pw.pruned,
        }

    @staticmethod
    def record_from_dict(data: Dict[str, Any]) -> PatternWeight:
        record = PatternWeight(**data)
        if record.success_count > record.use_count or record.use_count < 0:
            raise ValueError(f"Pattern {record.pattern_id} has inconsistent counts")
        return record
