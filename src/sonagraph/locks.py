"""
Striped per-entity locking.

Entities (graph nodes, stored vectors, pattern weights) map onto a fixed
array of re-entrant locks by hash of their id. Unrelated entities rarely
share a stripe, so writers to different entries do not serialise each other.
"""

import threading
from contextlib import contextmanager
from typing import Hashable, Iterable, List


class StripedLock:
    """
    Fixed pool of ``threading.RLock`` objects addressed by entity id.

    Attributes:
        stripes (int): Number of locks in the pool
    """

    def __init__(self, stripes: int = 64):
        if stripes < 1:
            raise ValueError("stripes must be >= 1")
        self.stripes = stripes
        self._locks = [threading.RLock() for _ in range(stripes)]

    def _index(self, key: Hashable) -> int:
        return hash(key) % self.stripes

    @contextmanager
    def hold(self, key: Hashable):
        """Hold the stripe owning ``key``."""
        lock = self._locks[self._index(key)]
        with lock:
            yield

    @contextmanager
    def hold_many(self, keys: Iterable[Hashable]):
        """
        Hold every stripe touched by ``keys``.

        Stripes are acquired in ascending index order so two writers locking
        overlapping key sets cannot deadlock.
        """
        indices: List[int] = sorted({self._index(k) for k in keys})
        acquired = []
        try:
            for idx in indices:
                self._locks[idx].acquire()
                acquired.append(idx)
            yield
        finally:
            for idx in reversed(acquired):
                self._locks[idx].release()

    def __repr__(self):
        return f"StripedLock(stripes={self.stripes})"
