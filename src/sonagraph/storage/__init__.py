"""Snapshot persistence boundary."""

from sonagraph.storage.snapshot import (
    MemorySnapshotStore,
    SnapshotStore,
    load_components,
    save_components,
)
from sonagraph.storage.postgres_store import PostgresSnapshotStore

__all__ = [
    "MemorySnapshotStore",
    "PostgresSnapshotStore",
    "SnapshotStore",
    "load_components",
    "save_components",
]
