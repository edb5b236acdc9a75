"""
Snapshot contract for persisting core state.

Each component serialises itself to plain JSON-compatible data through
``to_dict`` / ``snapshot`` and restores through ``from_dict`` /
``initialize``. A store only needs to keep named payloads.
"""

import copy
import json
import threading
from typing import Any, Dict, List, Mapping, Optional, Protocol, runtime_checkable


@runtime_checkable
class SnapshotStore(Protocol):
    def save(self, name: str, payload: Dict[str, Any]) -> None:
        ...

    def load(self, name: str) -> Optional[Dict[str, Any]]:
        ...


class MemorySnapshotStore:
    """
    In-process snapshot store.

    Payloads are round-tripped through JSON on save, so anything that would
    not survive a real store fails here too.
    """

    def __init__(self):
        self._payloads: Dict[str, str] = {}
        self._lock = threading.Lock()

    def save(self, name: str, payload: Dict[str, Any]) -> None:
        self.save_many({name: payload})

    def save_many(self, payloads: Mapping[str, Dict[str, Any]]) -> None:
        """Save several payloads at once; either all are stored or none."""
        encoded = {name: json.dumps(payload) for name, payload in payloads.items()}
        with self._lock:
            self._payloads.update(encoded)

    def load(self, name: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            encoded = self._payloads.get(name)
        return json.loads(encoded) if encoded is not None else None

    def delete(self, name: str) -> bool:
        with self._lock:
            return self._payloads.pop(name, None) is not None

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._payloads)

    def __contains__(self, name):
        return name in self._payloads


def save_components(store: SnapshotStore, components: Dict[str, Dict[str, Any]], prefix: str = ""):
    """
    Save each component payload under ``prefix + name``.

    Stores that provide ``save_many`` write the whole set in one
    transaction, so a failed save never leaves components from two
    different snapshots side by side.
    """
    payloads = {prefix + name: copy.deepcopy(payload) for name, payload in components.items()}
    save_many = getattr(store, "save_many", None)
    if save_many is not None:
        save_many(payloads)
        return
    for name, payload in payloads.items():
        store.save(name, payload)


def load_components(store: SnapshotStore, names: List[str], prefix: str = "") -> Dict[str, Optional[Dict[str, Any]]]:
    return {name: store.load(prefix + name) for name in names}
