"""
The store module holds the installations a controller is responsible for,
along with the status and artifacts produced while reconciling them.

- Uses NamedResource as the key for all objects.
- Stores `Installation` objects from manifest.py.
- Fires events to listeners on changes so controllers can react to them.

This abstract interface allows for various implementations. The in-memory
store is fed from the cluster by `kubit.kubernetes.InstallationSync` or
directly by tests and the local executor.
"""

from .store import Store, StoreEvent
from .in_memory import InMemoryStore
from .artifact import Artifact

__all__ = [
    "Store",
    "StoreEvent",
    "InMemoryStore",
    "Artifact",
]
