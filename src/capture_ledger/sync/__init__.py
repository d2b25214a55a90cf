"""
Sync engine.

Drains the durable sync queue to the remote store with per-record ordering,
bounded backoff and configurable conflict precedence, and pulls remote
changes back into the local store.
"""

from .backoff import BackoffPolicy
from .conflict import ConflictPolicy, ConflictResolver, Resolution
from .engine import SyncEngine, SyncResult

__all__ = [
    "BackoffPolicy",
    "ConflictPolicy",
    "ConflictResolver",
    "Resolution",
    "SyncEngine",
    "SyncResult",
]
