"""
State Store (SQLite-based).

Durable local persistence for:
- Extracted records and their sync state
- The sync queue (one op per pending remote write)
- Record audit trail and pull cursor

Every record mutation and its sync op commit atomically.
"""

from .sqlite_store import EDITABLE_FIELDS, ApplyOutcome, StateStore

__all__ = [
    "ApplyOutcome",
    "EDITABLE_FIELDS",
    "StateStore",
]
