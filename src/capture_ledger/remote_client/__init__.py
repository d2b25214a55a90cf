"""
Remote document store client.

REST boundary of the sync engine: idempotent creates, revision-checked
updates and deletes, a change feed for pulls and a health probe.
"""

from .client import (
    RemoteAPIError,
    RemoteConflictError,
    RemoteConnectionError,
    RemoteGoneError,
    RemoteStoreClient,
    RemoteStoreError,
    RemoteTimeoutError,
)

__all__ = [
    "RemoteStoreClient",
    "RemoteStoreError",
    "RemoteAPIError",
    "RemoteConflictError",
    "RemoteConnectionError",
    "RemoteGoneError",
    "RemoteTimeoutError",
]
