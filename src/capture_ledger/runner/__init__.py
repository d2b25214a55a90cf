"""
CLI runner module.

Provides commands:
- capture: Run images through the pipeline
- list / show: Inspect stored records
- edit / reextract: Correct or re-extract a record
- delete: Delete a record (synced deletions go through the queue)
- sync: Push pending changes, pull remote ones
- retry-failed / status: Sync queue maintenance
"""

from .main import create_cli, main

__all__ = [
    "create_cli",
    "main",
]
