"""
Migration 001: Durable sync queue.

Creates the sync_ops table (one row per pending sync intent) and the
sync_meta key/value table (pull cursor, last successful sync).

Features:
- FIFO per record via the autoincrement seq column
- UNIQUE(local_id, revision, kind) makes enqueueing idempotent
- Status tracking: queued, in_flight, failed_permanent
- Acknowledged ops are deleted, so the table only holds outstanding work
"""

import sqlite3

VERSION = 1
NAME = "sync_queue"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create the sync_ops and sync_meta tables."""
    conn.execute("""
        CREATE TABLE IF NOT EXISTS sync_ops (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            local_id TEXT NOT NULL,

            -- Kind: upsert, delete
            kind TEXT NOT NULL,
            revision INTEGER NOT NULL,

            -- Status: queued, in_flight, failed_permanent
            status TEXT NOT NULL DEFAULT 'queued',

            -- Retry tracking
            attempts INTEGER NOT NULL DEFAULT 0,
            enqueued_at TEXT NOT NULL,
            next_attempt_at TEXT,  -- NULL = ASAP
            last_error TEXT,

            UNIQUE (local_id, revision, kind)
        )
    """)

    # Ready-op scan (status + due time)
    conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_sync_ops_ready
        ON sync_ops (status, next_attempt_at)
    """)

    # Head-of-queue lookup per record
    conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_sync_ops_record
        ON sync_ops (local_id, seq)
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS sync_meta (
            key TEXT PRIMARY KEY,
            value TEXT,
            updated_at TEXT NOT NULL
        )
    """)


def downgrade(conn: sqlite3.Connection) -> None:
    """Drop the sync queue tables."""
    conn.execute("DROP INDEX IF EXISTS idx_sync_ops_ready")
    conn.execute("DROP INDEX IF EXISTS idx_sync_ops_record")
    conn.execute("DROP TABLE IF EXISTS sync_ops")
    conn.execute("DROP TABLE IF EXISTS sync_meta")
