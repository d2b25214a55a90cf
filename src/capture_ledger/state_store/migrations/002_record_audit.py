"""
Migration 002: Record audit trail.

Append-only history of every state change a record goes through
(created, corrected, re-extracted, synced, conflict, remote applied,
deleted, purged). Rows outlive the record they describe.
"""

import sqlite3

VERSION = 2
NAME = "record_audit"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create the record_audit table."""
    conn.execute("""
        CREATE TABLE IF NOT EXISTS record_audit (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            local_id TEXT NOT NULL,
            revision INTEGER,
            event TEXT NOT NULL,
            detail TEXT,  -- JSON object
            created_at TEXT NOT NULL
        )
    """)

    conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_record_audit_local_id
        ON record_audit (local_id, id)
    """)


def downgrade(conn: sqlite3.Connection) -> None:
    """Drop the record_audit table."""
    conn.execute("DROP INDEX IF EXISTS idx_record_audit_local_id")
    conn.execute("DROP TABLE IF EXISTS record_audit")
