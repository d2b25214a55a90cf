"""
SQLite-based state store implementation.

Tables:
- records: Persisted records with sync bookkeeping
- sync_ops: Durable sync queue (migration 001)
- sync_meta: Pull cursor and sync bookkeeping (migration 001)
- record_audit: Append-only record history (migration 002)

Every mutation of a record and the sync op describing it are written in the
same transaction, so a crash can never leave a record without its op or an
op without its record.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ..confidence import ConfidenceScorer
from ..errors import RecordNotFoundError
from ..schemas.records import (
    ExtractedRecord,
    PersistedRecord,
    RemoteDocument,
    SyncOp,
    SyncOpKind,
    SyncOpStatus,
    SyncState,
    ValidationStatus,
    utc_now_iso,
)
from ..schemas.validation import Invalid, validate_payload

if TYPE_CHECKING:
    from ..sync.conflict import ConflictResolver

logger = logging.getLogger(__name__)

# Fields a user may correct by hand
EDITABLE_FIELDS = ("amount", "date", "counterparty", "category", "currency", "description")


class ApplyOutcome(str, Enum):
    """What apply_remote did with a remote document."""

    CREATED = "created"  # New record from another device
    ADOPTED_REMOTE = "adopted_remote"
    KEPT_LOCAL = "kept_local"
    PURGED = "purged"  # Remote tombstone removed the local record
    UNCHANGED = "unchanged"


def _record_from_row(row: sqlite3.Row) -> PersistedRecord:
    return PersistedRecord(
        local_id=row["local_id"],
        record=ExtractedRecord.from_dict(json.loads(row["record_json"])),
        sync_state=SyncState(row["sync_state"]),
        revision=row["revision"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        remote_id=row["remote_id"],
        remote_revision=row["remote_revision"],
        remote_updated_at=row["remote_updated_at"],
        last_sync_error=row["last_sync_error"],
    )


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _op_from_row(row: sqlite3.Row) -> SyncOp:
    return SyncOp(
        seq=row["seq"],
        local_id=row["local_id"],
        kind=SyncOpKind(row["kind"]),
        revision=row["revision"],
        status=SyncOpStatus(row["status"]),
        attempts=row["attempts"],
        enqueued_at=row["enqueued_at"],
        next_attempt_at=row["next_attempt_at"],
        last_error=row["last_error"],
    )


class StateStore:
    """
    SQLite-based local store for records and their sync queue.

    Provides persistent tracking of:
    - Extracted records and their sync state
    - Outstanding sync operations (FIFO per record)
    - Record audit trail
    - Pull cursor

    WAL mode with one connection per transaction. Writers take the write
    lock up front (BEGIN IMMEDIATE) so concurrent pipelines and the sync
    engine serialize cleanly; readers are never blocked.
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        db_path: Path | str,
        run_migrations: bool = True,
        busy_timeout: float = 30.0,
    ):
        """
        Initialize state store.

        Args:
            db_path: Path to SQLite database file
            run_migrations: Whether to run pending migrations (default True)
            busy_timeout: Seconds to wait for the write lock
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.busy_timeout = busy_timeout
        self._init_db()
        if run_migrations:
            self._run_migrations()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with row factory and explicit transactions."""
        conn = sqlite3.connect(str(self.db_path), timeout=self.busy_timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("PRAGMA synchronous = NORMAL")
        return conn

    @contextmanager
    def _transaction(self, write: bool = True) -> Iterator[sqlite3.Connection]:
        """Context manager for database transactions."""
        conn = self._get_connection()
        try:
            conn.execute("BEGIN IMMEDIATE" if write else "BEGIN")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        conn = self._get_connection()
        try:
            # Persistent; only needs to be set once per database file
            conn.execute("PRAGMA journal_mode = WAL")
        finally:
            conn.close()

        with self._transaction() as conn:
            # Schema version tracking
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS records (
                    local_id TEXT PRIMARY KEY,
                    record_json TEXT NOT NULL,
                    record_type TEXT NOT NULL,
                    amount TEXT,
                    record_date TEXT,
                    counterparty TEXT,
                    category TEXT,
                    validation_status TEXT NOT NULL,
                    confidence REAL NOT NULL,
                    ocr_fingerprint TEXT,
                    sync_state TEXT NOT NULL,
                    revision INTEGER NOT NULL,
                    remote_id TEXT UNIQUE,
                    remote_revision INTEGER,
                    remote_updated_at TEXT,
                    last_sync_error TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """
            )

            # remote_id is assigned exactly once
            conn.execute(
                """
                CREATE TRIGGER IF NOT EXISTS trg_records_remote_id_immutable
                BEFORE UPDATE OF remote_id ON records
                WHEN OLD.remote_id IS NOT NULL AND NEW.remote_id IS NOT OLD.remote_id
                BEGIN
                    SELECT RAISE(ABORT, 'remote_id is immutable once assigned');
                END
            """
            )

            # revision never decreases
            conn.execute(
                """
                CREATE TRIGGER IF NOT EXISTS trg_records_revision_monotonic
                BEFORE UPDATE OF revision ON records
                WHEN NEW.revision < OLD.revision
                BEGIN
                    SELECT RAISE(ABORT, 'revision must not decrease');
                END
            """
            )

            conn.execute("CREATE INDEX IF NOT EXISTS idx_records_sync_state ON records(sync_state)")
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_records_status ON records(validation_status)"
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_records_updated ON records(updated_at)")

            conn.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)", (self.SCHEMA_VERSION,)
            )

    def _run_migrations(self) -> None:
        """Run pending database migrations."""
        from .migrations import MigrationRunner

        conn = self._get_connection()
        try:
            runner = MigrationRunner(conn)
            runner.run_pending()
        finally:
            conn.close()

    # Internal helpers (caller holds the transaction)

    def _fetch_record(
        self, conn: sqlite3.Connection, local_id: str, include_deleted: bool = True
    ) -> PersistedRecord | None:
        row = conn.execute("SELECT * FROM records WHERE local_id = ?", (local_id,)).fetchone()
        if row is None:
            return None
        record = _record_from_row(row)
        if record.is_deleted and not include_deleted:
            return None
        return record

    def _write_record(
        self,
        conn: sqlite3.Connection,
        local_id: str,
        extracted: ExtractedRecord,
        sync_state: SyncState,
        revision: int,
        updated_at: str,
        **sync_columns: Any,
    ) -> None:
        """Update content, state and revision of an existing record row."""
        assignments = [
            "record_json = ?",
            "record_type = ?",
            "amount = ?",
            "record_date = ?",
            "counterparty = ?",
            "category = ?",
            "validation_status = ?",
            "confidence = ?",
            "ocr_fingerprint = ?",
            "sync_state = ?",
            "revision = ?",
            "updated_at = ?",
        ]
        params: list[Any] = [
            json.dumps(extracted.to_dict()),
            extracted.record_type,
            str(extracted.amount) if extracted.amount is not None else None,
            extracted.date,
            extracted.counterparty,
            extracted.category.value,
            extracted.validation_status.value,
            extracted.confidence,
            extracted.ocr_fingerprint,
            sync_state.value,
            revision,
            updated_at,
        ]
        for column, value in sync_columns.items():
            assignments.append(f"{column} = ?")
            params.append(value)
        params.append(local_id)

        conn.execute(f"UPDATE records SET {', '.join(assignments)} WHERE local_id = ?", params)

    def _enqueue(
        self, conn: sqlite3.Connection, local_id: str, kind: SyncOpKind, revision: int
    ) -> SyncOp | None:
        """Insert a queued op; returns None if the same op is already queued."""
        cursor = conn.execute(
            """
            INSERT OR IGNORE INTO sync_ops (local_id, kind, revision, status, attempts, enqueued_at)
            VALUES (?, ?, ?, ?, 0, ?)
        """,
            (local_id, kind.value, revision, SyncOpStatus.QUEUED.value, utc_now_iso()),
        )
        if cursor.rowcount == 0:
            return None
        row = conn.execute("SELECT * FROM sync_ops WHERE seq = ?", (cursor.lastrowid,)).fetchone()
        return _op_from_row(row)

    def _audit(
        self,
        conn: sqlite3.Connection,
        local_id: str,
        revision: int | None,
        event: str,
        detail: dict[str, Any] | None = None,
    ) -> None:
        conn.execute(
            """
            INSERT INTO record_audit (local_id, revision, event, detail, created_at)
            VALUES (?, ?, ?, ?, ?)
        """,
            (local_id, revision, event, json.dumps(detail) if detail else None, utc_now_iso()),
        )

    def _purge(self, conn: sqlite3.Connection, local_id: str, reason: str) -> bool:
        cursor = conn.execute("DELETE FROM records WHERE local_id = ?", (local_id,))
        conn.execute("DELETE FROM sync_ops WHERE local_id = ?", (local_id,))
        if cursor.rowcount:
            self._audit(conn, local_id, None, "purged", {"reason": reason})
        return cursor.rowcount > 0

    # Record methods

    def insert_record(
        self,
        extracted: ExtractedRecord,
        enqueue: bool = True,
        local_id: str | None = None,
    ) -> PersistedRecord:
        """
        Persist a new record at revision 1 in state pending.

        The upsert op is enqueued in the same transaction, so a record
        committed here is guaranteed to be pushed eventually.
        """
        local_id = local_id or uuid.uuid4().hex
        now = utc_now_iso()

        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO records
                (local_id, record_json, record_type, amount, record_date, counterparty, category,
                 validation_status, confidence, ocr_fingerprint, sync_state, revision,
                 created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?)
            """,
                (
                    local_id,
                    json.dumps(extracted.to_dict()),
                    extracted.record_type,
                    str(extracted.amount) if extracted.amount is not None else None,
                    extracted.date,
                    extracted.counterparty,
                    extracted.category.value,
                    extracted.validation_status.value,
                    extracted.confidence,
                    extracted.ocr_fingerprint,
                    SyncState.PENDING.value,
                    now,
                    now,
                ),
            )
            if enqueue:
                self._enqueue(conn, local_id, SyncOpKind.UPSERT, 1)
            self._audit(
                conn,
                local_id,
                1,
                "created",
                {"validation_status": extracted.validation_status.value},
            )
            record = self._fetch_record(conn, local_id)

        logger.info(
            "Persisted record %s (status=%s)", local_id, extracted.validation_status.value
        )
        return record

    def get_record(self, local_id: str, include_deleted: bool = False) -> PersistedRecord | None:
        """Get a record by local_id. Records awaiting deletion are hidden by default."""
        with self._transaction(write=False) as conn:
            return self._fetch_record(conn, local_id, include_deleted=include_deleted)

    def require_record(self, local_id: str) -> PersistedRecord:
        """Get a visible record or raise RecordNotFoundError."""
        record = self.get_record(local_id)
        if record is None:
            raise RecordNotFoundError(local_id)
        return record

    def list_records(
        self,
        sync_state: SyncState | None = None,
        validation_status: ValidationStatus | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[PersistedRecord]:
        """List visible records, newest first."""
        return self._select_records([], [], sync_state, validation_status, limit, offset)

    def search_records(
        self,
        term: str,
        sync_state: SyncState | None = None,
        validation_status: ValidationStatus | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[PersistedRecord]:
        """
        Find visible records whose counterparty, description or OCR text
        contains term (case-insensitive for ASCII), newest first.
        """
        term = term.strip()
        if not term:
            return self.list_records(sync_state, validation_status, limit, offset)

        pattern = "%" + _escape_like(term) + "%"
        clause = (
            "(counterparty LIKE ? ESCAPE '\\'"
            " OR json_extract(record_json, '$.description') LIKE ? ESCAPE '\\'"
            " OR json_extract(record_json, '$.raw_text') LIKE ? ESCAPE '\\')"
        )
        return self._select_records(
            [clause], [pattern] * 3, sync_state, validation_status, limit, offset
        )

    def _select_records(
        self,
        clauses: list[str],
        params: list[Any],
        sync_state: SyncState | None,
        validation_status: ValidationStatus | None,
        limit: int,
        offset: int,
    ) -> list[PersistedRecord]:
        clauses = ["sync_state != ?"] + clauses
        params = [SyncState.DELETED_PENDING.value] + params
        if sync_state is not None:
            clauses.append("sync_state = ?")
            params.append(SyncState(sync_state).value)
        if validation_status is not None:
            clauses.append("validation_status = ?")
            params.append(ValidationStatus(validation_status).value)
        params.extend([limit, offset])

        with self._transaction(write=False) as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM records
                WHERE {' AND '.join(clauses)}
                ORDER BY created_at DESC, local_id
                LIMIT ? OFFSET ?
            """,
                params,
            ).fetchall()
            return [_record_from_row(row) for row in rows]

    def count_by_state(self, include_deleted: bool = False) -> dict[str, int]:
        """Count records per sync state."""
        counts = {state.value: 0 for state in SyncState}
        with self._transaction(write=False) as conn:
            rows = conn.execute(
                "SELECT sync_state, COUNT(*) AS count FROM records GROUP BY sync_state"
            ).fetchall()
        for row in rows:
            counts[row["sync_state"]] = row["count"]
        if not include_deleted:
            counts.pop(SyncState.DELETED_PENDING.value, None)
        return counts

    def update_fields(self, local_id: str, **changes: Any) -> PersistedRecord:
        """
        Apply a user correction.

        Changed values are validated individually; the record as a whole is
        then re-validated: valid if every required field is present, needs
        review otherwise. Bumps the revision and enqueues an upsert.

        Raises:
            RecordNotFoundError: Unknown or deleted record
            ValueError: Unknown field or unparseable value
        """
        unknown = sorted(set(changes) - set(EDITABLE_FIELDS))
        if unknown:
            raise ValueError(f"Fields not editable: {', '.join(unknown)}")
        if not changes:
            return self.require_record(local_id)

        with self._transaction() as conn:
            current = self._fetch_record(conn, local_id, include_deleted=False)
            if current is None:
                raise RecordNotFoundError(local_id)

            extracted = current.record
            merged = extracted.fields_dict()
            merged.update(changes)
            result = validate_payload(merged, extracted.record_type)

            if isinstance(result, Invalid):
                bad = [r for r in result.reasons if r.split(":", 1)[0] in changes]
                if bad:
                    raise ValueError("; ".join(bad))
                fields = result.partial
                status, issues = ValidationStatus.NEEDS_REVIEW, list(result.reasons)
            else:
                fields = result.fields
                status, issues = ConfidenceScorer().compute_status(1.0, fields)
                issues = list(result.warnings) + issues

            for key in changes:
                setattr(extracted, key, fields.get(key))
            extracted.confidence = 1.0 if status == ValidationStatus.VALID else extracted.confidence
            extracted.validation_status = status
            extracted.validation_errors = issues

            revision = current.revision + 1
            self._write_record(
                conn, local_id, extracted, SyncState.PENDING, revision, utc_now_iso()
            )
            self._enqueue(conn, local_id, SyncOpKind.UPSERT, revision)
            self._audit(conn, local_id, revision, "corrected", {"fields": sorted(changes)})
            record = self._fetch_record(conn, local_id)

        logger.info("Record %s corrected (revision %d, status=%s)", local_id, revision, status.value)
        return record

    def replace_extraction(self, local_id: str, extracted: ExtractedRecord) -> PersistedRecord:
        """Replace a record's content with a fresh extraction (revision+1, pending)."""
        with self._transaction() as conn:
            current = self._fetch_record(conn, local_id, include_deleted=False)
            if current is None:
                raise RecordNotFoundError(local_id)

            revision = current.revision + 1
            self._write_record(
                conn, local_id, extracted, SyncState.PENDING, revision, utc_now_iso()
            )
            self._enqueue(conn, local_id, SyncOpKind.UPSERT, revision)
            self._audit(
                conn,
                local_id,
                revision,
                "reextracted",
                {
                    "validation_status": extracted.validation_status.value,
                    "prompt_version": extracted.prompt_version,
                },
            )
            return self._fetch_record(conn, local_id)

    def delete_record(self, local_id: str) -> PersistedRecord | None:
        """
        Delete a record.

        Never-synced records with no push in flight are purged immediately
        (returns None). Everything else moves to deleted_pending with a
        delete op; the row is purged once the remote acknowledges, so a
        create that lands after this call is removed again.

        Raises:
            RecordNotFoundError: Unknown or already deleted record
        """
        with self._transaction() as conn:
            current = self._fetch_record(conn, local_id, include_deleted=False)
            if current is None:
                raise RecordNotFoundError(local_id)

            in_flight = conn.execute(
                "SELECT 1 FROM sync_ops WHERE local_id = ? AND status = ? LIMIT 1",
                (local_id, SyncOpStatus.IN_FLIGHT.value),
            ).fetchone()
            if current.remote_id is None and in_flight is None:
                self._purge(conn, local_id, "deleted before first sync")
                logger.info("Record %s deleted locally (never synced)", local_id)
                return None

            revision = current.revision + 1
            self._write_record(
                conn, local_id, current.record, SyncState.DELETED_PENDING, revision, utc_now_iso()
            )
            self._enqueue(conn, local_id, SyncOpKind.DELETE, revision)
            self._audit(conn, local_id, revision, "deleted")
            record = self._fetch_record(conn, local_id)

        logger.info("Record %s marked for remote deletion", local_id)
        return record

    def purge_record(self, local_id: str, reason: str) -> bool:
        """Remove a record and all its queued ops. Returns True if a row was removed."""
        with self._transaction() as conn:
            purged = self._purge(conn, local_id, reason)
        if purged:
            logger.info("Purged record %s: %s", local_id, reason)
        return purged

    # Sync queue methods

    def enqueue_sync(self, record: PersistedRecord) -> SyncOp | None:
        """
        Enqueue a sync op for the record's current revision.

        Idempotent: returns None when the same (local_id, revision, kind)
        op is already queued, or when that revision has already been pushed.
        """
        kind = SyncOpKind.DELETE if record.is_deleted else SyncOpKind.UPSERT
        with self._transaction() as conn:
            current = self._fetch_record(conn, record.local_id)
            if current is None:
                raise RecordNotFoundError(record.local_id)
            if current.sync_state == SyncState.SYNCED:
                return None
            return self._enqueue(conn, current.local_id, kind, current.revision)

    def next_ready_ops(self, limit: int = 50, now: str | None = None) -> list[SyncOp]:
        """
        Get queued ops that are due, at most one per record.

        Only the oldest outstanding op of each record is eligible, so ops of
        one record are processed strictly in order. An op in flight blocks
        its record. Permanently failed ops do not block later ones.
        """
        now = now or utc_now_iso()
        with self._transaction(write=False) as conn:
            rows = conn.execute(
                """
                SELECT o.* FROM sync_ops o
                WHERE o.status = ?
                  AND (o.next_attempt_at IS NULL OR o.next_attempt_at <= ?)
                  AND o.seq = (
                      SELECT MIN(h.seq) FROM sync_ops h
                      WHERE h.local_id = o.local_id AND h.status IN (?, ?)
                  )
                ORDER BY o.seq
                LIMIT ?
            """,
                (
                    SyncOpStatus.QUEUED.value,
                    now,
                    SyncOpStatus.QUEUED.value,
                    SyncOpStatus.IN_FLIGHT.value,
                    limit,
                ),
            ).fetchall()
            return [_op_from_row(row) for row in rows]

    def next_due_at(self) -> str | None:
        """Earliest next_attempt_at among queued ops (None if none are scheduled)."""
        with self._transaction(write=False) as conn:
            row = conn.execute(
                "SELECT MIN(next_attempt_at) AS due FROM sync_ops WHERE status = ?",
                (SyncOpStatus.QUEUED.value,),
            ).fetchone()
        return row["due"] if row else None

    def claim_op(self, seq: int) -> bool:
        """Move a queued op to in_flight. Returns False if someone else claimed it."""
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE sync_ops SET status = ? WHERE seq = ? AND status = ?",
                (SyncOpStatus.IN_FLIGHT.value, seq, SyncOpStatus.QUEUED.value),
            )
            return cursor.rowcount > 0

    def complete_op(self, seq: int) -> None:
        """Acknowledge an op: remove it and any older failed ops of the same record."""
        with self._transaction() as conn:
            row = conn.execute("SELECT local_id FROM sync_ops WHERE seq = ?", (seq,)).fetchone()
            conn.execute("DELETE FROM sync_ops WHERE seq = ?", (seq,))
            if row is not None:
                conn.execute(
                    "DELETE FROM sync_ops WHERE local_id = ? AND seq < ? AND status = ?",
                    (row["local_id"], seq, SyncOpStatus.FAILED_PERMANENT.value),
                )

    def reschedule_op(
        self,
        seq: int,
        next_attempt_at: str | None,
        error: str | None = None,
        count_attempt: bool = True,
    ) -> int:
        """
        Put an op back in the queue.

        Args:
            seq: Op sequence number
            next_attempt_at: Earliest retry time (None = immediately)
            error: Failure description
            count_attempt: Whether this failure consumes retry budget

        Returns:
            The op's attempt count after the update
        """
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE sync_ops
                SET status = ?, next_attempt_at = ?, last_error = ?,
                    attempts = attempts + ?
                WHERE seq = ?
            """,
                (
                    SyncOpStatus.QUEUED.value,
                    next_attempt_at,
                    error,
                    1 if count_attempt else 0,
                    seq,
                ),
            )
            row = conn.execute("SELECT attempts FROM sync_ops WHERE seq = ?", (seq,)).fetchone()
            return row["attempts"] if row else 0

    def fail_op_permanently(self, seq: int, error: str) -> SyncOp | None:
        """Mark an op failed_permanent and surface the error on its record."""
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE sync_ops
                SET status = ?, last_error = ?, attempts = attempts + 1, next_attempt_at = NULL
                WHERE seq = ?
            """,
                (SyncOpStatus.FAILED_PERMANENT.value, error, seq),
            )
            row = conn.execute("SELECT * FROM sync_ops WHERE seq = ?", (seq,)).fetchone()
            if row is None:
                return None
            op = _op_from_row(row)
            conn.execute(
                "UPDATE records SET last_sync_error = ? WHERE local_id = ?", (error, op.local_id)
            )
            self._audit(conn, op.local_id, op.revision, "sync_failed", {"error": error})
        logger.warning("Sync op %d for record %s failed permanently: %s", seq, op.local_id, error)
        return op

    def release_in_flight(self) -> int:
        """Requeue ops left in flight by a previous process. Returns count."""
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE sync_ops SET status = ? WHERE status = ?",
                (SyncOpStatus.QUEUED.value, SyncOpStatus.IN_FLIGHT.value),
            )
            count = cursor.rowcount
        if count:
            logger.info("Requeued %d sync ops left in flight", count)
        return count

    def has_newer_op(self, local_id: str, seq: int) -> bool:
        """Whether a later op for the same record is queued."""
        with self._transaction(write=False) as conn:
            row = conn.execute(
                "SELECT 1 FROM sync_ops WHERE local_id = ? AND seq > ? AND status = ? LIMIT 1",
                (local_id, seq, SyncOpStatus.QUEUED.value),
            ).fetchone()
        return row is not None

    def list_ops(self, local_id: str | None = None) -> list[SyncOp]:
        """List outstanding ops in queue order."""
        with self._transaction(write=False) as conn:
            if local_id is None:
                rows = conn.execute("SELECT * FROM sync_ops ORDER BY seq").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM sync_ops WHERE local_id = ? ORDER BY seq", (local_id,)
                ).fetchall()
            return [_op_from_row(row) for row in rows]

    def list_failed_ops(self) -> list[SyncOp]:
        """List ops that exhausted their retry budget."""
        with self._transaction(write=False) as conn:
            rows = conn.execute(
                "SELECT * FROM sync_ops WHERE status = ? ORDER BY seq",
                (SyncOpStatus.FAILED_PERMANENT.value,),
            ).fetchall()
            return [_op_from_row(row) for row in rows]

    def retry_failed_ops(self, local_id: str | None = None) -> int:
        """Requeue permanently failed ops with a fresh retry budget. Returns count."""
        with self._transaction() as conn:
            if local_id is None:
                cursor = conn.execute(
                    """
                    UPDATE sync_ops SET status = ?, attempts = 0, next_attempt_at = NULL
                    WHERE status = ?
                """,
                    (SyncOpStatus.QUEUED.value, SyncOpStatus.FAILED_PERMANENT.value),
                )
                conn.execute("UPDATE records SET last_sync_error = NULL")
            else:
                cursor = conn.execute(
                    """
                    UPDATE sync_ops SET status = ?, attempts = 0, next_attempt_at = NULL
                    WHERE status = ? AND local_id = ?
                """,
                    (SyncOpStatus.QUEUED.value, SyncOpStatus.FAILED_PERMANENT.value, local_id),
                )
                conn.execute(
                    "UPDATE records SET last_sync_error = NULL WHERE local_id = ?", (local_id,)
                )
            return cursor.rowcount

    def pending_op_count(self) -> int:
        """Number of ops still waiting to be pushed (queued or in flight)."""
        with self._transaction(write=False) as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS count FROM sync_ops WHERE status IN (?, ?)",
                (SyncOpStatus.QUEUED.value, SyncOpStatus.IN_FLIGHT.value),
            ).fetchone()
        return row["count"] if row else 0

    # Sync outcome methods

    def mark_synced(
        self, local_id: str, pushed_revision: int, remote: RemoteDocument
    ) -> PersistedRecord | None:
        """
        Record a successful push.

        The record becomes synced only if it was not edited while the push
        was in flight; otherwise it stays pending and its newer op follows.
        """
        with self._transaction() as conn:
            current = self._fetch_record(conn, local_id)
            if current is None:
                return None

            unchanged = current.revision == pushed_revision and current.sync_state in (
                SyncState.PENDING,
                SyncState.CONFLICT,
            )
            state = SyncState.SYNCED if unchanged else current.sync_state
            conn.execute(
                """
                UPDATE records
                SET remote_id = ?, remote_revision = ?, remote_updated_at = ?,
                    sync_state = ?, last_sync_error = NULL
                WHERE local_id = ?
            """,
                (
                    current.remote_id or remote.remote_id,
                    remote.revision,
                    remote.updated_at,
                    state.value,
                    local_id,
                ),
            )
            self._audit(
                conn,
                local_id,
                pushed_revision,
                "synced",
                {"remote_id": remote.remote_id, "remote_revision": remote.revision},
            )
            return self._fetch_record(conn, local_id)

    def mark_conflict(self, local_id: str, detail: str) -> None:
        """Flag a record whose push was rejected as stale."""
        with self._transaction() as conn:
            conn.execute(
                "UPDATE records SET sync_state = ?, last_sync_error = ? "
                "WHERE local_id = ? AND sync_state = ?",
                (SyncState.CONFLICT.value, detail, local_id, SyncState.PENDING.value),
            )
            self._audit(conn, local_id, None, "conflict", {"detail": detail})

    def clear_conflict(self, local_id: str) -> None:
        """Put a conflict-flagged record back to pending."""
        with self._transaction() as conn:
            conn.execute(
                "UPDATE records SET sync_state = ? WHERE local_id = ? AND sync_state = ?",
                (SyncState.PENDING.value, local_id, SyncState.CONFLICT.value),
            )

    def apply_remote(
        self, remote: RemoteDocument, resolver: ConflictResolver | None = None
    ) -> ApplyOutcome:
        """
        Merge a remote document into the local store in one transaction.

        Rules:
        - Remote tombstone: the local record and its ops are purged, even
          with unsynced local edits
        - Unknown document: inserted as a synced record
        - Local record without unsynced edits: remote values adopted
        - Local record with unsynced edits: the resolver decides
        - Local record awaiting deletion: local deletion is kept
        """
        if resolver is None:
            from ..sync.conflict import ConflictResolver

            resolver = ConflictResolver()

        with self._transaction() as conn:
            row = conn.execute(
                "SELECT local_id FROM records WHERE remote_id = ?", (remote.remote_id,)
            ).fetchone()
            local_id = row["local_id"] if row else remote.local_id
            current = self._fetch_record(conn, local_id) if local_id else None

            if current is None:
                if remote.deleted:
                    return ApplyOutcome.UNCHANGED
                return self._insert_from_remote(conn, remote)

            if remote.deleted:
                self._purge(conn, current.local_id, "remote tombstone")
                logger.info("Record %s removed by remote tombstone", current.local_id)
                return ApplyOutcome.PURGED

            if current.is_deleted:
                return ApplyOutcome.KEPT_LOCAL

            if current.remote_revision is not None and remote.revision <= current.remote_revision:
                return ApplyOutcome.UNCHANGED

            if current.sync_state == SyncState.SYNCED:
                self._adopt_remote(conn, current, remote)
                return ApplyOutcome.ADOPTED_REMOTE

            if resolver.remote_wins(current, remote):
                self._adopt_remote(conn, current, remote)
                conn.execute(
                    "DELETE FROM sync_ops WHERE local_id = ? AND kind = ? AND status != ?",
                    (current.local_id, SyncOpKind.UPSERT.value, SyncOpStatus.IN_FLIGHT.value),
                )
                logger.info(
                    "Conflict on %s resolved for remote (policy=%s)",
                    current.local_id,
                    resolver.policy.value,
                )
                return ApplyOutcome.ADOPTED_REMOTE

            conn.execute(
                """
                UPDATE records
                SET remote_id = ?, remote_revision = ?, remote_updated_at = ?, sync_state = ?
                WHERE local_id = ?
            """,
                (
                    current.remote_id or remote.remote_id,
                    remote.revision,
                    remote.updated_at,
                    SyncState.PENDING.value,
                    current.local_id,
                ),
            )
            self._enqueue(conn, current.local_id, SyncOpKind.UPSERT, current.revision)
            self._audit(
                conn,
                current.local_id,
                current.revision,
                "conflict_kept_local",
                {"remote_revision": remote.revision, "policy": resolver.policy.value},
            )
            logger.info(
                "Conflict on %s resolved for local (policy=%s)",
                current.local_id,
                resolver.policy.value,
            )
            return ApplyOutcome.KEPT_LOCAL

    def _insert_from_remote(self, conn: sqlite3.Connection, remote: RemoteDocument) -> ApplyOutcome:
        extracted = ExtractedRecord.from_dict(remote.data)
        local_id = remote.local_id or uuid.uuid4().hex
        now = utc_now_iso()
        conn.execute(
            """
            INSERT INTO records
            (local_id, record_json, record_type, amount, record_date, counterparty, category,
             validation_status, confidence, ocr_fingerprint, sync_state, revision,
             remote_id, remote_revision, remote_updated_at, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?, ?, ?, ?)
        """,
            (
                local_id,
                json.dumps(extracted.to_dict()),
                extracted.record_type,
                str(extracted.amount) if extracted.amount is not None else None,
                extracted.date,
                extracted.counterparty,
                extracted.category.value,
                extracted.validation_status.value,
                extracted.confidence,
                extracted.ocr_fingerprint,
                SyncState.SYNCED.value,
                remote.remote_id,
                remote.revision,
                remote.updated_at,
                now,
                remote.updated_at or now,
            ),
        )
        self._audit(conn, local_id, 1, "remote_created", {"remote_id": remote.remote_id})
        return ApplyOutcome.CREATED

    def _adopt_remote(
        self, conn: sqlite3.Connection, current: PersistedRecord, remote: RemoteDocument
    ) -> None:
        extracted = ExtractedRecord.from_dict({**current.record.to_dict(), **remote.data})
        revision = current.revision + 1
        self._write_record(
            conn,
            current.local_id,
            extracted,
            SyncState.SYNCED,
            revision,
            remote.updated_at or utc_now_iso(),
            remote_id=current.remote_id or remote.remote_id,
            remote_revision=remote.revision,
            remote_updated_at=remote.updated_at,
            last_sync_error=None,
        )
        self._audit(
            conn,
            current.local_id,
            revision,
            "remote_applied",
            {"remote_revision": remote.revision},
        )

    # Audit and metadata

    def get_audit_trail(self, local_id: str) -> list[dict[str, Any]]:
        """Get a record's history, oldest first."""
        with self._transaction(write=False) as conn:
            rows = conn.execute(
                "SELECT * FROM record_audit WHERE local_id = ? ORDER BY id", (local_id,)
            ).fetchall()
        results = []
        for row in rows:
            entry = dict(row)
            entry["detail"] = json.loads(row["detail"]) if row["detail"] else {}
            results.append(entry)
        return results

    def get_meta(self, key: str) -> str | None:
        """Read a sync_meta value."""
        with self._transaction(write=False) as conn:
            row = conn.execute("SELECT value FROM sync_meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set_meta(self, key: str, value: str | None) -> None:
        """Write a sync_meta value."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO sync_meta (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value,
                                               updated_at = excluded.updated_at
            """,
                (key, value, utc_now_iso()),
            )

    # Statistics

    def get_stats(self) -> dict[str, Any]:
        """Get store statistics."""
        states = self.count_by_state(include_deleted=True)
        with self._transaction(write=False) as conn:
            review = conn.execute(
                "SELECT COUNT(*) AS count FROM records WHERE validation_status = ? "
                "AND sync_state != ?",
                (ValidationStatus.NEEDS_REVIEW.value, SyncState.DELETED_PENDING.value),
            ).fetchone()
            queued = conn.execute(
                "SELECT COUNT(*) AS count FROM sync_ops WHERE status IN (?, ?)",
                (SyncOpStatus.QUEUED.value, SyncOpStatus.IN_FLIGHT.value),
            ).fetchone()
            failed = conn.execute(
                "SELECT COUNT(*) AS count FROM sync_ops WHERE status = ?",
                (SyncOpStatus.FAILED_PERMANENT.value,),
            ).fetchone()

        return {
            "records_total": sum(
                count for state, count in states.items() if state != SyncState.DELETED_PENDING.value
            ),
            "records_by_state": states,
            "needs_review": review["count"] if review else 0,
            "ops_pending": queued["count"] if queued else 0,
            "ops_failed": failed["count"] if failed else 0,
        }
