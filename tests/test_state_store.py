"""Tests for state store."""

import sqlite3
from decimal import Decimal

import pytest

from capture_ledger.errors import RecordNotFoundError
from capture_ledger.schemas.records import (
    Category,
    RemoteDocument,
    SyncOpKind,
    SyncOpStatus,
    SyncState,
    ValidationStatus,
)
from capture_ledger.state_store import ApplyOutcome, StateStore
from capture_ledger.state_store.migrations import (
    Migration,
    MigrationError,
    MigrationRunner,
    discover_migrations,
)
from capture_ledger.sync import ConflictPolicy, ConflictResolver

FAR_FUTURE = "2999-01-01T00:00:00.000000Z"
FAR_PAST = "2000-01-01T00:00:00.000000Z"


def remote_doc(remote_id="doc-1", revision=1, updated_at=FAR_PAST, deleted=False, **data):
    base = {"amount": "42.50", "date": "2024-03-01", "counterparty": "Acme", "category": "shopping"}
    base.update(data)
    return RemoteDocument(remote_id, revision, updated_at, base, deleted)


def synced_record(store, extracted_record, remote_id="doc-1"):
    """Insert a record and mark its first revision as pushed."""
    record = store.insert_record(extracted_record)
    [op] = store.list_ops(record.local_id)
    store.mark_synced(
        record.local_id, 1, remote_doc(remote_id, 1, FAR_PAST, local_id=record.local_id)
    )
    store.complete_op(op.seq)
    return store.get_record(record.local_id)


class TestStateStore:
    """Tests for SQLite state store."""

    def test_init_creates_db(self, temp_db):
        """Initializing creates database file."""
        StateStore(temp_db)
        assert temp_db.exists()

    def test_init_creates_tables(self, store):
        """All required tables are created."""
        conn = store._get_connection()
        try:
            tables = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
            table_names = [t[0] for t in tables]

            assert "records" in table_names
            assert "sync_ops" in table_names
            assert "sync_meta" in table_names
            assert "record_audit" in table_names
            assert "migrations" in table_names
        finally:
            conn.close()

    def test_wal_mode(self, store):
        conn = store._get_connection()
        try:
            assert conn.execute("PRAGMA journal_mode").fetchone()[0].lower() == "wal"
        finally:
            conn.close()

    def test_migrations_are_idempotent(self, temp_db):
        StateStore(temp_db)
        store = StateStore(temp_db)
        conn = store._get_connection()
        try:
            runner = MigrationRunner(conn)
            assert runner.run_pending() == []
            assert runner.get_current_version() == 2
        finally:
            conn.close()


class TestMigrations:
    """Tests for the migration runner."""

    def test_discovers_migrations_in_order(self):
        labels = [m.label for m in discover_migrations()]
        assert labels == ["001_sync_queue", "002_record_audit"]

    def test_downgrade_and_reapply(self, store):
        conn = store._get_connection()
        try:
            runner = MigrationRunner(conn)
            assert runner.downgrade_to(1) == [2]
            assert runner.get_current_version() == 1
            assert [m.version for m in runner.pending()] == [2]
            tables = {r[0] for r in conn.execute("SELECT name FROM sqlite_master")}
            assert "record_audit" not in tables

            assert runner.run_pending() == [2]
            tables = {r[0] for r in conn.execute("SELECT name FROM sqlite_master")}
            assert "record_audit" in tables
        finally:
            conn.close()

    def test_failed_upgrade_rolls_back(self, temp_db):
        def broken(conn):
            conn.execute("CREATE TABLE half_done (id INTEGER)")
            raise sqlite3.OperationalError("boom")

        conn = sqlite3.connect(str(temp_db), isolation_level=None)
        try:
            runner = MigrationRunner(conn, migrations=[Migration(7, "broken", broken)])
            with pytest.raises(MigrationError):
                runner.run_pending()

            tables = {r[0] for r in conn.execute("SELECT name FROM sqlite_master")}
            assert "half_done" not in tables
            assert runner.get_current_version() == 0
        finally:
            conn.close()

    def test_irreversible_migration(self, temp_db):
        conn = sqlite3.connect(str(temp_db), isolation_level=None)
        try:
            migration = Migration(1, "one_way", lambda c: c.execute("CREATE TABLE t (x)"))
            runner = MigrationRunner(conn, migrations=[migration])
            runner.run_pending()
            with pytest.raises(MigrationError):
                runner.downgrade_to(0)
        finally:
            conn.close()


class TestRecordOperations:
    """Tests for record CRUD."""

    def test_insert_record(self, store, extracted_record):
        record = store.insert_record(extracted_record)

        assert record.revision == 1
        assert record.sync_state == SyncState.PENDING
        assert record.remote_id is None
        assert record.record.amount == Decimal("42.50")
        assert record.record.category == Category.SHOPPING
        assert record.record.ocr_confidence == pytest.approx(0.92)

    def test_insert_enqueues_upsert_atomically(self, store, extracted_record):
        record = store.insert_record(extracted_record)

        ops = store.list_ops(record.local_id)
        assert len(ops) == 1
        assert ops[0].kind == SyncOpKind.UPSERT
        assert ops[0].revision == 1
        assert ops[0].status == SyncOpStatus.QUEUED

    def test_insert_without_enqueue(self, store, extracted_record):
        record = store.insert_record(extracted_record, enqueue=False)
        assert store.list_ops(record.local_id) == []

    def test_survives_reopen(self, temp_db, extracted_record):
        record = StateStore(temp_db).insert_record(extracted_record)

        reopened = StateStore(temp_db)

        assert reopened.get_record(record.local_id).record.counterparty == "Acme"
        assert reopened.pending_op_count() == 1

    def test_require_unknown_record(self, store):
        with pytest.raises(RecordNotFoundError):
            store.require_record("missing")

    def test_list_records_filters(self, store, extracted_record):
        first = store.insert_record(extracted_record)
        extracted_record.validation_status = ValidationStatus.NEEDS_REVIEW
        second = store.insert_record(extracted_record)

        review = store.list_records(validation_status=ValidationStatus.NEEDS_REVIEW)
        assert [r.local_id for r in review] == [second.local_id]

        pending = store.list_records(sync_state=SyncState.PENDING)
        assert {r.local_id for r in pending} == {first.local_id, second.local_id}

        assert store.list_records(sync_state=SyncState.SYNCED) == []


class TestSearch:
    """Tests for offline record search."""

    @pytest.fixture
    def records(self, store, extracted_record):
        acme = store.insert_record(extracted_record)
        extracted_record.counterparty = "Corner Bakery"
        extracted_record.description = "Bread 100% rye"
        extracted_record.raw_text = "CORNER BAKERY\nTotal: 4.20"
        bakery = store.insert_record(extracted_record)
        return acme, bakery

    def test_matches_counterparty_case_insensitive(self, store, records):
        _, bakery = records
        assert [r.local_id for r in store.search_records("bakery")] == [bakery.local_id]

    def test_matches_description_and_raw_text(self, store, records):
        acme, bakery = records
        assert [r.local_id for r in store.search_records("store purchase")] == [acme.local_id]
        assert [r.local_id for r in store.search_records("Total: 4.20")] == [bakery.local_id]

    def test_wildcards_are_literal(self, store, records):
        _, bakery = records
        assert [r.local_id for r in store.search_records("100%")] == [bakery.local_id]
        assert store.search_records("_ye") == []

    def test_filters_and_deleted_records(self, store, records):
        acme, bakery = records
        assert store.search_records("bakery", sync_state=SyncState.SYNCED) == []

        synced = synced_record(store, store.get_record(acme.local_id).record, remote_id="doc-7")
        store.delete_record(synced.local_id)

        assert [r.local_id for r in store.search_records("acme")] == [acme.local_id]

    def test_blank_term_lists_everything(self, store, records):
        assert len(store.search_records("  ")) == 2


class TestUpdateFields:
    """Tests for user corrections."""

    def test_correction_bumps_revision_and_enqueues(self, store, extracted_record):
        record = synced_record(store, extracted_record)

        updated = store.update_fields(record.local_id, amount="50.00", counterparty="Acme Corp")

        assert updated.revision == record.revision + 1
        assert updated.sync_state == SyncState.PENDING
        assert updated.record.amount == Decimal("50.00")
        assert updated.record.counterparty == "Acme Corp"
        assert updated.remote_id == "doc-1"
        ops = store.list_ops(record.local_id)
        assert [(o.kind, o.revision) for o in ops] == [(SyncOpKind.UPSERT, updated.revision)]

    def test_correction_completes_needs_review_record(self, store, extracted_record):
        extracted_record.counterparty = None
        extracted_record.validation_status = ValidationStatus.NEEDS_REVIEW
        record = store.insert_record(extracted_record)

        updated = store.update_fields(record.local_id, counterparty="Acme")

        assert updated.record.validation_status == ValidationStatus.VALID
        assert updated.record.confidence == 1.0

    def test_unknown_field_rejected(self, store, extracted_record):
        record = store.insert_record(extracted_record)
        with pytest.raises(ValueError, match="not editable"):
            store.update_fields(record.local_id, revision=9)

    def test_bad_value_rejected_without_change(self, store, extracted_record):
        record = store.insert_record(extracted_record)

        with pytest.raises(ValueError, match="amount"):
            store.update_fields(record.local_id, amount="lots")

        assert store.get_record(record.local_id).revision == 1

    def test_audit_trail(self, store, extracted_record):
        record = store.insert_record(extracted_record)
        store.update_fields(record.local_id, category="dining")

        events = [e["event"] for e in store.get_audit_trail(record.local_id)]

        assert events == ["created", "corrected"]


class TestDeletion:
    """Tests for deletion and purge."""

    def test_never_synced_record_is_purged(self, store, extracted_record):
        record = store.insert_record(extracted_record)

        assert store.delete_record(record.local_id) is None
        assert store.get_record(record.local_id, include_deleted=True) is None
        assert store.list_ops() == []

    def test_synced_record_waits_for_remote(self, store, extracted_record):
        record = synced_record(store, extracted_record)

        deleted = store.delete_record(record.local_id)

        assert deleted.sync_state == SyncState.DELETED_PENDING
        assert store.get_record(record.local_id) is None
        assert store.get_record(record.local_id, include_deleted=True) is not None
        assert [o.kind for o in store.list_ops(record.local_id)] == [SyncOpKind.DELETE]

    def test_record_with_push_in_flight_waits_for_remote(self, store, extracted_record):
        record = store.insert_record(extracted_record)
        [op] = store.next_ready_ops()
        store.claim_op(op.seq)

        deleted = store.delete_record(record.local_id)

        assert deleted.sync_state == SyncState.DELETED_PENDING
        assert [(o.kind, o.status) for o in store.list_ops(record.local_id)] == [
            (SyncOpKind.UPSERT, SyncOpStatus.IN_FLIGHT),
            (SyncOpKind.DELETE, SyncOpStatus.QUEUED),
        ]

    def test_deleting_twice_raises(self, store, extracted_record):
        record = synced_record(store, extracted_record)
        store.delete_record(record.local_id)

        with pytest.raises(RecordNotFoundError):
            store.delete_record(record.local_id)


class TestSyncQueue:
    """Tests for the durable sync queue."""

    def test_only_head_op_per_record_is_ready(self, store, extracted_record):
        record = store.insert_record(extracted_record)
        store.update_fields(record.local_id, amount="43.00")

        ready = store.next_ready_ops()
        assert [o.revision for o in ready] == [1]

        assert store.claim_op(ready[0].seq) is True
        assert store.next_ready_ops() == []

        store.complete_op(ready[0].seq)
        assert [o.revision for o in store.next_ready_ops()] == [2]

    def test_claim_is_exclusive(self, store, extracted_record):
        store.insert_record(extracted_record)
        [op] = store.next_ready_ops()

        assert store.claim_op(op.seq) is True
        assert store.claim_op(op.seq) is False

    def test_records_are_independent(self, store, extracted_record):
        store.insert_record(extracted_record)
        store.insert_record(extracted_record)

        assert len(store.next_ready_ops()) == 2

    def test_duplicate_enqueue_is_ignored(self, store, extracted_record):
        record = store.insert_record(extracted_record)

        assert store.enqueue_sync(record) is None
        assert len(store.list_ops(record.local_id)) == 1

    def test_enqueue_for_synced_record_is_noop(self, store, extracted_record):
        record = synced_record(store, extracted_record)
        assert store.enqueue_sync(record) is None

    def test_rescheduled_op_waits(self, store, extracted_record):
        store.insert_record(extracted_record)
        [op] = store.next_ready_ops()
        store.claim_op(op.seq)

        attempts = store.reschedule_op(op.seq, FAR_FUTURE, "HTTP 503")

        assert attempts == 1
        assert store.next_ready_ops() == []
        assert store.next_due_at() == FAR_FUTURE

    def test_reschedule_without_counting(self, store, extracted_record):
        store.insert_record(extracted_record)
        [op] = store.next_ready_ops()
        store.claim_op(op.seq)

        assert store.reschedule_op(op.seq, None, "offline", count_attempt=False) == 0
        assert len(store.next_ready_ops()) == 1

    def test_failed_op_does_not_block_later_ops(self, store, extracted_record):
        record = store.insert_record(extracted_record)
        store.update_fields(record.local_id, amount="43.00")
        [op] = store.next_ready_ops()
        store.claim_op(op.seq)

        failed = store.fail_op_permanently(op.seq, "HTTP 400")

        assert failed.status == SyncOpStatus.FAILED_PERMANENT
        assert store.get_record(record.local_id).last_sync_error == "HTTP 400"
        assert [o.revision for o in store.next_ready_ops()] == [2]
        assert store.list_failed_ops() == [failed]

    def test_retry_failed_ops(self, store, extracted_record):
        record = store.insert_record(extracted_record)
        [op] = store.next_ready_ops()
        store.claim_op(op.seq)
        store.fail_op_permanently(op.seq, "HTTP 400")

        assert store.retry_failed_ops(record.local_id) == 1

        [requeued] = store.next_ready_ops()
        assert requeued.attempts == 0
        assert store.get_record(record.local_id).last_sync_error is None

    def test_release_in_flight(self, store, extracted_record):
        store.insert_record(extracted_record)
        [op] = store.next_ready_ops()
        store.claim_op(op.seq)

        assert store.release_in_flight() == 1
        assert [o.seq for o in store.next_ready_ops()] == [op.seq]


class TestSyncOutcomes:
    """Tests for mark_synced and apply_remote."""

    def test_mark_synced(self, store, extracted_record):
        record = synced_record(store, extracted_record)

        assert record.sync_state == SyncState.SYNCED
        assert record.remote_id == "doc-1"
        assert record.remote_revision == 1

    def test_mark_synced_keeps_newer_edit_pending(self, store, extracted_record):
        record = store.insert_record(extracted_record)
        store.update_fields(record.local_id, amount="43.00")

        after = store.mark_synced(record.local_id, 1, remote_doc())

        assert after.sync_state == SyncState.PENDING
        assert after.remote_id == "doc-1"

    def test_remote_id_is_immutable(self, store, extracted_record):
        record = synced_record(store, extracted_record)
        conn = store._get_connection()
        try:
            with pytest.raises(sqlite3.DatabaseError, match="immutable"):
                conn.execute(
                    "UPDATE records SET remote_id = 'doc-2' WHERE local_id = ?", (record.local_id,)
                )
        finally:
            conn.close()

    def test_revision_never_decreases(self, store, extracted_record):
        record = store.insert_record(extracted_record)
        store.update_fields(record.local_id, amount="43.00")
        conn = store._get_connection()
        try:
            with pytest.raises(sqlite3.DatabaseError, match="revision"):
                conn.execute(
                    "UPDATE records SET revision = 1 WHERE local_id = ?", (record.local_id,)
                )
        finally:
            conn.close()

    def test_unknown_remote_document_is_created(self, store):
        outcome = store.apply_remote(remote_doc("doc-9", 3, local_id="other-device-1"))

        assert outcome == ApplyOutcome.CREATED
        record = store.get_record("other-device-1")
        assert record.sync_state == SyncState.SYNCED
        assert record.remote_revision == 3
        assert store.list_ops() == []

    def test_synced_record_adopts_remote(self, store, extracted_record):
        record = synced_record(store, extracted_record)

        outcome = store.apply_remote(remote_doc("doc-1", 2, FAR_FUTURE, amount="99.99"))

        assert outcome == ApplyOutcome.ADOPTED_REMOTE
        updated = store.get_record(record.local_id)
        assert updated.record.amount == Decimal("99.99")
        assert updated.revision == record.revision + 1
        assert updated.sync_state == SyncState.SYNCED

    def test_seen_revision_is_unchanged(self, store, extracted_record):
        synced_record(store, extracted_record)
        assert store.apply_remote(remote_doc("doc-1", 1)) == ApplyOutcome.UNCHANGED

    def test_tombstone_purges_pending_edits(self, store, extracted_record):
        record = synced_record(store, extracted_record)
        store.update_fields(record.local_id, amount="43.00")

        outcome = store.apply_remote(remote_doc("doc-1", 2, deleted=True))

        assert outcome == ApplyOutcome.PURGED
        assert store.get_record(record.local_id, include_deleted=True) is None
        assert store.list_ops(record.local_id) == []

    def test_newer_local_edit_kept_under_timestamp_policy(self, store, extracted_record):
        record = synced_record(store, extracted_record)
        store.update_fields(record.local_id, amount="43.00")

        outcome = store.apply_remote(remote_doc("doc-1", 2, FAR_PAST, amount="99.99"))

        assert outcome == ApplyOutcome.KEPT_LOCAL
        kept = store.get_record(record.local_id)
        assert kept.record.amount == Decimal("43.00")
        assert kept.remote_revision == 2
        assert kept.sync_state == SyncState.PENDING

    def test_newer_remote_edit_wins_under_timestamp_policy(self, store, extracted_record):
        record = synced_record(store, extracted_record)
        store.update_fields(record.local_id, amount="43.00")

        outcome = store.apply_remote(remote_doc("doc-1", 2, FAR_FUTURE, amount="99.99"))

        assert outcome == ApplyOutcome.ADOPTED_REMOTE
        assert store.get_record(record.local_id).record.amount == Decimal("99.99")
        assert store.list_ops(record.local_id) == []

    def test_revision_policy_keeps_local_edit_on_tie(self, store, extracted_record):
        record = synced_record(store, extracted_record)
        store.update_fields(record.local_id, counterparty="Local")
        resolver = ConflictResolver(ConflictPolicy.REVISION)

        outcome = store.apply_remote(
            remote_doc("doc-1", 2, FAR_FUTURE, counterparty="Remote"), resolver
        )

        assert outcome == ApplyOutcome.KEPT_LOCAL
        kept = store.get_record(record.local_id)
        assert kept.record.counterparty == "Local"
        assert kept.remote_revision == 2
        assert kept.sync_state == SyncState.PENDING

    def test_revision_policy_adopts_remote_with_more_revisions(self, store, extracted_record):
        record = synced_record(store, extracted_record)
        store.update_fields(record.local_id, counterparty="Local")
        resolver = ConflictResolver(ConflictPolicy.REVISION)

        outcome = store.apply_remote(
            remote_doc("doc-1", 3, FAR_PAST, counterparty="Remote"), resolver
        )

        assert outcome == ApplyOutcome.ADOPTED_REMOTE
        assert store.get_record(record.local_id).record.counterparty == "Remote"
        assert store.list_ops(record.local_id) == []

    def test_local_deletion_is_kept(self, store, extracted_record):
        record = synced_record(store, extracted_record)
        store.delete_record(record.local_id)

        outcome = store.apply_remote(remote_doc("doc-1", 2, FAR_FUTURE, amount="99.99"))

        assert outcome == ApplyOutcome.KEPT_LOCAL
        assert store.get_record(record.local_id, include_deleted=True).is_deleted


class TestMetaAndStats:
    """Tests for sync metadata and statistics."""

    def test_meta_round_trip(self, store):
        assert store.get_meta("pull_cursor") is None
        store.set_meta("pull_cursor", "2024-03-01T00:00:00.000000Z")
        store.set_meta("pull_cursor", "2024-03-02T00:00:00.000000Z")
        assert store.get_meta("pull_cursor") == "2024-03-02T00:00:00.000000Z"

    def test_stats(self, store, extracted_record):
        synced_record(store, extracted_record)
        extracted_record.validation_status = ValidationStatus.NEEDS_REVIEW
        store.insert_record(extracted_record)

        stats = store.get_stats()

        assert stats["records_total"] == 2
        assert stats["records_by_state"]["synced"] == 1
        assert stats["records_by_state"]["pending"] == 1
        assert stats["needs_review"] == 1
        assert stats["ops_pending"] == 1
        assert stats["ops_failed"] == 0
