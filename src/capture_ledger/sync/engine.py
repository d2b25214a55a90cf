"""
Sync engine: drains the durable sync queue to the remote store.

Ops are taken head-first per record, so writes for one record reach the
remote in order while different records are pushed in parallel. Every op
is re-evaluated against the record's current revision before it is sent;
stale ops are dropped instead of replayed.

Failure handling:
- Connection errors put the engine offline. Ops stay queued and keep their
  retry budget; the background loop probes the remote and resumes.
- Other transient errors (5xx, 429, timeouts) are retried with jittered
  exponential backoff until the budget is spent, then failed permanently.
- Stale-revision rejections are merged via the conflict resolver.
- Remote tombstones purge the local record.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from ..remote_client import (
    RemoteConflictError,
    RemoteConnectionError,
    RemoteGoneError,
    RemoteStoreClient,
    RemoteStoreError,
)
from ..schemas.records import (
    RemoteDocument,
    SyncOp,
    SyncOpKind,
    SyncState,
    parse_timestamp,
    utc_now_iso,
)
from ..state_store import ApplyOutcome, StateStore
from .backoff import BackoffPolicy
from .conflict import ConflictResolver

if TYPE_CHECKING:
    from ..config import SyncConfig

logger = logging.getLogger(__name__)

PULL_CURSOR_KEY = "pull_cursor"
LAST_SYNC_KEY = "last_sync_at"

# Safety bound on drain passes per sync_now()
MAX_DRAIN_PASSES = 100

PermanentFailureCallback = Callable[[SyncOp, Exception], None]


@dataclass
class SyncResult:
    """Result of a sync pass."""

    pushed: int = 0
    deleted: int = 0
    superseded: int = 0
    conflicts: int = 0
    purged: int = 0
    retried: int = 0
    failed: int = 0
    pulled: int = 0
    offline: bool = False
    duration_ms: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        """Return True if the pass completed without errors."""
        return not self.errors and not self.offline

    @property
    def processed(self) -> int:
        return self.pushed + self.deleted + self.superseded + self.conflicts + self.purged

    def merge(self, other: SyncResult) -> None:
        """Add another pass's counters into this one."""
        self.pushed += other.pushed
        self.deleted += other.deleted
        self.superseded += other.superseded
        self.conflicts += other.conflicts
        self.purged += other.purged
        self.retried += other.retried
        self.failed += other.failed
        self.pulled += other.pulled
        self.offline = self.offline or other.offline
        self.duration_ms += other.duration_ms
        self.errors.extend(other.errors)


class SyncEngine:
    """
    Pushes queued local changes and pulls remote changes.

    Runs either on demand (drain_once, pull_changes, sync_now) or as a
    background daemon thread (start/stop) that wakes on notify() or after
    the poll interval.
    """

    def __init__(
        self,
        store: StateStore,
        client: RemoteStoreClient,
        config: SyncConfig,
        backoff: BackoffPolicy | None = None,
        resolver: ConflictResolver | None = None,
    ) -> None:
        """Initialize the sync engine.

        Args:
            store: Local state store holding records and the sync queue.
            client: Remote store client.
            config: Sync settings.
            backoff: Retry policy (defaults to one built from config).
            resolver: Conflict resolver (defaults to config.conflict_policy).
        """
        self.store = store
        self.client = client
        self.config = config
        self.backoff = backoff or BackoffPolicy(
            base_seconds=config.backoff_base_seconds,
            cap_seconds=config.backoff_cap_seconds,
            max_attempts=config.max_attempts,
        )
        self.resolver = resolver or ConflictResolver(config.conflict_policy)

        self._online = True
        self._state_lock = threading.Lock()
        self._drain_lock = threading.Lock()
        self._callbacks: list[PermanentFailureCallback] = []

        self._wake = threading.Event()
        self._shutdown = threading.Event()
        self._thread: threading.Thread | None = None

    # Status

    @property
    def online(self) -> bool:
        with self._state_lock:
            return self._online

    def _set_online(self, online: bool, reason: str = "") -> None:
        with self._state_lock:
            changed = self._online != online
            self._online = online
        if changed and online:
            logger.info("Remote store reachable again, resuming sync")
        elif changed:
            logger.warning("Remote store unreachable, sync paused: %s", reason)

    def on_permanent_failure(self, callback: PermanentFailureCallback) -> None:
        """Register a callback fired when an op exhausts its retry budget."""
        self._callbacks.append(callback)

    def _fire_permanent_failure(self, op: SyncOp, error: Exception) -> None:
        for callback in self._callbacks:
            try:
                callback(op, error)
            except Exception:
                logger.exception("Permanent-failure callback raised")

    # Push

    def drain_once(self) -> SyncResult:
        """Process one batch of ready ops (at most one per record).

        Returns:
            SyncResult for this batch. offline=True if the remote could not
            be reached; ops then stay queued untouched.
        """
        start = time.monotonic()
        result = SyncResult()

        with self._drain_lock:
            if not self.online:
                if not self.client.test_connection():
                    result.offline = True
                    return result
                self._set_online(True)

            ops = self.store.next_ready_ops(limit=self.config.batch_size)
            if not ops:
                return result

            logger.debug("Draining %d sync ops", len(ops))
            workers = max(1, min(self.config.max_concurrent, len(ops)))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="sync") as pool:
                outcomes = list(pool.map(self._process_op, ops))

        for op, outcome in zip(ops, outcomes):
            if outcome == "pushed":
                result.pushed += 1
            elif outcome == "deleted":
                result.deleted += 1
            elif outcome == "superseded":
                result.superseded += 1
            elif outcome == "conflict":
                result.conflicts += 1
            elif outcome == "purged":
                result.purged += 1
            elif outcome == "retry":
                result.retried += 1
            elif outcome == "failed":
                result.failed += 1
                result.errors.append(f"op {op.seq} ({op.local_id}): failed permanently")
            elif outcome == "offline":
                result.offline = True

        result.duration_ms = int((time.monotonic() - start) * 1000)
        return result

    def drain(self) -> SyncResult:
        """Drain until no ready ops remain or the remote goes away."""
        result = SyncResult()
        for _ in range(MAX_DRAIN_PASSES):
            batch = self.drain_once()
            result.merge(batch)
            if batch.offline or batch.processed == 0:
                break
        return result

    def _process_op(self, op: SyncOp) -> str:
        if not self.store.claim_op(op.seq):
            return "skipped"

        try:
            if op.kind == SyncOpKind.DELETE:
                return self._push_delete(op)
            return self._push_upsert(op)
        except RemoteConnectionError as e:
            self._set_online(False, str(e))
            self.store.reschedule_op(op.seq, None, str(e), count_attempt=False)
            return "offline"
        except RemoteStoreError as e:
            return self._handle_failure(op, e)
        except Exception as e:
            logger.exception("Unexpected error syncing op %d (%s)", op.seq, op.local_id)
            return self._handle_failure(op, e)

    def _push_upsert(self, op: SyncOp) -> str:
        record = self.store.get_record(op.local_id, include_deleted=True)
        if record is None or record.is_deleted:
            self.store.complete_op(op.seq)
            return "superseded"
        if record.sync_state == SyncState.SYNCED and record.revision >= op.revision:
            # Already pushed by an earlier op
            self.store.complete_op(op.seq)
            return "superseded"
        if self.store.has_newer_op(op.local_id, op.seq):
            self.store.complete_op(op.seq)
            return "superseded"

        payload = record.to_remote_payload()
        try:
            if record.remote_id is None:
                document = self.client.create_document(payload, idempotency_key=record.local_id)
                if document.data.get("updated_at") not in (None, payload["updated_at"]):
                    # Idempotent replay returned an earlier version of this record
                    document = self.client.update_document(
                        document.remote_id, payload, expected_revision=document.revision
                    )
            else:
                document = self.client.update_document(
                    record.remote_id, payload, expected_revision=record.remote_revision
                )
        except RemoteConflictError as e:
            return self._resolve_conflict(op, e)
        except RemoteGoneError:
            self.store.purge_record(op.local_id, "remote tombstone")
            return "purged"

        synced = self.store.mark_synced(op.local_id, record.revision, document)
        if synced is None:
            self.store.complete_op(op.seq)
            if record.remote_id is None:
                # Purged while the create was in flight: the document is an orphan
                logger.info(
                    "Record %s was removed during its first push, deleting remote %s",
                    op.local_id,
                    document.remote_id,
                )
                self.client.delete_document(document.remote_id)
                return "deleted"
            return "purged"
        self.store.complete_op(op.seq)
        logger.info("Pushed record %s revision %d", op.local_id, record.revision)
        return "pushed"

    def _push_delete(self, op: SyncOp) -> str:
        record = self.store.get_record(op.local_id, include_deleted=True)
        if record is None:
            self.store.complete_op(op.seq)
            return "superseded"

        if record.remote_id is not None:
            try:
                self.client.delete_document(
                    record.remote_id, expected_revision=record.remote_revision
                )
            except RemoteConflictError:
                # Remote changed since our last view; the local deletion still wins
                logger.info("Remote %s changed before delete, deleting anyway", record.remote_id)
                self.client.delete_document(record.remote_id)

        self.store.purge_record(op.local_id, "deleted")
        return "deleted"

    def _resolve_conflict(self, op: SyncOp, error: RemoteConflictError) -> str:
        self.store.mark_conflict(op.local_id, str(error))

        current = error.current
        if current is None:
            current = self._fetch_remote(op.local_id)
        if current is None:
            return self._handle_failure(op, error)

        outcome = self.store.apply_remote(current, self.resolver)
        if outcome == ApplyOutcome.UNCHANGED and error.current is not None:
            # The body of the rejection may lag behind the server; ask again
            fetched = self._fetch_remote(op.local_id)
            if fetched is not None:
                outcome = self.store.apply_remote(fetched, self.resolver)

        if outcome == ApplyOutcome.PURGED:
            return "purged"
        if outcome == ApplyOutcome.KEPT_LOCAL:
            attempts = op.attempts + 1
            if self.backoff.exhausted(attempts):
                return self._fail_permanently(op, error)
            # Push again right away against the new remote revision
            self.store.reschedule_op(op.seq, None, str(error), count_attempt=True)
            return "conflict"
        if outcome == ApplyOutcome.ADOPTED_REMOTE:
            self.store.complete_op(op.seq)
            return "conflict"
        if outcome == ApplyOutcome.UNCHANGED:
            # Nothing newer to merge: back to pending and retry the push later
            self.store.clear_conflict(op.local_id)
            attempts = op.attempts + 1
            if self.backoff.exhausted(attempts):
                return self._fail_permanently(op, error)
            self.store.reschedule_op(op.seq, self.backoff.next_attempt_at(attempts), str(error))
            logger.info(
                "Push of %s rejected as stale with no newer remote revision, retry later",
                op.local_id,
            )
            return "retry"
        return self._handle_failure(op, error)

    def _fetch_remote(self, local_id: str) -> RemoteDocument | None:
        record = self.store.get_record(local_id, include_deleted=True)
        if record is None or record.remote_id is None:
            return None
        return self.client.get_document(record.remote_id)

    def _handle_failure(self, op: SyncOp, error: Exception) -> str:
        retryable = getattr(error, "retryable", False)
        attempts = op.attempts + 1
        if not retryable or self.backoff.exhausted(attempts):
            return self._fail_permanently(op, error)

        next_at = self.backoff.next_attempt_at(attempts)
        self.store.reschedule_op(op.seq, next_at, str(error), count_attempt=True)
        logger.info(
            "Sync op %d (%s) failed (attempt %d/%d), retry at %s: %s",
            op.seq,
            op.local_id,
            attempts,
            self.backoff.max_attempts,
            next_at,
            error,
        )
        return "retry"

    def _fail_permanently(self, op: SyncOp, error: Exception) -> str:
        failed = self.store.fail_op_permanently(op.seq, str(error))
        self._fire_permanent_failure(failed or op, error)
        return "failed"

    # Pull

    def pull_changes(self) -> SyncResult:
        """Fetch remote changes since the stored cursor and merge them."""
        start = time.monotonic()
        result = SyncResult()
        cursor = self.store.get_meta(PULL_CURSOR_KEY)

        try:
            while True:
                documents, next_cursor = self.client.list_changes(
                    updated_since=cursor, limit=self.config.batch_size
                )
                for document in documents:
                    try:
                        outcome = self.store.apply_remote(document, self.resolver)
                    except Exception as e:
                        logger.warning("Failed to apply remote %s: %s", document.remote_id, e)
                        result.errors.append(f"remote {document.remote_id}: {e}")
                        continue
                    if outcome in (ApplyOutcome.CREATED, ApplyOutcome.ADOPTED_REMOTE):
                        result.pulled += 1
                    elif outcome == ApplyOutcome.PURGED:
                        result.purged += 1
                    elif outcome == ApplyOutcome.KEPT_LOCAL:
                        result.conflicts += 1

                if not next_cursor or next_cursor == cursor:
                    break
                self.store.set_meta(PULL_CURSOR_KEY, next_cursor)
                cursor = next_cursor
                if len(documents) < self.config.batch_size:
                    break
        except RemoteConnectionError as e:
            self._set_online(False, str(e))
            result.offline = True
        except RemoteStoreError as e:
            logger.warning("Pull failed: %s", e)
            result.errors.append(f"pull: {e}")

        if result.pulled or result.purged:
            logger.info("Pulled %d remote changes (%d tombstones)", result.pulled, result.purged)
        result.duration_ms = int((time.monotonic() - start) * 1000)
        return result

    def sync_now(self, pull: bool | None = None) -> SyncResult:
        """Push everything that is ready, then pull remote changes."""
        result = self.drain()
        if pull is None:
            pull = self.config.pull_enabled
        if pull and not result.offline:
            result.merge(self.pull_changes())
        if not result.offline:
            self.store.set_meta(LAST_SYNC_KEY, utc_now_iso())
        return result

    # Background loop

    def start(self) -> None:
        """Start the background sync thread. Requeues ops left in flight."""
        if self._thread is not None and self._thread.is_alive():
            return
        self.store.release_in_flight()
        self._shutdown.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="sync-engine",
            daemon=True,
        )
        self._thread.start()
        logger.info("Started background sync thread")

    def stop(self, timeout: float | None = 10.0) -> None:
        """Stop the background thread and wait for the current pass."""
        self._shutdown.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Background sync stopped")

    def notify(self) -> None:
        """Wake the background loop (new local changes were enqueued)."""
        self._wake.set()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run_loop(self) -> None:
        while not self._shutdown.is_set():
            self._wake.clear()
            try:
                result = self.sync_now()
                if result.processed or result.failed:
                    logger.info(
                        "Sync pass: %d pushed, %d deleted, %d conflicts, %d failed",
                        result.pushed,
                        result.deleted,
                        result.conflicts,
                        result.failed,
                    )
            except Exception as e:
                logger.error("Error in sync loop: %s", e, exc_info=True)

            self._wake.wait(self._seconds_until_next_pass())

        logger.info("Sync loop stopped")

    def _seconds_until_next_pass(self) -> float:
        interval = float(self.config.poll_interval_seconds)
        if not self.online:
            return interval
        due = self.store.next_due_at()
        if due is None:
            return interval
        due_at = parse_timestamp(due)
        if due_at is None:
            return interval
        remaining = (due_at - datetime.now(timezone.utc)).total_seconds()
        return max(0.05, min(interval, remaining))
