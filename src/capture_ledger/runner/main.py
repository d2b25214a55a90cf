"""
CLI main entry point.
"""

import argparse
import json
import logging
import sys
import time
from pathlib import Path

from ..config import Config, create_default_config, load_config
from ..errors import CaptureLedgerError, RecordNotFoundError, StageError
from ..extraction import ExtractionEngine
from ..imaging import ImageNormalizer
from ..ocr import OcrAdapter, TesseractEngine
from ..pipeline import PipelineCoordinator, ProgressEvent
from ..remote_client import RemoteStoreClient
from ..schemas.records import CapturedImage, PersistedRecord, SyncState, ValidationStatus
from ..state_store import EDITABLE_FIELDS, StateStore
from ..sync import SyncEngine

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def create_cli() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="capture-ledger",
        description="Capture receipts and invoices offline, extract records, sync them",
    )

    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=Path("config.yaml"),
        help="Path to config file (default: config.yaml)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # init-config command
    init_parser = subparsers.add_parser("init-config", help="Write a default config file")
    init_parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite an existing config file",
    )

    # capture command
    capture_parser = subparsers.add_parser("capture", help="Capture one or more images")
    capture_parser.add_argument("files", nargs="+", type=Path, help="Image files to capture")
    capture_parser.add_argument(
        "--orientation",
        type=int,
        default=1,
        help="Device orientation: EXIF code 1-8 or degrees 0/90/180/270 (default: 1)",
    )
    capture_parser.add_argument(
        "--type",
        dest="record_type",
        type=str,
        default="receipt",
        choices=["receipt", "invoice", "bill"],
        help="Record type to extract (default: receipt)",
    )
    capture_parser.add_argument(
        "--no-sync",
        action="store_true",
        help="Only store locally, do not push after capturing",
    )

    # list command
    list_parser = subparsers.add_parser("list", help="List stored records")
    list_parser.add_argument(
        "--state",
        type=str,
        choices=[s.value for s in SyncState if s != SyncState.DELETED_PENDING],
        help="Filter by sync state",
    )
    list_parser.add_argument(
        "--status",
        type=str,
        choices=[s.value for s in ValidationStatus],
        help="Filter by validation status",
    )
    list_parser.add_argument(
        "--search",
        type=str,
        metavar="TERM",
        help="Only records whose counterparty, description or OCR text contains TERM",
    )
    list_parser.add_argument(
        "--limit",
        type=int,
        default=50,
        help="Maximum records to list (default: 50)",
    )

    # show command
    show_parser = subparsers.add_parser("show", help="Show one record")
    show_parser.add_argument("local_id", type=str)
    show_parser.add_argument("--json", action="store_true", help="Print as JSON")
    show_parser.add_argument("--audit", action="store_true", help="Include the audit trail")

    # edit command
    edit_parser = subparsers.add_parser("edit", help="Correct fields of a record")
    edit_parser.add_argument("local_id", type=str)
    for name in EDITABLE_FIELDS:
        edit_parser.add_argument(f"--{name}", type=str, help=f"New {name}")

    # reextract command
    reextract_parser = subparsers.add_parser(
        "reextract", help="Re-run extraction on a stored record's text"
    )
    reextract_parser.add_argument("local_id", type=str)

    # delete command
    delete_parser = subparsers.add_parser("delete", help="Delete a record")
    delete_parser.add_argument("local_id", type=str)

    # sync command
    sync_parser = subparsers.add_parser("sync", help="Push pending changes and pull remote ones")
    sync_parser.add_argument(
        "--watch",
        action="store_true",
        help="Keep syncing in the background until interrupted",
    )
    sync_parser.add_argument(
        "--pull",
        dest="pull",
        action="store_true",
        default=None,
        help="Pull remote changes after pushing (default: from config)",
    )
    sync_parser.add_argument(
        "--no-pull",
        dest="pull",
        action="store_false",
        help="Only push local changes",
    )

    # retry-failed command
    retry_parser = subparsers.add_parser(
        "retry-failed", help="Requeue sync ops that exhausted their retries"
    )
    retry_parser.add_argument("local_id", type=str, nargs="?", help="Only this record")

    # status command
    subparsers.add_parser("status", help="Show store and sync status")

    return parser


def _build_store(config: Config) -> StateStore:
    return StateStore(config.state_db_path)


def _build_sync_engine(config: Config, store: StateStore) -> SyncEngine:
    client = RemoteStoreClient(
        base_url=config.remote.base_url,
        token=config.remote.token,
        timeout=config.remote.timeout_seconds,
        max_retries=config.remote.max_retries,
    )
    return SyncEngine(store, client, config.sync)


def _build_coordinator(
    config: Config, store: StateStore, sync_engine: SyncEngine | None
) -> PipelineCoordinator:
    engine = TesseractEngine(
        tesseract_cmd=config.ocr.tesseract_cmd,
        language=config.ocr.language,
        psm=config.ocr.psm,
    )
    return PipelineCoordinator(
        normalizer=ImageNormalizer(config.imaging),
        ocr=OcrAdapter(engine, config.ocr),
        extractor=ExtractionEngine(config.extraction),
        store=store,
        config=config.pipeline,
        sync_engine=sync_engine,
    )


def _print_record(record: PersistedRecord) -> None:
    r = record.record
    amount = f"{r.amount} {r.currency or ''}".strip() if r.amount is not None else "-"
    print(
        f"  [{record.local_id}] {r.date or '----------'}  {amount:>14}  "
        f"{(r.counterparty or '-')[:28]:<28}  {r.category.value:<10}  "
        f"{r.validation_status.value:<12}  {record.sync_state.value}"
    )


def cmd_init_config(config_path: Path, force: bool) -> int:
    """Write a default config file."""
    if config_path.exists() and not force:
        print(f"❌ {config_path} already exists (use --force to overwrite)")
        return 1
    create_default_config(config_path)
    print(f"✓ Wrote default config to {config_path}")
    return 0


def cmd_capture(
    config: Config,
    files: list[Path],
    orientation: int,
    record_type: str,
    no_sync: bool,
) -> int:
    """Capture image files through the full pipeline."""
    store = _build_store(config)
    sync_engine = None if no_sync else _build_sync_engine(config, store)
    coordinator = _build_coordinator(config, store, sync_engine)

    def on_progress(event: ProgressEvent) -> None:
        logger.debug("[%s] %s %.0f%%", event.capture_id, event.stage.value, event.fraction * 100)

    handles = []
    for path in files:
        try:
            data = path.read_bytes()
        except OSError as e:
            print(f"  ❌ {path}: {e}")
            continue
        image = CapturedImage(data=data, orientation=orientation, source_name=path.name)
        handle = coordinator.submit(image, record_type=record_type)
        handle.subscribe(on_progress)
        handles.append((path, handle))

    failures = 0
    try:
        for path, handle in handles:
            try:
                result = handle.result()
            except StageError as e:
                failures += 1
                retry = " (retryable)" if e.retryable else ""
                print(f"  ❌ {path.name}: {e}{retry}")
                continue

            r = result.record.record
            marker = "⚠️ " if result.degraded else "📄"
            print(f"  {marker} {path.name} → {result.local_id}")
            print(f"     → Amount: {r.amount} {r.currency or ''}")
            print(f"     → Date: {r.date}")
            print(f"     → Counterparty: {r.counterparty}")
            print(f"     → Confidence: {r.confidence:.0%} ({r.validation_status.value})")
            if result.degraded and result.error is not None:
                print(f"     → Degraded: {result.error}")
    finally:
        coordinator.close()

    if sync_engine is not None and len(handles) > failures:
        sync_result = sync_engine.sync_now(pull=False)
        if sync_result.offline:
            print("\n📴 Remote store unreachable, records stay queued for sync")
        else:
            print(f"\n☁️  Pushed {sync_result.pushed} record(s)")

    print(f"\n✓ Captured: {len(handles) - failures}, Failed: {failures}")
    return 0 if failures == 0 else 1


def cmd_list(
    config: Config,
    state: str | None,
    status: str | None,
    limit: int,
    search: str | None = None,
) -> int:
    """List stored records, optionally filtered by a search term."""
    store = _build_store(config)
    filters = {
        "sync_state": SyncState(state) if state else None,
        "validation_status": ValidationStatus(status) if status else None,
        "limit": limit,
    }
    if search:
        records = store.search_records(search, **filters)
    else:
        records = store.list_records(**filters)
    if not records:
        print(f"No records matching '{search}'" if search else "No records")
        return 0
    for record in records:
        _print_record(record)
    print(f"\n{len(records)} record(s)")
    return 0


def cmd_show(config: Config, local_id: str, as_json: bool, audit: bool) -> int:
    """Show one record."""
    store = _build_store(config)
    record = store.get_record(local_id)
    if record is None:
        print(f"❌ Record {local_id} not found")
        return 1

    if as_json:
        payload = {
            "local_id": record.local_id,
            "sync_state": record.sync_state.value,
            "revision": record.revision,
            "remote_id": record.remote_id,
            "remote_revision": record.remote_revision,
            "last_sync_error": record.last_sync_error,
            "created_at": record.created_at,
            "updated_at": record.updated_at,
            "record": record.record.to_dict(),
        }
        if audit:
            payload["audit"] = store.get_audit_trail(local_id)
        print(json.dumps(payload, indent=2))
        return 0

    r = record.record
    print(f"\n📄 Record {record.local_id}")
    print("=" * 40)
    print(f"  Type:          {r.record_type}")
    print(f"  Amount:        {r.amount} {r.currency or ''}")
    print(f"  Date:          {r.date}")
    print(f"  Counterparty:  {r.counterparty}")
    print(f"  Category:      {r.category.value}")
    print(f"  Description:   {r.description or ''}")
    print(f"  Confidence:    {r.confidence:.0%}")
    print(f"  Validation:    {r.validation_status.value}")
    for issue in r.validation_errors:
        print(f"                 - {issue}")
    print(f"  Sync state:    {record.sync_state.value} (revision {record.revision})")
    print(f"  Remote id:     {record.remote_id or '-'}")
    if record.last_sync_error:
        print(f"  Sync error:    {record.last_sync_error}")
    if audit:
        print("\n  History:")
        for entry in store.get_audit_trail(local_id):
            print(f"    {entry['created_at']}  r{entry['revision'] or '-'}  {entry['event']}")
    print()
    return 0


def cmd_edit(config: Config, local_id: str, changes: dict[str, str]) -> int:
    """Apply a user correction."""
    if not changes:
        print("⚠️  Nothing to change")
        return 1
    store = _build_store(config)
    try:
        record = store.update_fields(local_id, **changes)
    except RecordNotFoundError:
        print(f"❌ Record {local_id} not found")
        return 1
    except ValueError as e:
        print(f"❌ Invalid value: {e}")
        return 1
    print(f"✓ Updated {local_id} (revision {record.revision})")
    _print_record(record)
    return 0


def cmd_reextract(config: Config, local_id: str) -> int:
    """Re-run extraction on a stored record."""
    store = _build_store(config)
    coordinator = _build_coordinator(config, store, None)
    try:
        record = coordinator.reextract(local_id)
    except RecordNotFoundError:
        print(f"❌ Record {local_id} not found")
        return 1
    except StageError as e:
        print(f"❌ Re-extraction failed: {e}")
        return 1
    finally:
        coordinator.close()
    print(f"✓ Re-extracted {local_id}")
    _print_record(record)
    return 0


def cmd_delete(config: Config, local_id: str) -> int:
    """Delete a record."""
    store = _build_store(config)
    try:
        record = store.delete_record(local_id)
    except RecordNotFoundError:
        print(f"❌ Record {local_id} not found")
        return 1
    if record is None:
        print(f"✓ Deleted {local_id}")
    else:
        print(f"✓ Deleted {local_id} (remote deletion pending)")
    return 0


def cmd_sync(config: Config, watch: bool, pull: bool | None) -> int:
    """Push pending changes and pull remote ones."""
    store = _build_store(config)
    engine = _build_sync_engine(config, store)
    engine.on_permanent_failure(
        lambda op, error: print(f"  ❌ {op.local_id}: gave up after {op.attempts} attempts: {error}")
    )

    if watch:
        if pull is not None:
            engine.config.pull_enabled = pull
        print("🔄 Syncing in the background (Ctrl+C to stop)...")
        engine.start()
        try:
            while True:
                time.sleep(1)
        except KeyboardInterrupt:
            print("\n✓ Stopping sync")
        finally:
            engine.stop()
        return 0

    store.release_in_flight()
    print("🔄 Syncing...")
    result = engine.sync_now(pull=pull)

    print()
    print("📊 Sync Results")
    print("=" * 40)
    print(f"  Pushed:       {result.pushed}")
    print(f"  Deleted:      {result.deleted}")
    print(f"  Superseded:   {result.superseded}")
    print(f"  Conflicts:    {result.conflicts}")
    print(f"  Purged:       {result.purged}")
    print(f"  Pulled:       {result.pulled}")
    print(f"  Retrying:     {result.retried}")
    print(f"  Failed:       {result.failed}")
    print(f"  Duration:     {result.duration_ms}ms")
    print()

    if result.offline:
        print("📴 Remote store unreachable, changes stay queued")
        return 1
    if result.errors:
        print("⚠️  Errors encountered:")
        for error in result.errors:
            print(f"   - {error}")
        return 1
    print("✓ Sync completed successfully")
    return 0


def cmd_retry_failed(config: Config, local_id: str | None) -> int:
    """Requeue permanently failed sync ops."""
    store = _build_store(config)
    count = store.retry_failed_ops(local_id)
    print(f"✓ Requeued {count} failed sync op(s)")
    return 0


def cmd_status(config: Config) -> int:
    """Show store and sync status."""
    store = _build_store(config)
    stats = store.get_stats()
    states = stats["records_by_state"]

    print("\n📊 Capture Ledger Status")
    print("=" * 40)
    print(f"  Records total:        {stats['records_total']}")
    print(f"  Needs review:         {stats['needs_review']}")
    print(f"  Pending sync:         {states.get(SyncState.PENDING.value, 0)}")
    print(f"  Synced:               {states.get(SyncState.SYNCED.value, 0)}")
    print(f"  Conflicts:            {states.get(SyncState.CONFLICT.value, 0)}")
    print(f"  Deletions pending:    {states.get(SyncState.DELETED_PENDING.value, 0)}")
    print(f"  Sync ops queued:      {stats['ops_pending']}")
    print(f"  Sync ops failed:      {stats['ops_failed']}")
    print(f"  Last sync:            {store.get_meta('last_sync_at') or 'never'}")
    print(f"  Pull cursor:          {store.get_meta('pull_cursor') or 'none'}")
    print()

    for op in store.list_failed_ops():
        print(f"  ❌ {op.local_id} ({op.kind.value} r{op.revision}): {op.last_error}")

    return 0


def main(args: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_cli()
    parsed = parser.parse_args(args)

    setup_logging(parsed.verbose)

    if not parsed.command:
        parser.print_help()
        return 1

    if parsed.command == "init-config":
        return cmd_init_config(parsed.config, parsed.force)

    # Load config
    try:
        config = load_config(parsed.config)
        config.ensure_valid()
    except (OSError, ValueError, CaptureLedgerError) as e:
        print(f"❌ Failed to load config: {e}")
        return 1

    # Route to command
    if parsed.command == "capture":
        return cmd_capture(
            config, parsed.files, parsed.orientation, parsed.record_type, parsed.no_sync
        )
    elif parsed.command == "list":
        return cmd_list(config, parsed.state, parsed.status, parsed.limit, parsed.search)
    elif parsed.command == "show":
        return cmd_show(config, parsed.local_id, parsed.json, parsed.audit)
    elif parsed.command == "edit":
        changes = {
            name: getattr(parsed, name)
            for name in EDITABLE_FIELDS
            if getattr(parsed, name) is not None
        }
        return cmd_edit(config, parsed.local_id, changes)
    elif parsed.command == "reextract":
        return cmd_reextract(config, parsed.local_id)
    elif parsed.command == "delete":
        return cmd_delete(config, parsed.local_id)
    elif parsed.command == "sync":
        return cmd_sync(config, parsed.watch, parsed.pull)
    elif parsed.command == "retry-failed":
        return cmd_retry_failed(config, parsed.local_id)
    elif parsed.command == "status":
        return cmd_status(config)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
