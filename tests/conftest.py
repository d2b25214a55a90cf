"""Test fixtures and utilities."""

import io
import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from PIL import Image, ImageDraw

from capture_ledger.config import Config
from capture_ledger.ocr.base import OcrEngine
from capture_ledger.remote_client import (
    RemoteAPIError,
    RemoteConflictError,
    RemoteConnectionError,
    RemoteGoneError,
)
from capture_ledger.schemas.records import (
    BoundingBox,
    Category,
    ExtractedRecord,
    RemoteDocument,
    TextBlock,
    ValidationStatus,
    format_timestamp,
)
from capture_ledger.state_store import StateStore

# Sample OCR text for testing
SAMPLE_RECEIPT_TEXT = "ACME STORE\nTotal: 42.50\n2024-03-01\nThank you"

SAMPLE_MODEL_PAYLOAD = {
    "amount": 42.50,
    "date": "2024-03-01",
    "counterparty": "Acme",
    "category": "shopping",
    "currency": "EUR",
    "description": "Store purchase",
    "confidence": 0.95,
    "is_document": True,
}


class FakeOcrEngine(OcrEngine):
    """OCR engine returning fixed lines; optionally slow or failing."""

    def __init__(self, text=SAMPLE_RECEIPT_TEXT, confidence=0.92, delay=0.0, error=None):
        self.text = text
        self.confidence = confidence
        self.delay = delay
        self.error = error
        self.calls = 0

    @property
    def name(self) -> str:
        return "fake"

    def is_available(self) -> bool:
        return True

    def recognize_blocks(self, image):
        self.calls += 1
        if self.delay:
            threading.Event().wait(self.delay)
        if self.error is not None:
            raise self.error
        return [
            TextBlock(
                text=line,
                confidence=self.confidence,
                bbox=BoundingBox(0, i * 20, 100, 18),
                line_num=i,
            )
            for i, line in enumerate(self.text.splitlines())
            if line.strip()
        ]


class FakeRemote:
    """In-memory remote document store with the RemoteStoreClient interface.

    Set ``online = False`` to simulate a partition; push exceptions onto
    ``failures`` to make the next write calls fail.
    """

    def __init__(self):
        self.documents: dict[str, RemoteDocument] = {}
        self.idempotency: dict[str, str] = {}
        self.online = True
        self.failures: list[Exception] = []
        self.calls: list[tuple[str, str]] = []
        self._lock = threading.RLock()
        self._next_id = 1
        self._last_ts = datetime.now(timezone.utc) - timedelta(seconds=1)

    def _timestamp(self) -> str:
        now = datetime.now(timezone.utc)
        if now <= self._last_ts:
            now = self._last_ts + timedelta(microseconds=1)
        self._last_ts = now
        return format_timestamp(now)

    def _check(self, method: str, target: str) -> None:
        self.calls.append((method, target))
        if not self.online:
            raise RemoteConnectionError("connection refused")
        if self.failures:
            raise self.failures.pop(0)

    def writes(self) -> list[tuple[str, str]]:
        return [c for c in self.calls if c[0] in ("create", "update", "delete")]

    def test_connection(self) -> bool:
        return self.online

    def create_document(self, data, idempotency_key):
        with self._lock:
            self._check("create", idempotency_key)
            if idempotency_key in self.idempotency:
                return self.documents[self.idempotency[idempotency_key]]
            remote_id = f"doc-{self._next_id}"
            self._next_id += 1
            doc = RemoteDocument(remote_id, 1, self._timestamp(), dict(data))
            self.documents[remote_id] = doc
            self.idempotency[idempotency_key] = remote_id
            return doc

    def update_document(self, remote_id, data, expected_revision):
        with self._lock:
            self._check("update", remote_id)
            doc = self.documents.get(remote_id)
            if doc is None:
                raise RemoteAPIError(404, "not found")
            if doc.deleted:
                raise RemoteGoneError("document deleted")
            if expected_revision is not None and expected_revision != doc.revision:
                raise RemoteConflictError("stale revision", current=doc)
            new = RemoteDocument(remote_id, doc.revision + 1, self._timestamp(), dict(data))
            self.documents[remote_id] = new
            return new

    def delete_document(self, remote_id, expected_revision=None):
        with self._lock:
            self._check("delete", remote_id)
            doc = self.documents.get(remote_id)
            if doc is None or doc.deleted:
                return False
            if expected_revision is not None and expected_revision != doc.revision:
                raise RemoteConflictError("stale revision", current=doc)
            self.documents[remote_id] = replace(
                doc, revision=doc.revision + 1, updated_at=self._timestamp(), deleted=True
            )
            return True

    def get_document(self, remote_id):
        with self._lock:
            self._check("get", remote_id)
            return self.documents.get(remote_id)

    def list_changes(self, updated_since=None, limit=100):
        with self._lock:
            self._check("list", updated_since or "")
            docs = sorted(self.documents.values(), key=lambda d: d.updated_at)
            if updated_since:
                docs = [d for d in docs if d.updated_at > updated_since]
            page = docs[:limit]
            cursor = page[-1].updated_at if page else updated_since
            return page, cursor

    # Simulated edits from another device

    def remote_edit(self, remote_id: str, **changes) -> RemoteDocument:
        with self._lock:
            doc = self.documents[remote_id]
            new = RemoteDocument(
                remote_id, doc.revision + 1, self._timestamp(), {**doc.data, **changes}
            )
            self.documents[remote_id] = new
            return new

    def remote_delete(self, remote_id: str) -> RemoteDocument:
        with self._lock:
            doc = self.documents[remote_id]
            new = replace(doc, revision=doc.revision + 1, updated_at=self._timestamp(), deleted=True)
            self.documents[remote_id] = new
            return new


def make_png(width=400, height=300, color="white", text_box=True) -> bytes:
    """Render a simple document-like PNG."""
    img = Image.new("RGB", (width, height), color)
    if text_box:
        draw = ImageDraw.Draw(img)
        draw.rectangle([width // 4, height // 4, width * 3 // 4, height // 2], fill="black")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def model_response(content: str) -> MagicMock:
    """httpx response mock carrying a chat completion."""
    response = MagicMock()
    response.json.return_value = {"message": {"role": "assistant", "content": content}}
    response.raise_for_status.return_value = None
    return response


@pytest.fixture
def temp_db(tmp_path) -> Path:
    """Temporary database path for testing."""
    return tmp_path / "test_state.db"


@pytest.fixture
def store(temp_db) -> StateStore:
    """Fresh state store."""
    return StateStore(temp_db)


@pytest.fixture
def config(temp_db) -> Config:
    """Config with fast retry timings."""
    cfg = Config(state_db_path=temp_db)
    cfg.sync.backoff_base_seconds = 0.0
    cfg.sync.backoff_cap_seconds = 0.0
    cfg.sync.max_attempts = 3
    cfg.sync.poll_interval_seconds = 0.05
    return cfg


@pytest.fixture
def fake_remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def fake_ocr_engine() -> FakeOcrEngine:
    return FakeOcrEngine()


@pytest.fixture
def png_bytes() -> bytes:
    return make_png()


@pytest.fixture
def extracted_record() -> ExtractedRecord:
    """A valid extracted receipt."""
    return ExtractedRecord(
        amount=Decimal("42.50"),
        date="2024-03-01",
        counterparty="Acme",
        category=Category.SHOPPING,
        currency="EUR",
        description="Store purchase",
        ocr_fingerprint="f" * 32,
        raw_text=SAMPLE_RECEIPT_TEXT,
        ocr_confidence=0.92,
        model="test-model",
        prompt_version="v1.1",
        confidence=0.93,
        validation_status=ValidationStatus.VALID,
    )
