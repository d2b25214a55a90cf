"""
Canonical record types (SSOT).

These dataclasses are THE single source of truth for everything that flows
through the pipeline: capture → normalized image → OCR result → extracted
record → persisted record → sync op. No other module may invent another
record schema; everything maps into/out of these.
"""

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional


def format_timestamp(value: datetime) -> str:
    """Fixed-width ISO timestamp in UTC with microseconds and a Z suffix.

    Fixed width keeps string order equal to time order, which the sync
    queue relies on when comparing due times in SQL.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def utc_now_iso() -> str:
    """Current UTC time as a fixed-width ISO timestamp."""
    return format_timestamp(datetime.now(timezone.utc))


def parse_timestamp(value: str | None) -> Optional[datetime]:
    """Parse an ISO timestamp (Z or offset suffix) into an aware datetime."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class Category(str, Enum):
    """Spending category of an extracted record."""

    GROCERIES = "groceries"
    DINING = "dining"
    TRANSPORT = "transport"
    UTILITIES = "utilities"
    HEALTH = "health"
    SHOPPING = "shopping"
    SERVICES = "services"
    TRAVEL = "travel"
    OTHER = "other"

    @classmethod
    def values(cls) -> list[str]:
        return [c.value for c in cls]


class ValidationStatus(str, Enum):
    """
    Outcome of validating an extracted record.

    VALID: schema-valid and confident enough to use as-is
    NEEDS_REVIEW: usable, but a person should confirm (low confidence or degraded extraction)
    REJECTED: not a financial document, or values fail sanity checks
    """

    VALID = "valid"
    NEEDS_REVIEW = "needs_review"
    REJECTED = "rejected"


class SyncState(str, Enum):
    """Sync state of a persisted record. Exactly one at a time."""

    PENDING = "pending"
    SYNCED = "synced"
    CONFLICT = "conflict"
    DELETED_PENDING = "deleted_pending"


class SyncOpKind(str, Enum):
    """Intent queued for the sync engine."""

    UPSERT = "upsert"
    DELETE = "delete"


class SyncOpStatus(str, Enum):
    """Lifecycle of a queued sync op. Acknowledged ops are removed."""

    QUEUED = "queued"
    IN_FLIGHT = "in_flight"
    FAILED_PERMANENT = "failed_permanent"


@dataclass(frozen=True)
class CapturedImage:
    """Raw camera/image-picker output.

    orientation accepts an EXIF orientation code (1-8) or a clockwise
    rotation in degrees (0, 90, 180, 270).
    """

    data: bytes
    captured_at: str = field(default_factory=utc_now_iso)
    orientation: int = 1
    source_name: Optional[str] = None


@dataclass(frozen=True)
class NormalizedImage:
    """Canonical PNG buffer fed to OCR."""

    data: bytes
    width: int
    height: int
    rotation: int = 0

    @property
    def content_hash(self) -> str:
        """SHA256 of the canonical bytes."""
        return hashlib.sha256(self.data).hexdigest()


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned bounding box in canonical image pixels."""

    x: int
    y: int
    width: int
    height: int


@dataclass(frozen=True)
class TextBlock:
    """One recognized line of text."""

    text: str
    confidence: float
    bbox: BoundingBox
    block_num: int = 0
    line_num: int = 0


@dataclass(frozen=True)
class OcrResult:
    """Ordered, immutable OCR output for one normalized image."""

    blocks: tuple[TextBlock, ...]
    source_hash: str = ""
    engine: str = ""
    recognition_ms: int = 0
    low_confidence_threshold: float = 0.7

    @property
    def text(self) -> str:
        """Recognized text in reading order, one block per line."""
        return "\n".join(b.text for b in self.blocks if b.text)

    @property
    def mean_confidence(self) -> float:
        if not self.blocks:
            return 0.0
        return sum(b.confidence for b in self.blocks) / len(self.blocks)

    @property
    def low_confidence_blocks(self) -> list[TextBlock]:
        return [b for b in self.blocks if b.confidence < self.low_confidence_threshold]

    @property
    def fingerprint(self) -> str:
        """Provenance pointer: hash of the source image hash and recognized text."""
        digest = hashlib.sha256(f"{self.source_hash}\n{self.text}".encode()).hexdigest()
        return digest[:32]

    @property
    def is_empty(self) -> bool:
        return not self.text.strip()


@dataclass
class ExtractedRecord:
    """
    Typed record produced by the extraction engine.

    Mutated only by explicit user correction or re-extraction, both of
    which go through the state store so the revision is bumped.
    """

    amount: Optional[Decimal] = None
    date: Optional[str] = None  # ISO format YYYY-MM-DD
    counterparty: Optional[str] = None
    category: Category = Category.OTHER
    currency: Optional[str] = None
    description: Optional[str] = None
    record_type: str = "receipt"

    # Provenance
    ocr_fingerprint: str = ""
    raw_text: str = ""
    ocr_confidence: float = 0.0
    model: Optional[str] = None
    prompt_version: Optional[str] = None

    # Assessment
    confidence: float = 0.0
    validation_status: ValidationStatus = ValidationStatus.NEEDS_REVIEW
    validation_errors: list[str] = field(default_factory=list)

    def fields_dict(self) -> dict[str, Any]:
        """Business fields as JSON-safe values."""
        return {
            "amount": str(self.amount) if self.amount is not None else None,
            "date": self.date,
            "counterparty": self.counterparty,
            "category": self.category.value,
            "currency": self.currency,
            "description": self.description,
            "record_type": self.record_type,
        }

    def to_dict(self) -> dict[str, Any]:
        """Full record as JSON-safe values."""
        result = self.fields_dict()
        result.update(
            {
                "ocr_fingerprint": self.ocr_fingerprint,
                "raw_text": self.raw_text,
                "ocr_confidence": self.ocr_confidence,
                "model": self.model,
                "prompt_version": self.prompt_version,
                "confidence": self.confidence,
                "validation_status": self.validation_status.value,
                "validation_errors": list(self.validation_errors),
            }
        )
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExtractedRecord":
        amount = data.get("amount")
        try:
            category = Category(data.get("category") or Category.OTHER.value)
        except ValueError:
            category = Category.OTHER
        return cls(
            amount=Decimal(str(amount)) if amount not in (None, "") else None,
            date=data.get("date"),
            counterparty=data.get("counterparty"),
            category=category,
            currency=data.get("currency"),
            description=data.get("description"),
            record_type=data.get("record_type") or "receipt",
            ocr_fingerprint=data.get("ocr_fingerprint") or "",
            raw_text=data.get("raw_text") or "",
            ocr_confidence=float(data.get("ocr_confidence") or 0.0),
            model=data.get("model"),
            prompt_version=data.get("prompt_version"),
            confidence=float(data.get("confidence") or 0.0),
            validation_status=ValidationStatus(
                data.get("validation_status") or ValidationStatus.NEEDS_REVIEW.value
            ),
            validation_errors=list(data.get("validation_errors") or []),
        )


@dataclass
class PersistedRecord:
    """ExtractedRecord plus local identity and sync bookkeeping.

    Owned exclusively by the state store; instances are snapshots.
    """

    local_id: str
    record: ExtractedRecord
    sync_state: SyncState
    revision: int
    created_at: str
    updated_at: str
    remote_id: Optional[str] = None
    remote_revision: Optional[int] = None
    remote_updated_at: Optional[str] = None
    last_sync_error: Optional[str] = None

    @property
    def is_deleted(self) -> bool:
        return self.sync_state == SyncState.DELETED_PENDING

    def to_remote_payload(self) -> dict[str, Any]:
        """Document body sent to the remote store."""
        payload = self.record.fields_dict()
        payload.update(
            {
                "local_id": self.local_id,
                "confidence": self.record.confidence,
                "validation_status": self.record.validation_status.value,
                "ocr_fingerprint": self.record.ocr_fingerprint,
                "updated_at": self.updated_at,
            }
        )
        return payload


@dataclass
class SyncOp:
    """Queued sync intent. FIFO per record (by seq)."""

    seq: int
    local_id: str
    kind: SyncOpKind
    revision: int
    status: SyncOpStatus
    attempts: int
    enqueued_at: str
    next_attempt_at: Optional[str] = None
    last_error: Optional[str] = None


@dataclass
class RemoteDocument:
    """A document as returned by the remote store."""

    remote_id: str
    revision: int
    updated_at: str
    data: dict[str, Any] = field(default_factory=dict)
    deleted: bool = False

    @property
    def local_id(self) -> Optional[str]:
        return self.data.get("local_id")

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> "RemoteDocument":
        """Build from the remote API JSON representation."""
        return cls(
            remote_id=str(payload["id"]),
            revision=int(payload.get("revision") or 0),
            updated_at=payload.get("updated_at") or "",
            data=dict(payload.get("data") or {}),
            deleted=bool(payload.get("deleted", False)),
        )
