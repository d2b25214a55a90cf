"""
Schemas: canonical record types and model-output validation.
"""

from .records import (
    BoundingBox,
    CapturedImage,
    Category,
    ExtractedRecord,
    NormalizedImage,
    OcrResult,
    PersistedRecord,
    RemoteDocument,
    SyncOp,
    SyncOpKind,
    SyncOpStatus,
    SyncState,
    TextBlock,
    ValidationStatus,
)
from .validation import Invalid, Valid, ValidationResult, validate_payload

__all__ = [
    "BoundingBox",
    "CapturedImage",
    "Category",
    "ExtractedRecord",
    "NormalizedImage",
    "OcrResult",
    "PersistedRecord",
    "RemoteDocument",
    "SyncOp",
    "SyncOpKind",
    "SyncOpStatus",
    "SyncState",
    "TextBlock",
    "ValidationStatus",
    "Invalid",
    "Valid",
    "ValidationResult",
    "validate_payload",
]
