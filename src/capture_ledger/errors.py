"""
Error taxonomy (SSOT).

Every failure raised by a pipeline component carries one of four
categories, which decides how callers react to it:

- TRANSIENT: timeouts, network unavailability. Retried with backoff.
- VALIDATION: malformed AI output, schema mismatch. One re-prompt, then surfaced.
- CONFLICT: revision mismatch with the remote store. Resolved by policy.
- PERMANENT: quota exceeded, corrupt image, exhausted retry budget.
  Surfaced to the caller, never retried.
"""

from enum import Enum


class ErrorCategory(str, Enum):
    """Category of a pipeline failure."""

    TRANSIENT = "TRANSIENT"
    VALIDATION = "VALIDATION"
    CONFLICT = "CONFLICT"
    PERMANENT = "PERMANENT"


class CaptureLedgerError(Exception):
    """Base exception for all capture-ledger errors."""

    category: ErrorCategory = ErrorCategory.PERMANENT

    @property
    def retryable(self) -> bool:
        """True if the operation may succeed when attempted again."""
        return self.category == ErrorCategory.TRANSIENT


class ConfigValidationError(CaptureLedgerError):
    """Raised when configuration validation fails."""

    pass


# Image normalizer


class ImageError(CaptureLedgerError):
    """Base exception for image normalization failures."""

    pass


class CorruptImageError(ImageError):
    """Captured bytes could not be decoded as an image."""

    pass


class ImageTooLargeError(ImageError):
    """Captured image exceeds the configured byte or pixel limits."""

    def __init__(self, message: str, size: int, limit: int):
        self.size = size
        self.limit = limit
        super().__init__(message)


# OCR adapter


class OcrError(CaptureLedgerError):
    """Base exception for OCR failures."""

    pass


class OcrEngineUnavailableError(OcrError):
    """The text-recognition engine is missing or crashed."""

    pass


class OcrTimeoutError(OcrError):
    """Recognition did not finish within the caller's timeout."""

    category = ErrorCategory.TRANSIENT

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"OCR did not finish within {timeout:.1f}s")


# Extraction engine


class ExtractionError(CaptureLedgerError):
    """Base exception for extraction failures."""

    pass


class MalformedExtractionError(ExtractionError):
    """Model output failed schema validation, including after the re-prompt.

    Carries the last parsed payload (possibly empty) and the field-by-field
    reasons so callers can still persist a record for review.
    """

    category = ErrorCategory.VALIDATION

    def __init__(self, reasons: list[str], payload: dict | None = None, attempts: int = 2):
        self.reasons = list(reasons)
        self.payload = payload or {}
        self.attempts = attempts
        super().__init__(
            f"Extraction output malformed after {attempts} attempt(s): {'; '.join(self.reasons)}"
        )


class RemoteUnavailableError(ExtractionError):
    """The generative-AI endpoint could not be reached or timed out."""

    category = ErrorCategory.TRANSIENT


class QuotaExceededError(ExtractionError):
    """The generative-AI endpoint refused the request for quota reasons."""

    pass


# Local store


class RecordNotFoundError(CaptureLedgerError):
    """No (visible) record exists for the given local id."""

    def __init__(self, local_id: str):
        self.local_id = local_id
        super().__init__(f"Record '{local_id}' not found")


# Pipeline


class StageError(CaptureLedgerError):
    """A capture failed at a specific pipeline stage.

    The category mirrors the underlying cause, so an OCR timeout stays
    retryable while a corrupt image does not.
    """

    def __init__(self, stage: str, cause: Exception):
        self.stage = stage
        self.cause = cause
        if isinstance(cause, CaptureLedgerError):
            self.category = cause.category
        super().__init__(f"{stage} failed: {cause}")


class CaptureCancelledError(CaptureLedgerError):
    """The capture was cancelled before its record was persisted."""

    def __init__(self, capture_id: str):
        self.capture_id = capture_id
        super().__init__(f"Capture {capture_id} was cancelled")
