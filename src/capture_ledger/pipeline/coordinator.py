"""
Pipeline coordinator: capture → normalize → OCR → extract → persist.

Each capture runs on a bounded worker pool and is observed through a
CaptureHandle. Cancellation is cooperative: it is checked between stages
and once more, under the handle's lock, right before the persist
transaction. A capture whose cancel() returned True never reaches the
store.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from ..errors import (
    CaptureCancelledError,
    CaptureLedgerError,
    MalformedExtractionError,
    QuotaExceededError,
    RemoteUnavailableError,
    StageError,
)
from ..schemas.records import (
    BoundingBox,
    CapturedImage,
    ExtractedRecord,
    OcrResult,
    PersistedRecord,
    TextBlock,
)

if TYPE_CHECKING:
    from ..config import PipelineConfig
    from ..extraction import ExtractionEngine
    from ..imaging import ImageNormalizer
    from ..ocr import OcrAdapter
    from ..state_store import StateStore
    from ..sync import SyncEngine

logger = logging.getLogger(__name__)

# Extraction failures that degrade to a needs_review record instead of failing
DEGRADABLE_ERRORS = (MalformedExtractionError, RemoteUnavailableError, QuotaExceededError)


class Stage(str, Enum):
    """Pipeline stage of a capture."""

    QUEUED = "queued"
    NORMALIZING = "normalizing"
    RECOGNIZING = "recognizing"
    EXTRACTING = "extracting"
    PERSISTING = "persisting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (Stage.COMPLETED, Stage.FAILED, Stage.CANCELLED)


STAGE_FRACTIONS = {
    Stage.QUEUED: 0.0,
    Stage.NORMALIZING: 0.1,
    Stage.RECOGNIZING: 0.3,
    Stage.EXTRACTING: 0.6,
    Stage.PERSISTING: 0.9,
    Stage.COMPLETED: 1.0,
    Stage.FAILED: 1.0,
    Stage.CANCELLED: 1.0,
}


@dataclass(frozen=True)
class ProgressEvent:
    """Stage transition reported to subscribers."""

    capture_id: str
    stage: Stage
    fraction: float
    message: str = ""
    error: Exception | None = None


@dataclass
class CaptureResult:
    """Outcome of a completed capture."""

    capture_id: str
    record: PersistedRecord
    degraded: bool = False
    error: StageError | None = None
    ocr: OcrResult | None = field(default=None, repr=False)

    @property
    def local_id(self) -> str:
        return self.record.local_id


ProgressCallback = Callable[[ProgressEvent], None]


class CaptureHandle:
    """Observable, cancellable handle for one in-flight capture."""

    def __init__(self, capture_id: str):
        self.capture_id = capture_id
        self._lock = threading.Lock()
        self._cancel_requested = False
        self._committing = False
        self._subscribers: list[ProgressCallback] = []
        self._last_event = ProgressEvent(capture_id, Stage.QUEUED, 0.0)
        self._future: Future | None = None

    @property
    def state(self) -> Stage:
        with self._lock:
            return self._last_event.stage

    def subscribe(self, callback: ProgressCallback) -> None:
        """Register a progress callback. It is called once with the current stage."""
        with self._lock:
            self._subscribers.append(callback)
            current = self._last_event
        self._call(callback, current)

    def cancel(self) -> bool:
        """Request cancellation.

        Returns:
            True if the capture will not be persisted; False if it already
            reached the persist step or finished.
        """
        with self._lock:
            if self._committing or self._last_event.stage.is_terminal:
                return False
            self._cancel_requested = True
            future = self._future

        if future is not None and future.cancel():
            # Never started: no worker will report the transition
            self._emit(Stage.CANCELLED, "cancelled before start")
        logger.info("Cancellation requested for capture %s", self.capture_id)
        return True

    def cancelled(self) -> bool:
        return self.state == Stage.CANCELLED

    def done(self) -> bool:
        return self.state.is_terminal

    def result(self, timeout: float | None = None) -> CaptureResult:
        """Wait for the capture to finish.

        Raises:
            CaptureCancelledError: The capture was cancelled
            StageError: A stage failed
            concurrent.futures.TimeoutError: Still running after timeout
        """
        if self._future is None:
            raise RuntimeError(f"Capture {self.capture_id} was never submitted")
        try:
            return self._future.result(timeout)
        except CancelledError as e:
            raise CaptureCancelledError(self.capture_id) from e

    def _attach(self, future: Future) -> None:
        with self._lock:
            self._future = future

    def _check_cancelled(self) -> None:
        with self._lock:
            if self._cancel_requested:
                raise CaptureCancelledError(self.capture_id)

    def _begin_commit(self) -> None:
        """Last cancellation point; after this cancel() returns False."""
        with self._lock:
            if self._cancel_requested:
                raise CaptureCancelledError(self.capture_id)
            self._committing = True

    def _emit(self, stage: Stage, message: str = "", error: Exception | None = None) -> None:
        event = ProgressEvent(self.capture_id, stage, STAGE_FRACTIONS[stage], message, error)
        with self._lock:
            if self._last_event.stage.is_terminal:
                return
            self._last_event = event
            subscribers = list(self._subscribers)
        logger.debug("Capture %s: %s", self.capture_id, stage.value)
        for callback in subscribers:
            self._call(callback, event)

    @staticmethod
    def _call(callback: ProgressCallback, event: ProgressEvent) -> None:
        try:
            callback(event)
        except Exception:
            logger.exception("Progress callback raised for capture %s", event.capture_id)


class PipelineCoordinator:
    """
    Runs captures through the pipeline on a bounded thread pool.

    Stage failures fail only their own capture. With offline_fallback,
    extraction failures persist a needs_review record carrying the OCR text
    instead, so nothing the user captured is lost.
    """

    def __init__(
        self,
        normalizer: ImageNormalizer,
        ocr: OcrAdapter,
        extractor: ExtractionEngine,
        store: StateStore,
        config: PipelineConfig,
        sync_engine: SyncEngine | None = None,
        record_type: str = "receipt",
    ):
        self.normalizer = normalizer
        self.ocr = ocr
        self.extractor = extractor
        self.store = store
        self.config = config
        self.sync_engine = sync_engine
        self.record_type = record_type
        self._executor = ThreadPoolExecutor(
            max_workers=config.max_workers, thread_name_prefix="capture"
        )

    def submit(self, image: CapturedImage, record_type: str | None = None) -> CaptureHandle:
        """Queue a capture and return its handle immediately."""
        handle = CaptureHandle(uuid.uuid4().hex[:12])
        future = self._executor.submit(self._run, handle, image, record_type or self.record_type)
        handle._attach(future)
        logger.info("Capture %s queued", handle.capture_id)
        return handle

    def capture(
        self,
        image: CapturedImage,
        record_type: str | None = None,
        timeout: float | None = None,
    ) -> CaptureResult:
        """Submit a capture and wait for its result."""
        return self.submit(image, record_type).result(timeout)

    def _run(self, handle: CaptureHandle, image: CapturedImage, record_type: str) -> CaptureResult:
        try:
            return self._run_stages(handle, image, record_type)
        except CaptureCancelledError:
            handle._emit(Stage.CANCELLED, "cancelled")
            logger.info("Capture %s cancelled", handle.capture_id)
            raise
        except StageError as e:
            handle._emit(Stage.FAILED, str(e), error=e)
            logger.warning("Capture %s failed at %s: %s", handle.capture_id, e.stage, e.cause)
            raise
        except Exception as e:
            handle._emit(Stage.FAILED, str(e), error=e)
            logger.exception("Capture %s failed unexpectedly", handle.capture_id)
            raise

    def _run_stages(
        self, handle: CaptureHandle, image: CapturedImage, record_type: str
    ) -> CaptureResult:
        handle._check_cancelled()
        handle._emit(Stage.NORMALIZING)
        normalized = _in_stage(Stage.NORMALIZING, self.normalizer.normalize, image)

        handle._check_cancelled()
        handle._emit(Stage.RECOGNIZING)
        ocr = _in_stage(Stage.RECOGNIZING, self.ocr.recognize, normalized)

        handle._check_cancelled()
        handle._emit(Stage.EXTRACTING)
        degraded_error: StageError | None = None
        try:
            extracted = self.extractor.extract(ocr, record_type)
        except DEGRADABLE_ERRORS as e:
            if not self.config.offline_fallback:
                raise StageError(Stage.EXTRACTING.value, e) from e
            degraded_error = StageError(Stage.EXTRACTING.value, e)
            extracted = self._degrade(ocr, e, record_type)
            logger.info(
                "Capture %s: extraction degraded to needs_review (%s)",
                handle.capture_id,
                type(e).__name__,
            )
        except CaptureLedgerError as e:
            raise StageError(Stage.EXTRACTING.value, e) from e

        handle._emit(Stage.PERSISTING)
        handle._begin_commit()
        record = _in_stage(Stage.PERSISTING, self.store.insert_record, extracted)

        handle._emit(Stage.COMPLETED, record.local_id)
        self._notify_sync()
        return CaptureResult(
            capture_id=handle.capture_id,
            record=record,
            degraded=degraded_error is not None,
            error=degraded_error,
            ocr=ocr,
        )

    def _degrade(self, ocr: OcrResult, error: Exception, record_type: str) -> ExtractedRecord:
        if isinstance(error, MalformedExtractionError):
            return self.extractor.degraded_record(ocr, error.reasons, error.payload, record_type)
        return self.extractor.degraded_record(ocr, [f"extraction unavailable: {error}"], None, record_type)

    def _notify_sync(self) -> None:
        if self.sync_engine is None:
            return
        try:
            self.sync_engine.notify()
        except Exception:
            logger.exception("Failed to notify sync engine")

    def reextract(self, local_id: str, record_type: str | None = None) -> PersistedRecord:
        """
        Re-run extraction on a stored record's OCR text.

        Used for needs_review records (e.g. after the endpoint was offline)
        or after a prompt upgrade. Replaces the content, bumps the revision
        and enqueues a sync op.

        Raises:
            RecordNotFoundError: Unknown record
            StageError: Extraction failed
        """
        current = self.store.require_record(local_id)
        stored = current.record
        ocr = _ocr_from_text(stored.raw_text, stored.ocr_confidence)
        try:
            extracted = self.extractor.extract(ocr, record_type or stored.record_type)
        except CaptureLedgerError as e:
            raise StageError(Stage.EXTRACTING.value, e) from e

        # Provenance stays with the original capture
        extracted.ocr_fingerprint = stored.ocr_fingerprint
        record = self.store.replace_extraction(local_id, extracted)
        logger.info(
            "Re-extracted record %s: %s -> %s",
            local_id,
            stored.validation_status.value,
            extracted.validation_status.value,
        )
        self._notify_sync()
        return record

    def close(self, wait: bool = True) -> None:
        """Stop accepting captures and release the worker pool."""
        self._executor.shutdown(wait=wait, cancel_futures=not wait)

    def __enter__(self) -> PipelineCoordinator:
        return self

    def __exit__(self, *args) -> None:
        self.close()


def _in_stage(stage: Stage, func, *args):
    """Run one stage, tagging any failure with the stage name."""
    try:
        return func(*args)
    except StageError:
        raise
    except Exception as e:
        raise StageError(stage.value, e) from e


def _ocr_from_text(text: str, confidence: float) -> OcrResult:
    """Rebuild an OcrResult from stored text (one block per line)."""
    blocks = tuple(
        TextBlock(text=line, confidence=confidence, bbox=BoundingBox(0, 0, 0, 0), line_num=i)
        for i, line in enumerate(text.splitlines())
        if line.strip()
    )
    return OcrResult(blocks=blocks, engine="stored-text")
