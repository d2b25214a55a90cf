"""
OCR adapter.

Bounds an OcrEngine with a caller-supplied timeout and packages its output
as an immutable OcrResult. Performs no retries: a timeout is reported as a
retryable OcrTimeoutError and the retry decision is left to the caller.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError

from ..config import OcrConfig
from ..errors import OcrEngineUnavailableError, OcrError, OcrTimeoutError
from ..schemas.records import NormalizedImage, OcrResult
from .base import OcrEngine

logger = logging.getLogger(__name__)


class OcrAdapter:
    """
    Timeout-bounded wrapper around an OcrEngine.

    Recognition runs on a small dedicated thread pool so the calling
    pipeline thread can give up after the timeout. Python threads cannot be
    killed, so a hung engine call keeps its worker until it returns.
    """

    def __init__(
        self,
        engine: OcrEngine,
        config: OcrConfig | None = None,
        max_workers: int = 2,
    ):
        self.engine = engine
        self.config = config or OcrConfig()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="ocr")

    def recognize(self, image: NormalizedImage, timeout: float | None = None) -> OcrResult:
        """
        Recognize text in a normalized image.

        Args:
            image: Canonical image from the normalizer
            timeout: Seconds to wait (defaults to config.timeout_seconds)

        Returns:
            OcrResult with blocks in reading order

        Raises:
            OcrTimeoutError: Recognition exceeded the timeout (retryable)
            OcrEngineUnavailableError: Engine missing or crashed
        """
        timeout = self.config.timeout_seconds if timeout is None else timeout
        started = time.monotonic()
        future = self._executor.submit(self.engine.recognize_blocks, image)

        try:
            blocks = future.result(timeout=timeout)
        except FuturesTimeoutError as e:
            future.cancel()
            logger.warning("OCR engine %s timed out after %.1fs", self.engine.name, timeout)
            raise OcrTimeoutError(timeout) from e
        except OcrError:
            raise
        except Exception as e:
            logger.error("OCR engine %s crashed: %s", self.engine.name, e)
            raise OcrEngineUnavailableError(f"OCR engine {self.engine.name} failed: {e}") from e

        elapsed_ms = int((time.monotonic() - started) * 1000)
        result = OcrResult(
            blocks=tuple(blocks),
            source_hash=image.content_hash,
            engine=self.engine.name,
            recognition_ms=elapsed_ms,
            low_confidence_threshold=self.config.low_confidence,
        )

        logger.info(
            "OCR recognized %d blocks (mean confidence %.2f, %d low) in %dms",
            len(result.blocks),
            result.mean_confidence,
            len(result.low_confidence_blocks),
            elapsed_ms,
        )
        return result

    def close(self) -> None:
        """Release the worker pool."""
        self._executor.shutdown(wait=False)

    def __enter__(self) -> "OcrAdapter":
        return self

    def __exit__(self, *args) -> None:
        self.close()
