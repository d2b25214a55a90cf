"""Extraction engine: OCR text → typed record via a generative-AI endpoint.

Features:
- Ollama-compatible chat API (localhost, LAN, or remote) with JSON output
- Strict schema validation with field-by-field errors
- Exactly one re-prompt with an error hint on schema mismatch
- Confidence from OCR mean confidence and model self-reported confidence
- A fixed number of request slots shared by all pipeline workers

OCR text and prompts are only ever logged at DEBUG level.
"""

from __future__ import annotations

import json
import logging
import re
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

import httpx

from ..confidence import ConfidenceScorer, ConfidenceThresholds
from ..errors import MalformedExtractionError, QuotaExceededError, RemoteUnavailableError
from ..schemas.records import Category, ExtractedRecord, OcrResult, ValidationStatus
from ..schemas.validation import Invalid, Valid, ValidationResult, validate_payload
from .prompts import PROMPT_VERSION, ExtractionPrompt, RepromptHint

if TYPE_CHECKING:
    from ..config import ExtractionConfig

logger = logging.getLogger(__name__)


class RequestSlots:
    """Bounded number of extraction requests in flight at once."""

    def __init__(self, size: int) -> None:
        self.size = size
        self._available = threading.BoundedSemaphore(size)
        self._in_use = 0
        self._count_lock = threading.Lock()

    @property
    def in_use(self) -> int:
        with self._count_lock:
            return self._in_use

    @contextmanager
    def hold(self, wait: float) -> Iterator[None]:
        """Occupy one slot for the duration of the block.

        Raises:
            RemoteUnavailableError: No slot freed up within ``wait`` seconds.
        """
        if not self._available.acquire(timeout=wait):
            logger.warning(
                "No extraction slot free after %.0fs (%d of %d in use)",
                wait,
                self.in_use,
                self.size,
            )
            raise RemoteUnavailableError("Extraction endpoint busy: no request slot available")
        with self._count_lock:
            self._in_use += 1
        try:
            yield
        finally:
            with self._count_lock:
                self._in_use -= 1
            self._available.release()


class ExtractionEngine:
    """Turns an OcrResult into a validated ExtractedRecord.

    Single responsibility: extraction only. Nothing is persisted here.

    Errors:
    - MalformedExtractionError: output invalid after the one re-prompt
    - RemoteUnavailableError: endpoint unreachable, timed out or 5xx
    - QuotaExceededError: endpoint refused for quota/rate reasons
    """

    def __init__(
        self,
        config: ExtractionConfig,
        scorer: ConfidenceScorer | None = None,
    ) -> None:
        """Initialize the extraction engine.

        Args:
            config: Extraction endpoint configuration.
            scorer: Confidence scorer (defaults to one built from config).
        """
        self.config = config
        self.scorer = scorer or ConfidenceScorer(
            ConfidenceThresholds(
                review_threshold=config.review_threshold,
                ocr_weight=config.ocr_weight,
                max_amount=config.max_amount,
            )
        )

        self._client = httpx.Client(
            timeout=httpx.Timeout(
                connect=10.0,
                read=float(config.timeout_seconds),
                write=30.0,
                pool=10.0,
            ),
            headers=_auth_headers(config.auth_header),
        )
        self._prompt = ExtractionPrompt()
        self._reprompt = RepromptHint()
        self._slots = RequestSlots(config.max_concurrent)

    @property
    def is_remote(self) -> bool:
        """Check if the endpoint is configured for remote access."""
        return self.config.is_remote()

    @property
    def active_requests(self) -> int:
        return self._slots.in_use

    def extract(self, ocr: OcrResult, record_type: str = "receipt") -> ExtractedRecord:
        """Extract a typed record from OCR output.

        Args:
            ocr: Recognized text blocks.
            record_type: Schema to validate against.

        Returns:
            ExtractedRecord with status valid, needs_review or rejected.

        Raises:
            MalformedExtractionError: Invalid output after one re-prompt.
            RemoteUnavailableError: Endpoint unavailable.
            QuotaExceededError: Quota exhausted.
        """
        if ocr.is_empty:
            raise MalformedExtractionError(["text: no text recognized in image"], attempts=0)

        text = ocr.text
        messages = [
            {"role": "system", "content": self._prompt.system_prompt},
            {
                "role": "user",
                "content": self._prompt.format_user_message(text, record_type=record_type),
            },
        ]

        content = self._call_model(messages)
        result = self._validate_content(content, record_type)

        if isinstance(result, Invalid):
            logger.info(
                "Extraction output failed validation (%d problems), re-prompting once",
                len(result.reasons),
            )
            logger.debug("Validation problems: %s", result.reasons)
            messages = messages + [
                {"role": "assistant", "content": content},
                {
                    "role": "user",
                    "content": self._reprompt.format_user_message(text, result.reasons, content),
                },
            ]
            content = self._call_model(messages)
            result = self._validate_content(content, record_type)

            if isinstance(result, Invalid):
                logger.warning(
                    "Extraction output still invalid after re-prompt: %s",
                    "; ".join(result.reasons),
                )
                raise MalformedExtractionError(result.reasons, payload=result.partial, attempts=2)

        return self._build_record(ocr, result, record_type)

    def degraded_record(
        self,
        ocr: OcrResult,
        reasons: list[str],
        partial: dict[str, Any] | None = None,
        record_type: str = "receipt",
    ) -> ExtractedRecord:
        """Build a needs_review record when extraction could not complete.

        Keeps the OCR text and any fields that did parse, so nothing the
        user captured is dropped.
        """
        partial = partial or {}
        return ExtractedRecord(
            amount=partial.get("amount"),
            date=partial.get("date"),
            counterparty=partial.get("counterparty"),
            category=partial.get("category", Category.OTHER),
            currency=partial.get("currency"),
            description=partial.get("description"),
            record_type=record_type,
            ocr_fingerprint=ocr.fingerprint,
            raw_text=ocr.text,
            ocr_confidence=ocr.mean_confidence,
            model=self.config.model,
            prompt_version=PROMPT_VERSION,
            confidence=self.scorer.combine(ocr.mean_confidence) if partial else 0.0,
            validation_status=ValidationStatus.NEEDS_REVIEW,
            validation_errors=list(reasons),
        )

    def _build_record(self, ocr: OcrResult, result: Valid, record_type: str) -> ExtractedRecord:
        fields = result.fields
        confidence = self.scorer.combine(ocr.mean_confidence, result.model_confidence)
        status, issues = self.scorer.compute_status(confidence, fields, result.is_document)

        record = ExtractedRecord(
            amount=fields.get("amount"),
            date=fields.get("date"),
            counterparty=fields.get("counterparty"),
            category=fields.get("category", Category.OTHER),
            currency=fields.get("currency"),
            description=fields.get("description"),
            record_type=record_type,
            ocr_fingerprint=ocr.fingerprint,
            raw_text=ocr.text,
            ocr_confidence=ocr.mean_confidence,
            model=self.config.model,
            prompt_version=PROMPT_VERSION,
            confidence=confidence,
            validation_status=status,
            validation_errors=list(result.warnings) + issues,
        )
        logger.info(
            "Extracted %s record: status=%s confidence=%.2f",
            record_type,
            status.value,
            confidence,
        )
        return record

    def _validate_content(self, content: str, record_type: str) -> ValidationResult:
        try:
            payload = self._decode_content(content)
        except json.JSONDecodeError as e:
            return Invalid(reasons=[f"response: not valid JSON ({e.msg})"])
        return validate_payload(payload, record_type)

    def _call_model(self, messages: list[dict[str, str]]) -> str:
        """Send one chat request and return the model's message content.

        Raises:
            RemoteUnavailableError: Timeout, connection failure, 5xx, no free slot.
            QuotaExceededError: HTTP 429 or a quota error body.
        """
        body = {
            "model": self.config.model,
            "messages": messages,
            "stream": False,
            "format": "json",
            "options": {"temperature": 0},
        }
        with self._slots.hold(wait=float(self.config.timeout_seconds)):
            data = self._post_chat(body)

        message = data.get("message") if isinstance(data, dict) else None
        content = message.get("content", "") if isinstance(message, dict) else ""
        logger.debug("Model %s returned %d chars", self.config.model, len(content))
        return content

    def _post_chat(self, body: dict[str, Any]) -> Any:
        url = f"{self.config.base_url.rstrip('/')}/api/chat"
        logger.debug("Calling model %s at %s", self.config.model, url)
        try:
            response = self._client.post(url, json=body)
            response.raise_for_status()
            return response.json()
        except httpx.TimeoutException as e:
            logger.warning("Extraction request timed out after %ds", self.config.timeout_seconds)
            raise RemoteUnavailableError(f"Extraction request timed out: {e}") from e
        except httpx.HTTPStatusError as e:
            raise _status_error(e.response) from e
        except httpx.RequestError as e:
            logger.error("Extraction endpoint %s unreachable: %s", self.config.base_url, e)
            raise RemoteUnavailableError(f"Extraction endpoint unreachable: {e}") from e
        except ValueError as e:
            raise RemoteUnavailableError(f"Extraction endpoint returned non-JSON body: {e}") from e

    def _decode_content(self, content: str) -> dict:
        """Pull the JSON object out of a model reply.

        Accepts code fences, prose before or after the object and trailing
        commas.

        Raises:
            json.JSONDecodeError: No JSON object could be recovered.
        """
        text = (content or "").strip()
        fence = re.match(r"^```(?:json)?\s*(.*?)\s*```$", text, re.DOTALL)
        if fence:
            text = fence.group(1)
        if not text:
            raise json.JSONDecodeError("Empty response", content or "", 0)

        candidates = [text]
        first, last = text.find("{"), text.rfind("}")
        if 0 <= first < last:
            snippet = text[first : last + 1]
            candidates += [snippet, re.sub(r",\s*([}\]])", r"\1", snippet)]

        error: json.JSONDecodeError | None = None
        for candidate in candidates:
            try:
                parsed = json.loads(candidate)
            except json.JSONDecodeError as e:
                error = error or e
                continue
            if isinstance(parsed, dict):
                return parsed
        raise error or json.JSONDecodeError("Response is not a JSON object", text, 0)

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> ExtractionEngine:
        return self

    def __exit__(self, *args) -> None:
        self.close()


def _auth_headers(auth_header: str | None) -> dict[str, str]:
    """``"Name: value"`` sets that header; anything else is an Authorization value."""
    if not auth_header:
        return {}
    name, sep, value = auth_header.partition(":")
    if sep and name.strip() and " " not in name.strip():
        return {name.strip(): value.strip()}
    return {"Authorization": auth_header}


def _status_error(response: httpx.Response) -> Exception:
    status = response.status_code
    try:
        body = response.text or ""
    except Exception:
        body = ""
    if status == 429 or "quota" in body.lower():
        logger.error("Extraction quota exceeded (HTTP %s)", status)
        return QuotaExceededError(f"Extraction quota exceeded (HTTP {status})")
    logger.error("Extraction endpoint answered HTTP %s", status)
    return RemoteUnavailableError(f"Extraction API error {status}")
