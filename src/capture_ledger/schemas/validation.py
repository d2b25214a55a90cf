"""
Strict schema validation of model output.

The generative-AI response is untrusted, loosely typed JSON. It is checked
field by field and turned into a tagged result:

- Valid(fields, ...): every required field present and well-typed
- Invalid(reasons, partial): one reason per failing field, plus whatever
  did parse so a degraded record can still be kept for review
"""

import re
from dataclasses import dataclass, field
from datetime import date as date_cls
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Union

from .records import Category

# Required keys per record type
RECORD_SCHEMAS: dict[str, tuple[str, ...]] = {
    "receipt": ("amount", "date", "counterparty", "category"),
    "invoice": ("amount", "date", "counterparty", "category"),
    "bill": ("amount", "date", "counterparty", "category"),
}

_ISO_DATE = re.compile(r"^(\d{4}-\d{2}-\d{2})(?:[T ][0-9:.]+(?:Z|[+-]\d{2}:?\d{2})?)?$")
_CURRENCY = re.compile(r"^[A-Z]{3}$")
_CURRENCY_SYMBOLS = {"$": "USD", "€": "EUR", "£": "GBP", "¥": "JPY", "₹": "INR"}
# Three-letter code leading or trailing an amount string ("EUR 12", "12 usd")
_CURRENCY_CODE_EDGE = re.compile(r"^[A-Za-z]{3}(?![A-Za-z])|(?<![A-Za-z])[A-Za-z]{3}$")

# Largest amounts are well below 10**15; anything longer is garbage output
MAX_AMOUNT_DIGITS = 15


@dataclass(frozen=True)
class Valid:
    """Payload passed validation."""

    fields: dict[str, Any]
    warnings: list[str] = field(default_factory=list)
    model_confidence: Optional[float] = None
    is_document: bool = True


@dataclass(frozen=True)
class Invalid:
    """Payload failed validation."""

    reasons: list[str]
    partial: dict[str, Any] = field(default_factory=dict)


ValidationResult = Union[Valid, Invalid]


def parse_amount(value: Any) -> Decimal:
    """Parse a monetary amount.

    Accepts numbers and strings such as "42.50", "42,50", "$1,234.56",
    "1.234,56 EUR". Returns a Decimal with two places. Strings may carry a
    currency symbol or a three-letter code; any other letter (an exponent,
    a word) makes the value unparseable.

    Raises:
        ValueError: If the value is not a parseable amount, or has more
            than MAX_AMOUNT_DIGITS integer digits.
    """
    if isinstance(value, bool) or value is None:
        raise ValueError(f"not a number: {value!r}")
    if isinstance(value, (int, float, Decimal)):
        raw = str(value)
    elif isinstance(value, str):
        raw = _CURRENCY_CODE_EDGE.sub("", value.strip())
        for symbol in _CURRENCY_SYMBOLS:
            raw = raw.replace(symbol, "")
        raw = re.sub(r"\s+", "", raw)
        if re.search(r"[^0-9,.\-]", raw):
            raise ValueError(f"not a number: {value!r}")
        if "," in raw and "." in raw:
            # Last separator is the decimal mark
            if raw.rfind(",") > raw.rfind("."):
                raw = raw.replace(".", "").replace(",", ".")
            else:
                raw = raw.replace(",", "")
        elif "," in raw:
            head, _, tail = raw.rpartition(",")
            if len(tail) == 2 and raw.count(",") == 1:
                raw = f"{head}.{tail}"
            else:
                raw = raw.replace(",", "")
    else:
        raise ValueError(f"not a number: {value!r}")

    try:
        amount = Decimal(raw)
    except InvalidOperation as e:
        raise ValueError(f"not a number: {value!r}") from e
    if not amount.is_finite():
        raise ValueError(f"not a finite number: {value!r}")
    if amount and amount.adjusted() >= MAX_AMOUNT_DIGITS:
        raise ValueError(f"amount out of range: {value!r}")
    return amount.quantize(Decimal("0.01"))


def parse_iso_date(value: Any) -> str:
    """Parse an ISO-8601 date (or datetime) and return YYYY-MM-DD.

    Raises:
        ValueError: If the value is not an ISO-8601 date.
    """
    if not isinstance(value, str):
        raise ValueError(f"expected ISO-8601 string, got {type(value).__name__}")
    match = _ISO_DATE.match(value.strip())
    if not match:
        raise ValueError(f"not an ISO-8601 date: {value!r}")
    return date_cls.fromisoformat(match.group(1)).isoformat()


def normalize_currency(value: Any) -> Optional[str]:
    """Return an ISO 4217 code, or None if the value is not recognizable."""
    if not isinstance(value, str) or not value.strip():
        return None
    candidate = value.strip()
    if candidate in _CURRENCY_SYMBOLS:
        return _CURRENCY_SYMBOLS[candidate]
    candidate = candidate.upper()
    return candidate if _CURRENCY.match(candidate) else None


def validate_payload(payload: Any, record_type: str = "receipt") -> ValidationResult:
    """Validate a model payload against the schema for record_type.

    Args:
        payload: Parsed JSON from the model.
        record_type: Key into RECORD_SCHEMAS.

    Returns:
        Valid or Invalid.
    """
    if not isinstance(payload, dict):
        return Invalid(reasons=[f"payload: expected JSON object, got {type(payload).__name__}"])

    required = RECORD_SCHEMAS.get(record_type, RECORD_SCHEMAS["receipt"])
    reasons: list[str] = []
    warnings: list[str] = []
    parsed: dict[str, Any] = {}

    for key in required:
        if key not in payload or payload[key] is None or payload[key] == "":
            reasons.append(f"{key}: missing required field")

    if payload.get("amount") not in (None, ""):
        try:
            parsed["amount"] = parse_amount(payload["amount"])
        except ValueError as e:
            reasons.append(f"amount: {e}")

    if payload.get("date") not in (None, ""):
        try:
            parsed["date"] = parse_iso_date(payload["date"])
        except ValueError as e:
            reasons.append(f"date: {e}")

    counterparty = payload.get("counterparty")
    if counterparty not in (None, ""):
        if isinstance(counterparty, str) and counterparty.strip():
            parsed["counterparty"] = counterparty.strip()
        else:
            reasons.append(f"counterparty: expected non-empty string, got {counterparty!r}")

    category = payload.get("category")
    if category not in (None, ""):
        if not isinstance(category, str):
            reasons.append(f"category: expected string, got {type(category).__name__}")
        else:
            try:
                parsed["category"] = Category(category.strip().lower())
            except ValueError:
                parsed["category"] = Category.OTHER
                warnings.append(f"category: unknown value {category!r}, using 'other'")

    if payload.get("currency") is not None:
        currency = normalize_currency(payload["currency"])
        if currency:
            parsed["currency"] = currency
        else:
            warnings.append(f"currency: ignoring unrecognized value {payload['currency']!r}")

    description = payload.get("description")
    if isinstance(description, str) and description.strip():
        parsed["description"] = description.strip()

    model_confidence: Optional[float] = None
    raw_conf = payload.get("confidence")
    if raw_conf is not None:
        if isinstance(raw_conf, (int, float)) and not isinstance(raw_conf, bool):
            if 0.0 <= float(raw_conf) <= 1.0:
                model_confidence = float(raw_conf)
            else:
                warnings.append(f"confidence: {raw_conf!r} outside [0, 1], ignored")
        else:
            warnings.append(f"confidence: expected number, got {raw_conf!r}")

    is_document = payload.get("is_document", True)
    if not isinstance(is_document, bool):
        warnings.append(f"is_document: expected boolean, got {is_document!r}")
        is_document = True

    if reasons:
        return Invalid(reasons=reasons, partial=parsed)

    return Valid(
        fields=parsed,
        warnings=warnings,
        model_confidence=model_confidence,
        is_document=is_document,
    )
