"""
Confidence scoring implementation.
"""

from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Optional

from ..schemas.records import ValidationStatus


@dataclass
class ConfidenceThresholds:
    """Configurable thresholds for validation status determination."""

    review_threshold: float = 0.70  # Below this: needs_review
    ocr_weight: float = 0.5  # Share of OCR confidence in the combined score
    max_amount: float = 1_000_000.0  # Above this: rejected
    # Dates further in the future than this are suspicious
    max_future_days: int = 1


class ConfidenceScorer:
    """
    Computes extraction confidence and the resulting validation status.

    Confidence sources:
    1. OCR mean block confidence (always present)
    2. Model self-reported confidence (optional)

    Combined = ocr_weight * ocr + (1 - ocr_weight) * model, clamped to [0, 1].
    Without a model score the OCR score is used as-is.
    """

    def __init__(self, thresholds: Optional[ConfidenceThresholds] = None):
        """Initialize scorer with thresholds."""
        self.thresholds = thresholds or ConfidenceThresholds()

    def combine(self, ocr_confidence: float, model_confidence: Optional[float] = None) -> float:
        """Combine OCR and model confidence into one score in [0, 1]."""
        ocr = _clamp(ocr_confidence)
        if model_confidence is None:
            return ocr
        weight = _clamp(self.thresholds.ocr_weight)
        return _clamp(weight * ocr + (1.0 - weight) * _clamp(model_confidence))

    def compute_status(
        self,
        confidence: float,
        fields: dict[str, Any],
        is_document: bool = True,
    ) -> tuple[ValidationStatus, list[str]]:
        """
        Compute validation status for schema-valid fields.

        Rules:
        - REJECTED: model says it is not a financial document, or amount fails sanity checks
        - NEEDS_REVIEW: confidence below review_threshold, or a soft issue was found
        - VALID: otherwise
        """
        issues = self.validate_fields(fields)
        hard = [i for i in issues if i.startswith("rejected:")]

        if not is_document:
            return ValidationStatus.REJECTED, ["rejected: not a financial document"] + issues
        if hard:
            return ValidationStatus.REJECTED, issues
        if confidence < self.thresholds.review_threshold:
            issues.append(
                f"confidence {confidence:.2f} below review threshold "
                f"{self.thresholds.review_threshold:.2f}"
            )
            return ValidationStatus.NEEDS_REVIEW, issues
        if issues:
            return ValidationStatus.NEEDS_REVIEW, issues
        return ValidationStatus.VALID, issues

    def validate_fields(self, fields: dict[str, Any]) -> list[str]:
        """
        Sanity-check parsed fields and return a list of issues.

        Issues prefixed with "rejected:" are hard failures.
        """
        issues = []

        amount = fields.get("amount")
        if isinstance(amount, Decimal):
            if amount <= 0:
                issues.append(f"rejected: amount must be positive, got {amount}")
            elif amount > Decimal(str(self.thresholds.max_amount)):
                issues.append(f"rejected: amount {amount} exceeds {self.thresholds.max_amount}")

        record_date = fields.get("date")
        if record_date:
            try:
                parsed = date.fromisoformat(record_date)
            except ValueError:
                issues.append(f"date format invalid: {record_date}")
            else:
                if parsed > date.today() + timedelta(days=self.thresholds.max_future_days):
                    issues.append(f"date {record_date} is in the future")

        return issues


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, float(value)))
