"""Prompt templates for structured record extraction.

Prompts are versioned; the version is stored on every extracted record so
records produced by an older prompt can be found and re-extracted.
"""

from __future__ import annotations

from dataclasses import dataclass

from ..schemas.records import Category

# v1.1: Re-prompt lists field-by-field validation errors
PROMPT_VERSION = "v1.1"


@dataclass
class ExtractionPrompt:
    """Prompt template for the first extraction attempt.

    Attributes:
        version: Prompt version stored with each record.
        system_prompt: System message describing the output schema.
        user_template: Template for the user message with OCR text.
    """

    version: str = PROMPT_VERSION

    system_prompt: str = """You extract structured data from OCR text of photographed financial documents
(receipts, invoices, bills).

Rules:
1. Use only information present in the text
2. amount is the final total paid or due, as a number with a dot decimal separator
3. date is the document date in ISO-8601 format YYYY-MM-DD
4. counterparty is the merchant, vendor or issuer name
5. category must be one of the allowed categories
6. If the text is not a financial document, set "is_document" to false
7. Include a confidence score from 0.0 to 1.0

Respond with a single JSON object and nothing else:
{
    "amount": 42.50,
    "date": "2024-03-01",
    "counterparty": "Acme",
    "category": "shopping",
    "currency": "EUR",
    "description": "Short summary",
    "confidence": 0.9,
    "is_document": true
}"""

    user_template: str = """Extract a {record_type} record from this OCR text:

---
{text}
---

Allowed categories:
{categories}

Respond in JSON format."""

    def format_user_message(
        self,
        text: str,
        record_type: str = "receipt",
        categories: list[str] | None = None,
    ) -> str:
        """Format the user message with the recognized text.

        Args:
            text: OCR text in reading order.
            record_type: Expected record type.
            categories: Allowed category values (defaults to all).

        Returns:
            Formatted user message.
        """
        categories = categories or Category.values()
        categories_str = "\n".join(f"- {cat}" for cat in categories)
        return self.user_template.format(
            record_type=record_type,
            text=text.strip() or "(no text recognized)",
            categories=categories_str,
        )


@dataclass
class RepromptHint:
    """Follow-up prompt sent once when the first answer fails validation."""

    version: str = PROMPT_VERSION

    user_template: str = """Your previous answer did not match the required schema.

Problems:
{problems}

Previous answer:
{previous}

Fix every problem and answer again using the same OCR text:

---
{text}
---

Respond with a single corrected JSON object."""

    def format_user_message(self, text: str, reasons: list[str], previous: str) -> str:
        """Format the retry message.

        Args:
            text: OCR text in reading order.
            reasons: Field-by-field validation errors.
            previous: The model's previous raw answer (truncated).

        Returns:
            Formatted retry message.
        """
        problems = "\n".join(f"- {reason}" for reason in reasons)
        return self.user_template.format(
            problems=problems,
            previous=(previous or "(empty)")[:2000],
            text=text.strip() or "(no text recognized)",
        )
