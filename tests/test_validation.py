"""Tests for model-output schema validation."""

from decimal import Decimal

import pytest

from capture_ledger.schemas.records import Category
from capture_ledger.schemas.validation import (
    Invalid,
    Valid,
    normalize_currency,
    parse_amount,
    parse_iso_date,
    validate_payload,
)


class TestParseAmount:
    """Tests for amount parsing."""

    @pytest.mark.parametrize(
        "raw,expected",
        [
            (42.5, Decimal("42.50")),
            ("42.50", Decimal("42.50")),
            ("42,50", Decimal("42.50")),
            ("$1,234.56", Decimal("1234.56")),
            ("1.234,56 EUR", Decimal("1234.56")),
            ("1,234", Decimal("1234.00")),
        ],
    )
    def test_formats(self, raw, expected):
        assert parse_amount(raw) == expected

    @pytest.mark.parametrize("raw", [None, True, "abc", "", [1], "1e30", "12 apples", "4O.00"])
    def test_rejects(self, raw):
        with pytest.raises(ValueError):
            parse_amount(raw)

    def test_currency_code_before_amount(self):
        assert parse_amount("EUR 12,50") == Decimal("12.50")
        assert parse_amount("usd12") == Decimal("12.00")

    @pytest.mark.parametrize("raw", [1e30, "1" * 31, Decimal("1E+40"), -1e16])
    def test_out_of_range(self, raw):
        with pytest.raises(ValueError, match="out of range"):
            parse_amount(raw)

    def test_largest_amount_keeps_cents(self):
        assert parse_amount("999999999999999.99") == Decimal("999999999999999.99")


class TestParseDate:
    """Tests for ISO date parsing."""

    def test_date_and_datetime(self):
        assert parse_iso_date("2024-03-01") == "2024-03-01"
        assert parse_iso_date("2024-03-01T10:15:00Z") == "2024-03-01"

    @pytest.mark.parametrize("raw", ["01.03.2024", "2024-13-01", "March 1", 20240301])
    def test_rejects(self, raw):
        with pytest.raises(ValueError):
            parse_iso_date(raw)


def test_normalize_currency():
    assert normalize_currency("€") == "EUR"
    assert normalize_currency("usd") == "USD"
    assert normalize_currency("dollars") is None
    assert normalize_currency(None) is None


class TestValidatePayload:
    """Tests for the tagged validation result."""

    def test_valid_payload(self):
        result = validate_payload(
            {
                "amount": "42.50",
                "date": "2024-03-01",
                "counterparty": " Acme ",
                "category": "Shopping",
                "currency": "eur",
                "confidence": 0.9,
            }
        )

        assert isinstance(result, Valid)
        assert result.fields["amount"] == Decimal("42.50")
        assert result.fields["counterparty"] == "Acme"
        assert result.fields["category"] == Category.SHOPPING
        assert result.fields["currency"] == "EUR"
        assert result.model_confidence == 0.9
        assert result.is_document is True

    def test_missing_fields_listed_individually(self):
        result = validate_payload({"amount": "42.50", "category": "dining"})

        assert isinstance(result, Invalid)
        assert "date: missing required field" in result.reasons
        assert "counterparty: missing required field" in result.reasons
        assert result.partial["amount"] == Decimal("42.50")

    def test_unparseable_values(self):
        result = validate_payload(
            {"amount": "lots", "date": "yesterday", "counterparty": "A", "category": "other"}
        )

        assert isinstance(result, Invalid)
        assert any(r.startswith("amount:") for r in result.reasons)
        assert any(r.startswith("date:") for r in result.reasons)

    def test_unknown_category_becomes_other_with_warning(self):
        result = validate_payload(
            {"amount": 1, "date": "2024-03-01", "counterparty": "A", "category": "pets"}
        )

        assert isinstance(result, Valid)
        assert result.fields["category"] == Category.OTHER
        assert any("category" in w for w in result.warnings)

    def test_out_of_range_confidence_is_ignored(self):
        result = validate_payload(
            {
                "amount": 1,
                "date": "2024-03-01",
                "counterparty": "A",
                "category": "other",
                "confidence": 7,
            }
        )

        assert isinstance(result, Valid)
        assert result.model_confidence is None
        assert result.warnings

    def test_not_a_dict(self):
        result = validate_payload(["amount", 1])

        assert isinstance(result, Invalid)
        assert result.reasons[0].startswith("payload:")

    def test_huge_amount_is_a_reason_not_a_crash(self):
        result = validate_payload(
            {"amount": 1e30, "date": "2024-03-01", "counterparty": "A", "category": "other"}
        )

        assert isinstance(result, Invalid)
        assert any(r.startswith("amount: amount out of range") for r in result.reasons)
        assert result.partial["counterparty"] == "A"
