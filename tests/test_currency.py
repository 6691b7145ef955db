"""
Tests for currency rounding, formatting and parsing
"""

from decimal import Decimal

import pytest

from microloans.currency import (
    calculate_percentage, format_amount, format_kes, format_whole_kes, parse_kes, round_currency, to_decimal,
)


class TestRounding:
    """Test cent rounding"""

    def test_round_half_up(self):
        assert round_currency(Decimal("10.005")) == Decimal("10.01")
        assert round_currency(Decimal("10.004")) == Decimal("10.00")

    @pytest.mark.parametrize("value", [
        Decimal("10.005"), Decimal("0.125"), Decimal("-10.005"), Decimal("-0.015"),
        Decimal("1234.56789"), Decimal("0.0049999"), Decimal("99999.995"), "7", 0.1,
    ])
    def test_rounding_is_idempotent(self, value):
        once = round_currency(value)
        assert round_currency(once) == once
        assert once.as_tuple().exponent == -2

    def test_negative_half_cent_rounds_away_from_zero(self):
        assert round_currency(Decimal("-10.005")) == Decimal("-10.01")

    def test_round_accepts_int_float_and_str(self):
        assert round_currency(100) == Decimal("100.00")
        assert round_currency("2.5") == Decimal("2.50")
        assert round_currency(0.1) == Decimal("0.10")

    def test_to_decimal_avoids_float_artifacts(self):
        assert to_decimal(0.1) + to_decimal(0.2) == Decimal("0.3")

    def test_percentage(self):
        assert calculate_percentage(Decimal("10000"), Decimal("0.18")) == Decimal("1800.00")
        assert calculate_percentage(Decimal("333.33"), Decimal("0.05")) == Decimal("16.67")


class TestFormatting:
    """Test display formatting"""

    def test_format_amount(self):
        assert format_amount(Decimal("1500.5")) == "1,500.50"

    def test_format_kes(self):
        assert format_kes(Decimal("11800")) == "KES 11,800.00"

    def test_format_whole_kes(self):
        assert format_whole_kes(Decimal("30000")) == "KES 30,000"


class TestParsing:
    """Test parsing display strings back to amounts"""

    @pytest.mark.parametrize("text,expected", [
        ("KES 1,500.50", Decimal("1500.50")),
        ("kes 200", Decimal("200.00")),
        ("12,000", Decimal("12000.00")),
    ])
    def test_parse_kes(self, text, expected):
        assert parse_kes(text) == expected

    def test_parse_invalid_returns_zero(self):
        assert parse_kes("not money") == Decimal("0")
        assert parse_kes("") == Decimal("0")
