"""
Tests for integer minor-unit money parsing and formatting.
"""

from decimal import Decimal

import pytest

from budgetpilot.exceptions import ValidationError
from budgetpilot.execution.handlers import parse_amount
from budgetpilot.models.money import format_amount, from_minor_units, percent_of, to_minor_units


class TestToMinorUnits:
    @pytest.mark.parametrize(
        "value, expected",
        [
            ("150", 15000),
            ("150.00", 15000),
            ("1,000.50", 100050),
            ("$400", 40000),
            (" 12.5 ", 1250),
            (Decimal("0.01"), 1),
            (7, 700),
            (19.99, 1999),
        ],
    )
    def test_parses(self, value, expected) -> None:
        assert to_minor_units(value) == expected

    def test_rounds_half_up(self) -> None:
        assert to_minor_units("0.005") == 1
        assert to_minor_units("2.675") == 268
        assert to_minor_units("0.004") == 0

    def test_zero_decimal_currency(self) -> None:
        assert to_minor_units("1500", "JPY") == 1500
        assert to_minor_units("1500.5", "JPY") == 1501

    @pytest.mark.parametrize("value", ["", "   ", "abc", "1.2.3", "NaN", "Infinity", True, None])
    def test_rejects_garbage(self, value) -> None:
        with pytest.raises(ValueError):
            to_minor_units(value)

    @pytest.mark.parametrize("value", ["1e30", "99999999999999999999999999999"])
    def test_rejects_out_of_range(self, value) -> None:
        with pytest.raises(ValueError, match="too large"):
            to_minor_units(value)

    def test_out_of_range_is_a_field_error(self) -> None:
        with pytest.raises(ValidationError) as exc:
            parse_amount("1e30", "amount")
        assert exc.value.field == "amount"

    def test_float_noise_does_not_leak(self) -> None:
        total = sum(to_minor_units(0.1) for _ in range(10))
        assert total == to_minor_units("1.00")


class TestFormatting:
    def test_from_minor_units_is_exact(self) -> None:
        assert from_minor_units(25050) == Decimal("250.50")

    def test_format_negative(self) -> None:
        assert format_amount(-85000) == "-$850.00"

    def test_format_signed(self) -> None:
        assert format_amount(10000, signed=True) == "+$100.00"
        assert format_amount(0, signed=True) == "$0.00"

    def test_format_thousands(self) -> None:
        assert format_amount(123456789) == "$1,234,567.89"

    def test_percent_of(self) -> None:
        assert percent_of(15000, 100000) == Decimal("15.0")
        assert percent_of(1, 3) == Decimal("33.3")
        assert percent_of(2, 3) == Decimal("66.7")
        assert percent_of(500, 0) == Decimal("0.0")
