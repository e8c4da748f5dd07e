"""
Test suite for currency module

Tests rounding, Decimal conversion and free-text amount parsing.
NEVER uses float comparisons for money.
"""

import pytest
from decimal import Decimal

from repayment_engine.currency import Currency, Money, decimal_from_string, round_money, to_decimal


class TestRounding:
    """Test monetary rounding"""

    def test_half_up(self):
        """Test half-cent values round away from zero"""
        assert round_money(Decimal('0.005')) == Decimal('0.01')
        assert round_money(Decimal('76054.845')) == Decimal('76054.85')
        assert round_money(Decimal('76054.8449')) == Decimal('76054.84')

    def test_money_is_rounded(self):
        """Test Money rounds to currency precision on construction"""
        money = Money(Decimal('10.005'), Currency.NGN)
        assert money.amount == Decimal('10.01')

    def test_display(self):
        """Test formatted output"""
        money = Money(Decimal('76054.84'), Currency.NGN)
        assert money.to_string() == "NGN 76,054.84"
        assert money.to_display() == "₦76,054.84"


class TestConversion:
    """Test conversion of supplied amounts"""

    def test_to_decimal(self):
        """Test floats go through their string form"""
        assert to_decimal(0.1) == Decimal('0.1')
        assert to_decimal(5) == Decimal('5')
        assert to_decimal('12.50') == Decimal('12.50')

    def test_to_decimal_rejects_bool_and_garbage(self):
        """Test unsupported values raise ValueError"""
        with pytest.raises(ValueError):
            to_decimal(True)
        with pytest.raises(ValueError):
            to_decimal("abc")

    def test_to_decimal_rejects_non_finite(self):
        """Test NaN and infinities are not amounts"""
        for value in ("NaN", "Infinity", "-inf", float("nan"), Decimal("Infinity")):
            with pytest.raises(ValueError, match="finite"):
                to_decimal(value)

    def test_decimal_from_string(self):
        """Test spreadsheet-style amounts"""
        assert decimal_from_string("76,042.78") == Decimal('76042.78')
        assert decimal_from_string(" NGN 1,000 ") == Decimal('1000')
        assert decimal_from_string("(1,000.00)") == Decimal('-1000.00')
        assert decimal_from_string(250) == Decimal('250')

    def test_decimal_from_string_rejects_empty(self):
        """Test empty and non-numeric text raise ValueError"""
        with pytest.raises(ValueError):
            decimal_from_string("")
        with pytest.raises(ValueError):
            decimal_from_string("N/A")
        with pytest.raises(ValueError):
            decimal_from_string(None)
