"""
Tests for currency codes and amount parsing
"""

import pytest
from decimal import Decimal

from ledger_engine.currency import Currency, quantize, to_decimal
from ledger_engine.errors import ValidationError


class TestCurrency:
    """Test currency lookup and rounding"""

    def test_from_code(self):
        assert Currency.from_code("sdg") is Currency.SDG
        assert Currency.JPY.precision == 0
        with pytest.raises(ValidationError):
            Currency.from_code("XYZ")

    def test_quantize_rounds_half_up(self):
        assert quantize(Decimal("1.005"), Currency.USD) == Decimal("1.01")
        assert quantize(Decimal("1.5"), "JPY") == Decimal("2")

    def test_to_decimal(self):
        assert to_decimal("12.30") == Decimal("12.30")
        assert to_decimal(0.1) == Decimal("0.1")
        assert to_decimal(5) == Decimal("5")
        for bad in ("", "abc", None, "Infinity", "NaN"):
            with pytest.raises(ValidationError):
                to_decimal(bad)
