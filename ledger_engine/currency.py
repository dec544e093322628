"""
Currency Support Module

ISO 4217 currency codes and Decimal handling for balances and transfer
amounts. NEVER uses float for monetary values: amounts arriving as float are
routed through str() first so no binary rounding leaks into a balance.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, getcontext
from enum import Enum
from typing import Any, Union

from .errors import ValidationError

# Set global decimal context for financial precision
getcontext().prec = 28


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    SDG = ("SDG", 2)  # Sudanese Pound, 2 decimal places
    USD = ("USD", 2)  # US Dollar, 2 decimal places
    EUR = ("EUR", 2)  # Euro, 2 decimal places
    GBP = ("GBP", 2)  # British Pound, 2 decimal places
    JPY = ("JPY", 0)  # Japanese Yen, 0 decimal places

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @classmethod
    def from_code(cls, code: str) -> 'Currency':
        """Look up a currency by its ISO code"""
        try:
            return cls[code.upper()]
        except KeyError:
            raise ValidationError(f"Unsupported currency: {code}")


def to_decimal(value: Union[Decimal, str, int, float, Any]) -> Decimal:
    """Convert an incoming amount to Decimal, rejecting garbage"""
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value))
        except (InvalidOperation, ValueError, TypeError):
            raise ValidationError(f"Invalid amount: {value!r}")
    if not result.is_finite():
        raise ValidationError(f"Invalid amount: {value!r}")
    return result


def quantize(amount: Decimal, currency: Union[Currency, str]) -> Decimal:
    """Round to the currency's minor unit"""
    if isinstance(currency, str):
        currency = Currency.from_code(currency)
    return amount.quantize(Decimal('0.1') ** currency.precision, rounding=ROUND_HALF_UP)
