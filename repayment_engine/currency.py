"""
Currency and Decimal Precision Module

Handles ISO 4217 currency codes and the rounding rules applied to every
figure the engine displays or stores. NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from dataclasses import dataclass
from enum import Enum
from typing import Any, Union
import re

# Set global decimal context for financial precision
getcontext().prec = 28  # High precision for schedule math

CENT = Decimal('0.01')
ZERO = Decimal('0')


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    NGN = ("NGN", 2, "₦")  # Nigerian Naira, 2 decimal places (kobo)
    USD = ("USD", 2, "$")      # US Dollar, 2 decimal places
    GBP = ("GBP", 2, "£")  # British Pound, 2 decimal places
    EUR = ("EUR", 2, "€")  # Euro, 2 decimal places

    def __init__(self, code: str, precision: int, symbol: str):
        self.code = code
        self.precision = precision
        self.symbol = symbol


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation with currency and proper precision.
    Used for figures that have reached the point of display; schedule math
    works on raw Decimal.
    """
    amount: Decimal
    currency: Currency = Currency.NGN

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', to_decimal(self.amount))

        # Round to currency precision
        object.__setattr__(self, 'amount', round_money(self.amount, self.currency))

    def to_string(self) -> str:
        """Format for display, e.g. 'NGN 76,054.84'"""
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"

    def to_display(self) -> str:
        """Format with the currency symbol, e.g. '₦76,054.84'"""
        sign = "-" if self.amount < ZERO else ""
        return f"{sign}{self.currency.symbol}{abs(self.amount):,.{self.currency.precision}f}"


def to_decimal(value: Union[Decimal, int, str, float]) -> Decimal:
    """
    Convert a supplied amount to Decimal without binary float artifacts.

    Floats go through str() so 0.1 becomes Decimal('0.1'), not its
    binary expansion.
    """
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool):
        raise ValueError(f"Cannot convert {value!r} to Decimal")
    elif isinstance(value, (int, str)):
        try:
            result = Decimal(value)
        except InvalidOperation:
            raise ValueError(f"Cannot convert '{value}' to Decimal")
    elif isinstance(value, float):
        result = Decimal(str(value))
    else:
        raise ValueError(f"Cannot convert {value!r} to Decimal")

    if not result.is_finite():
        raise ValueError(f"Amount must be a finite number, got {value!r}")
    return result


def round_money(value: Decimal, currency: Currency = Currency.NGN) -> Decimal:
    """
    Round a Decimal to currency precision using ROUND_HALF_UP

    Args:
        value: Decimal to round
        currency: Currency defining precision

    Returns:
        Properly rounded Decimal
    """
    return value.quantize(
        Decimal('0.1') ** currency.precision,
        rounding=ROUND_HALF_UP
    )


def decimal_from_string(value: Any) -> Decimal:
    """
    Safely convert free-text spreadsheet amounts to Decimal

    Commas are always treated as thousands separators ('76,042.78'),
    and currency symbols, codes and whitespace are discarded.

    Args:
        value: String (or number) representation of an amount

    Returns:
        Decimal value

    Raises:
        ValueError: If the value cannot be converted to a valid Decimal
    """
    if isinstance(value, (Decimal, int, float)) and not isinstance(value, bool):
        return to_decimal(value)

    if not value or not isinstance(value, str):
        raise ValueError("Value must be a non-empty string")

    # Accounting negatives: (1,000.00)
    text = value.strip()
    negative = text.startswith('(') and text.endswith(')')

    clean_value = re.sub(r'[^\d.\-+]', '', text)
    if not clean_value or clean_value in ('-', '+', '.'):
        raise ValueError(f"Cannot convert '{value}' to Decimal")

    try:
        result = Decimal(clean_value)
    except InvalidOperation:
        raise ValueError(f"Cannot convert '{value}' to Decimal")

    return -result if negative else result
