"""
Currency Precision Module

Handles ISO 4217 currency codes and Decimal precision for ledger amounts.
NEVER uses float for monetary values: floats are rejected at the boundary
instead of being converted.
"""

from decimal import Decimal, ROUND_HALF_UP, getcontext
from enum import Enum
from typing import Union
import re

# Set global decimal context for financial precision
getcontext().prec = 28

AmountLike = Union[Decimal, int, str]


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    USD = ("USD", 2)  # US Dollar, 2 decimal places
    EUR = ("EUR", 2)  # Euro, 2 decimal places
    GBP = ("GBP", 2)  # British Pound, 2 decimal places
    INR = ("INR", 2)  # Indian Rupee, 2 decimal places
    JPY = ("JPY", 0)  # Japanese Yen, 0 decimal places
    CHF = ("CHF", 2)  # Swiss Franc, 2 decimal places

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def quantum(self) -> Decimal:
        """Smallest representable unit, e.g. Decimal('0.01')"""
        return Decimal(1).scaleb(-self.precision)

    @classmethod
    def from_code(cls, code: str) -> 'Currency':
        """Look up a currency by ISO code"""
        try:
            return cls[code.upper()]
        except KeyError:
            raise ValueError(f"Unsupported currency code: {code}")


def to_decimal(value: AmountLike) -> Decimal:
    """
    Convert an incoming amount to Decimal without going through float

    Args:
        value: Decimal, int or numeric string

    Returns:
        Decimal value

    Raises:
        ValueError: If the value is a float, a bool, non-numeric or not finite
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise ValueError(f"Amount must be a fixed-point value, got {type(value).__name__}")

    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, str):
        result = decimal_from_string(value)
    else:
        raise ValueError(f"Unsupported amount type: {type(value).__name__}")

    if not result.is_finite():
        raise ValueError(f"Amount must be finite, got {result}")
    return result


# Optional sign and currency symbol, then either comma-grouped thousands with
# a fractional part or plain digits with an optional fractional part
_AMOUNT_PATTERN = re.compile(r"""
    ^(?P<sign>[+-])?
    [$€£¥₹]?
    (?:
        (?P<grouped>\d{1,3}(?:,\d{3})+)\.(?P<fraction>\d+)
      | (?P<plain>\d+(?:\.\d+)?)
    )$
""", re.VERBOSE | re.ASCII)


def decimal_from_string(value: str) -> Decimal:
    """
    Strictly convert a string to Decimal

    Accepts "1234.56", "-5", "$1,234.56". A comma is only read as a thousands
    separator when a decimal point follows. Exponents, embedded spaces and any
    other characters are rejected rather than stripped.

    Raises:
        ValueError: If the string is not a plain decimal amount
    """
    if not value or not value.strip():
        raise ValueError("Value must be a non-empty string")

    text = value.strip()
    match = _AMOUNT_PATTERN.match(text)
    if match is None:
        if ',' in text and '.' not in text:
            raise ValueError(f"Ambiguous decimal separator in '{value}'")
        raise ValueError(f"Cannot convert '{value}' to Decimal")

    if match.group('grouped'):
        digits = f"{match.group('grouped').replace(',', '')}.{match.group('fraction')}"
    else:
        digits = match.group('plain')

    return Decimal((match.group('sign') or '') + digits)


def fractional_digits(amount: Decimal) -> int:
    """Number of significant digits after the decimal point"""
    normalized = amount.normalize()
    exponent = normalized.as_tuple().exponent
    return max(0, -exponent) if isinstance(exponent, int) else 0


def has_valid_precision(amount: Decimal, currency: Currency) -> bool:
    """Check the amount has no more fractional digits than the currency allows"""
    return fractional_digits(amount) <= currency.precision


def quantize(amount: Decimal, currency: Currency) -> Decimal:
    """Round to currency precision (used for display and stored balances)"""
    return amount.quantize(currency.quantum, rounding=ROUND_HALF_UP)


def format_amount(amount: Decimal, currency: Currency) -> str:
    """Format for display"""
    if currency.precision == 0:
        return f"{currency.code} {amount:,.0f}"
    return f"{currency.code} {amount:,.{currency.precision}f}"
