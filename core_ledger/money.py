"""
Money Handling Module

All balances and amounts inside the ledger are integers in minor currency
units (cents). This module converts between the decimal major-unit strings
used at the API boundary and those integers. NEVER uses float for monetary
values.
"""

from decimal import Context, Decimal, InvalidOperation, ROUND_DOWN
from typing import Union
import re

from .errors import InvalidAmount

DEFAULT_MINOR_UNIT_DIGITS = 2

_AMOUNT_PATTERN = re.compile(r'^[+-]?(\d+(\.\d*)?|\.\d+)$')


def _exact_context(value: Decimal, digits: int) -> Context:
    """Precision wide enough that rescaling value never rounds"""
    return Context(prec=len(value.as_tuple().digits) + abs(digits) + 1)


def to_minor_units(value: Union[str, int, Decimal],
                   digits: int = DEFAULT_MINOR_UNIT_DIGITS) -> int:
    """
    Convert a major-unit amount into integer minor units

    Args:
        value: Decimal string ("12.34"), Decimal, or whole-number int
        digits: Number of minor-unit digits for the currency

    Returns:
        Amount in minor units (1234 for "12.34" with 2 digits)

    Raises:
        InvalidAmount: If the value is a float, not numeric, or has more
            fractional digits than the currency allows
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise InvalidAmount(f"Amount must be a decimal string, got {type(value).__name__}")

    if isinstance(value, int):
        amount = Decimal(value)
    elif isinstance(value, Decimal):
        amount = value
    elif isinstance(value, str):
        clean_value = value.strip().replace(',', '')
        if not _AMOUNT_PATTERN.match(clean_value):
            raise InvalidAmount(f"Cannot convert '{value}' to an amount")
        try:
            amount = Decimal(clean_value)
        except InvalidOperation:
            raise InvalidAmount(f"Cannot convert '{value}' to an amount")
    else:
        raise InvalidAmount(f"Unsupported amount type: {type(value).__name__}")

    if not amount.is_finite():
        raise InvalidAmount(f"Amount must be finite, got {value}")

    scaled = amount.scaleb(digits, context=_exact_context(amount, digits))
    if scaled != scaled.to_integral_value(rounding=ROUND_DOWN):
        raise InvalidAmount(
            f"Amount {value} has more than {digits} fractional digits"
        )
    return int(scaled)


def from_minor_units(amount: int, digits: int = DEFAULT_MINOR_UNIT_DIGITS) -> Decimal:
    """Convert integer minor units back to a major-unit Decimal"""
    value = Decimal(amount)
    context = _exact_context(value, digits)
    return value.scaleb(-digits, context=context).quantize(
        Decimal(1).scaleb(-digits), context=context
    )


def format_amount(amount: int, digits: int = DEFAULT_MINOR_UNIT_DIGITS) -> str:
    """Format minor units for display, e.g. 1234 -> '12.34'"""
    return str(from_minor_units(amount, digits))


def validate_amount(amount, maximum: int = None) -> int:
    """
    Check that an amount handed to the ledger is a positive integer

    bool and float are rejected even though Python treats them as numbers.
    """
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount(
            f"Amount must be an integer number of minor units, got {type(amount).__name__}"
        )
    if amount <= 0:
        raise InvalidAmount(f"Amount must be positive, got {amount}")
    if maximum is not None and amount > maximum:
        raise InvalidAmount(f"Amount {amount} exceeds the maximum of {maximum}")
    return amount
