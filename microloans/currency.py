"""
Currency Module

KES amount handling. Every monetary value is a Decimal rounded half-up to
two places at the point it is computed. NEVER uses float for money.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Union
import re

getcontext().prec = 28

CURRENCY_CODE = "KES"
CURRENCY_PRECISION = 2

_CENT = Decimal('0.1') ** CURRENCY_PRECISION

Amount = Union[Decimal, int, str]


def to_decimal(value: Amount) -> Decimal:
    """Convert a value to Decimal without passing through float"""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        # floats only ever arrive from JSON payloads; go through repr
        return Decimal(repr(value))
    return Decimal(str(value))


def round_currency(value: Amount) -> Decimal:
    """
    Round to currency precision (half-up).

    Idempotent: round_currency(round_currency(x)) == round_currency(x)
    """
    return to_decimal(value).quantize(_CENT, rounding=ROUND_HALF_UP)


def calculate_percentage(amount: Amount, rate: Amount) -> Decimal:
    """Apply a fractional rate (0.05 = 5%) to an amount, rounded"""
    return round_currency(to_decimal(amount) * to_decimal(rate))


def format_amount(value: Amount) -> str:
    """Format as a plain number with thousands separators: 1,500.50"""
    return f"{round_currency(value):,.2f}"


def format_kes(value: Amount) -> str:
    """Format for display: KES 1,500.50"""
    return f"{CURRENCY_CODE} {format_amount(value)}"


def format_whole_kes(value: Amount) -> str:
    """Format without decimals, used in validation messages: KES 1,000"""
    return f"{CURRENCY_CODE} {to_decimal(value):,.0f}"


def parse_kes(value: str) -> Decimal:
    """
    Parse a KES string such as "KES 1,500.50" into a Decimal.

    Returns 0 when the value cannot be parsed.
    """
    if not value or not isinstance(value, str):
        return Decimal('0')

    cleaned = re.sub(r'(?i)kes|[,\s]', '', value.strip())
    try:
        return round_currency(Decimal(cleaned))
    except InvalidOperation:
        return Decimal('0')
