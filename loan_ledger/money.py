"""
Money Helpers Module

Single-currency Decimal arithmetic for ledger amounts. NEVER uses float for
monetary values; every stored amount is quantized to the ledger precision.
"""

from decimal import Decimal, ROUND_HALF_UP, getcontext, InvalidOperation
from typing import Iterable, Union

# Set global decimal context for financial precision
getcontext().prec = 28

ZERO = Decimal('0.00')

AmountLike = Union[Decimal, int, str]


def to_decimal(value: AmountLike) -> Decimal:
    """Convert stored or user-supplied amounts to Decimal"""
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        # Go through str() so binary float noise does not leak in
        value = str(value)
    try:
        return Decimal(value)
    except InvalidOperation:
        raise ValueError(f"Invalid monetary amount: {value!r}")


def quantize(value: AmountLike, precision: int = 2) -> Decimal:
    """Round to the ledger precision (half up)"""
    return to_decimal(value).quantize(
        Decimal('0.1') ** precision,
        rounding=ROUND_HALF_UP
    )


def money_sum(values: Iterable[AmountLike], precision: int = 2) -> Decimal:
    """Sum amounts and round once at the end"""
    total = Decimal('0')
    for value in values:
        total += to_decimal(value)
    return quantize(total, precision)


def is_positive(value: AmountLike) -> bool:
    return to_decimal(value) > Decimal('0')
