"""
fixed_point.py - Truncating 18-digit fixed-point arithmetic

All vault amounts carry at most 18 fractional digits. Products and quotients
are computed exactly under a wide local context, then truncated toward zero
to 18 digits. Two parties evaluating the same expression in the same order
always get the same answer, which is what makes purchase quotes verifiable.

Operation order matters: mul(mul(a, b), c) and mul(a, mul(b, c)) can differ
in the last digit. Callers document the order they use.
"""

from decimal import Decimal, Context, ROUND_DOWN, localcontext
from typing import Union

from .core import SECONDS_PER_YEAR

Number = Union[Decimal, int, str]

DECIMALS = 18
QUANTUM = Decimal(1).scaleb(-DECIMALS)

# Wide enough that no product or quotient of vault amounts is rounded before
# the explicit truncation.
_FIXED_POINT_CONTEXT = Context(prec=100, rounding=ROUND_DOWN)


def to_fixed(value: Number) -> Decimal:
    """
    Convert a value to an 18-digit fixed-point Decimal, truncating extra digits.

    Floats go through str() so that 0.1 becomes Decimal("0.1").
    """
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    if value.is_nan() or value.is_infinite():
        raise ValueError(f"Fixed-point value must be finite, got {value}")
    return truncate(value)


def truncate(value: Decimal) -> Decimal:
    """Truncate toward zero to 18 fractional digits."""
    return value.quantize(QUANTUM, rounding=ROUND_DOWN, context=_FIXED_POINT_CONTEXT)


def mul(a: Number, b: Number) -> Decimal:
    """Truncating fixed-point product."""
    with localcontext(_FIXED_POINT_CONTEXT):
        return truncate(Decimal(a) * Decimal(b))


def div(a: Number, b: Number) -> Decimal:
    """
    Truncating fixed-point quotient.

    Raises:
        ZeroDivisionError: If b is zero
    """
    b = Decimal(b)
    if b == 0:
        raise ZeroDivisionError("fixed-point division by zero")
    with localcontext(_FIXED_POINT_CONTEXT):
        return truncate(Decimal(a) / b)


def mul_div(a: Number, b: Number, c: Number) -> Decimal:
    """Compute a*b/c with a single truncation."""
    c = Decimal(c)
    if c == 0:
        raise ZeroDivisionError("fixed-point division by zero")
    with localcontext(_FIXED_POINT_CONTEXT):
        return truncate(Decimal(a) * Decimal(b) / c)


def normalize_rate(annual_rate: Number) -> Decimal:
    """Convert an annualized rate to a per-second rate (e.g. 0.05 -> 0.000000001585489599)."""
    return div(annual_rate, SECONDS_PER_YEAR)
