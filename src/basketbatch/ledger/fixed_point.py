# src/basketbatch/ledger/fixed_point.py
from __future__ import annotations

"""Integer fixed-point helpers.

All arithmetic floors. Decimal is only used to parse and render human strings.
"""

from decimal import ROUND_FLOOR, Decimal, InvalidOperation, localcontext
from typing import Any

from basketbatch.ledger.constants import SCALE, UNIT_DECIMALS


def require_int(v: Any, *, field: str) -> int:
    # bool is an int subclass; disallow it explicitly
    if isinstance(v, bool) or not isinstance(v, int):
        raise TypeError(f"{field} must be int (got {type(v).__name__})")
    return v


def mul_div(a: int, b: int, denominator: int) -> int:
    """floor(a * b / denominator) for non-negative operands."""
    if denominator <= 0:
        raise ZeroDivisionError("denominator must be > 0")
    return (int(a) * int(b)) // int(denominator)


def mul_scaled(a: int, b: int) -> int:
    return mul_div(a, b, SCALE)


def div_scaled(a: int, b: int) -> int:
    return mul_div(a, SCALE, b)


def parse_units(value: Any, decimals: int = UNIT_DECIMALS) -> int:
    """Parse "9.95" into base units. Extra precision is truncated."""
    if isinstance(value, bool):
        raise ValueError("bool is not a valid amount")
    if isinstance(value, int):
        return value * 10**decimals
    try:
        d = Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"not a decimal amount: {value!r}") from e
    if not d.is_finite():
        raise ValueError(f"not a finite amount: {value!r}")
    with localcontext() as ctx:
        # default 28-digit precision would round large 18-decimal amounts
        ctx.prec = 96
        return int((d * (Decimal(10) ** decimals)).to_integral_value(rounding=ROUND_FLOOR))


def format_units(value: int, decimals: int = UNIT_DECIMALS) -> str:
    """Render base units as a decimal string, e.g. 2492500000000000000 -> "2.4925"."""
    v = int(value)
    sign = "-" if v < 0 else ""
    whole, frac = divmod(abs(v), 10**decimals)
    if frac == 0:
        return f"{sign}{whole}.0"
    frac_s = str(frac).rjust(decimals, "0").rstrip("0")
    return f"{sign}{whole}.{frac_s}"
