"""Amount conversion between display units and on-chain integer units"""

from decimal import Decimal, InvalidOperation, ROUND_DOWN
from typing import Union

Number = Union[Decimal, int, float, str]


def to_decimal(value: Number) -> Decimal:
    """Parse a user/config supplied amount; floats go through str to avoid binary noise"""
    if isinstance(value, float):
        value = repr(value)
    try:
        parsed = Decimal(str(value).strip())
    except InvalidOperation:
        raise ValueError(f"Invalid amount: {value!r}")
    if not parsed.is_finite():
        raise ValueError(f"Amount must be finite: {value!r}")
    return parsed


def from_base_units(raw: int, decimals: int) -> Decimal:
    """Scale an integer amount (wei, token units) to display units exactly"""
    return Decimal(int(raw)).scaleb(-decimals)


def to_base_units(amount: Number, decimals: int) -> int:
    """Scale a display amount to integer units, truncating sub-unit dust"""
    scaled = to_decimal(amount).scaleb(decimals)
    return int(scaled.to_integral_value(rounding=ROUND_DOWN))


def format_amount(amount: Decimal) -> str:
    """Plain decimal string without exponent or trailing zeros ("7.5", "50", "0")"""
    normalized = amount.normalize()
    if normalized == 0:
        return "0"
    return format(normalized, 'f')
