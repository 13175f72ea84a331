"""Integer currency helpers. Every amount at rest is whole currency units."""

from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP
from typing import Union

Number = Union[int, float, str, Decimal]


def to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_units(value: Number) -> int:
    return int(to_decimal(value).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def floor_units(value: Number) -> int:
    return int(to_decimal(value).quantize(Decimal("1"), rounding=ROUND_DOWN))


def net_of_fee(gross: int, fee_rate: Decimal) -> int:
    """Reverse a fee that was added on top: 2200 at 10% -> 2000."""
    return round_units(to_decimal(gross) / (Decimal("1") + fee_rate))


def weighted_share(pool: int, weight: int, total_weight: int) -> int:
    if pool <= 0 or weight <= 0 or total_weight <= 0:
        return 0
    return floor_units(Decimal(pool) * Decimal(weight) / Decimal(total_weight))
