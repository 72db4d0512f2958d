from decimal import Decimal, ROUND_HALF_UP
from typing import Union

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
HUNDRED = Decimal("100")


def to_decimal(value: Union[Decimal, int, float, str]) -> Decimal:
    # str() first so floats keep their shortest repr (1999.99, not 1999.9899...)
    return value if isinstance(value, Decimal) else Decimal(str(value))


def round_money(value: Union[Decimal, int, float, str]) -> Decimal:
    """Round to cents, ties away from zero."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def percent_of(amount: Decimal, percent: Decimal) -> Decimal:
    return round_money(to_decimal(amount) * to_decimal(percent) / HUNDRED)
