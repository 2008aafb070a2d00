"""Decimal money helpers.

Bookings store money in major units (dollars) while the ledger reports minor
units (cents). Every conversion between the two goes through this module.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any, Optional

MONEY_QUANTUM = Decimal("0.01")
MINOR_UNITS_PER_MAJOR = Decimal("100")
ZERO = Decimal("0")


def to_decimal(value: Any) -> Decimal:
    """Convert a number-like value to Decimal. ``None`` becomes zero.

    Raises:
        ValueError: If the value is not numeric.
    """
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"Invalid monetary value: {value!r}") from exc


def non_negative(value: Any) -> Decimal:
    """Convert to Decimal and clamp negatives to zero."""
    amount = to_decimal(value)
    if amount.is_nan() or amount < ZERO:
        return ZERO
    return amount


def quantize_money(value: Any) -> Decimal:
    """Round to whole cents, half up."""
    return to_decimal(value).quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def to_major_units(amount_minor: Optional[int]) -> Optional[Decimal]:
    """Convert a ledger amount in minor units to major units."""
    if amount_minor is None:
        return None
    return quantize_money(Decimal(int(amount_minor)) / MINOR_UNITS_PER_MAJOR)


def to_minor_units(amount: Any) -> int:
    """Convert a major-unit amount to integer minor units, rounding to the nearest cent."""
    cents = (to_decimal(amount) * MINOR_UNITS_PER_MAJOR).quantize(
        Decimal("1"), rounding=ROUND_HALF_UP
    )
    return int(cents)


def differs(stored: Any, computed: Any, tolerance: Decimal = MONEY_QUANTUM) -> bool:
    """True when two amounts differ by more than ``tolerance``. A missing stored value always differs."""
    if stored is None:
        return True
    return abs(to_decimal(stored) - to_decimal(computed)) > tolerance
