"""Major/minor currency unit conversion.

The ledger keeps amounts in the major unit as `Decimal`; providers put either
minor-unit integers (x100) or major-unit decimals on the wire. Every
comparison happens in integer minor units after one rounding rule: half up to
the nearest integer.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum

MINOR_PER_MAJOR = 100


class WireUnit(str, Enum):
    MINOR = "minor"
    MAJOR = "major"


def parse_major(value) -> Decimal:
    """Parse a major-unit amount from the wire (str, int, float or Decimal)."""

    if isinstance(value, bool):
        raise ValueError("amount must be numeric")
    try:
        # Floats go through `str` so 0.1 stays 0.1.
        amount = Decimal(str(value)) if not isinstance(value, Decimal) else value
    except InvalidOperation as exc:
        raise ValueError(f"invalid amount: {value!r}") from exc
    if not amount.is_finite():
        raise ValueError(f"invalid amount: {value!r}")
    return amount


def to_minor(amount) -> int:
    """Major unit -> integer minor unit."""

    return int((parse_major(amount) * MINOR_PER_MAJOR).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def exact_minor(amount) -> int:
    """Major unit -> minor unit, refusing sub-minor precision instead of rounding it."""

    scaled = parse_major(amount) * MINOR_PER_MAJOR
    if scaled != scaled.to_integral_value():
        raise ValueError(f"amount has more than two decimal places: {amount!r}")
    return int(scaled)


def from_minor(amount_minor: int) -> Decimal:
    """Integer minor unit -> major unit with two decimal places."""

    return (Decimal(int(amount_minor)) / MINOR_PER_MAJOR).quantize(Decimal("0.01"))


def wire_to_minor(value, unit: WireUnit) -> int:
    """Normalize a provider wire amount to integer minor units."""

    if unit == WireUnit.MINOR:
        amount = parse_major(value)
        if amount != amount.to_integral_value():
            raise ValueError(f"minor-unit amount must be integral: {value!r}")
        return int(amount)
    return to_minor(value)


def amount_matches(payment_amount, wire_value, unit: WireUnit) -> bool:
    """True when the wire amount equals the ledger amount in minor units."""

    try:
        return wire_to_minor(wire_value, unit) == to_minor(payment_amount)
    except ValueError:
        return False
