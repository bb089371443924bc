"""
ai_billing - Credit Allocator

Splits a charge into the part covered by the monthly included allowance and
the overage that is billed externally.

The split is exact: ``from_included + overage == price`` for every input.
Currency rounding happens once, on the final overage, when it is converted
to minor units for reporting.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP

from ..core.errors import InvalidRequestError

ZERO = Decimal("0")


@dataclass(frozen=True)
class Allocation:
    """Result of splitting one charge."""
    from_included: Decimal
    overage: Decimal

    @property
    def total(self) -> Decimal:
        return self.from_included + self.overage


def allocate(price: Decimal, allowance: Decimal, spent_so_far: Decimal) -> Allocation:
    """
    Split ``price`` against an allowance given the spend before this charge.

    Args:
        price: Price of the new charge (>= 0)
        allowance: Included credits for the cycle (>= 0)
        spent_so_far: Cycle spend before this charge (>= 0)
    """
    for name, value in (("price", price), ("allowance", allowance), ("spent_so_far", spent_so_far)):
        if value < 0:
            raise InvalidRequestError(f"{name} must not be negative", param=name)

    if allowance <= 0:
        return Allocation(from_included=ZERO, overage=price)

    if spent_so_far >= allowance:
        return Allocation(from_included=ZERO, overage=price)

    if spent_so_far + price <= allowance:
        return Allocation(from_included=price, overage=ZERO)

    from_included = allowance - spent_so_far
    return Allocation(from_included=from_included, overage=price - from_included)


def to_minor_units(amount: Decimal, minor_units_per_major: int = 100) -> int:
    """Convert a major-unit amount to whole minor units, rounding half up."""
    scaled = amount * minor_units_per_major
    return int(scaled.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
