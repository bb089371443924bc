"""
ai_billing - Credit Allocation Tests

Tests for splitting a charge between included credits and overage, and
for the minor-unit conversion used when reporting.
"""

import random
from decimal import Decimal

import pytest

from ai_billing.billing.allocator import Allocation, allocate, to_minor_units
from ai_billing.core.errors import InvalidRequestError


D = Decimal


# ============================================================
# Allocation branches
# ============================================================

class TestAllocate:
    """Tests for allocate()."""

    def test_no_allowance_all_overage(self):
        assert allocate(D("3"), D("0"), D("0")) == Allocation(D("0"), D("3"))

    def test_allowance_exhausted_all_overage(self):
        assert allocate(D("3"), D("10"), D("10")) == Allocation(D("0"), D("3"))
        assert allocate(D("3"), D("10"), D("12.5")) == Allocation(D("0"), D("3"))

    def test_fits_in_allowance(self):
        assert allocate(D("2"), D("10"), D("8")) == Allocation(D("2"), D("0"))

    def test_crosses_allowance(self):
        """Test the crossing charge: allowance 10, spent 8, price 5."""
        allocation = allocate(D("5"), D("10"), D("8"))

        assert allocation.from_included == D("2")
        assert allocation.overage == D("3")

    def test_zero_price(self):
        assert allocate(D("0"), D("10"), D("4")) == Allocation(D("0"), D("0"))

    def test_sub_cent_amounts_kept_exact(self):
        allocation = allocate(D("0.0105"), D("0.005"), D("0.001"))

        assert allocation.from_included == D("0.004")
        assert allocation.overage == D("0.0065")

    @pytest.mark.parametrize("name,args", [
        ("price", (D("-1"), D("10"), D("0"))),
        ("allowance", (D("1"), D("-10"), D("0"))),
        ("spent_so_far", (D("1"), D("10"), D("-0.01"))),
    ])
    def test_negative_inputs_rejected(self, name, args):
        with pytest.raises(InvalidRequestError) as exc_info:
            allocate(*args)

        assert exc_info.value.error.param == name

    def test_split_is_exact_and_bounded(self):
        """Test from_included + overage == price and from_included <= headroom."""
        rng = random.Random(20260101)
        for _ in range(500):
            price = D(rng.randint(0, 100_000)) / D(10_000)
            allowance = D(rng.randint(0, 50_000)) / D(1_000)
            spent = D(rng.randint(0, 60_000)) / D(1_000)

            allocation = allocate(price, allowance, spent)

            assert allocation.total == price
            assert allocation.from_included >= 0
            assert allocation.overage >= 0
            assert allocation.from_included <= max(D("0"), allowance - spent)


# ============================================================
# Minor units
# ============================================================

class TestToMinorUnits:
    """Tests for to_minor_units()."""

    @pytest.mark.parametrize("amount,expected", [
        ("3", 300),
        ("0.005", 1),
        ("0.004", 0),
        ("0.125", 13),
        ("12.344", 1234),
        ("0", 0),
    ])
    def test_rounds_half_up(self, amount, expected):
        assert to_minor_units(D(amount)) == expected

    def test_other_currency_exponent(self):
        """Test a currency without minor units (e.g. JPY)."""
        assert to_minor_units(D("149.5"), minor_units_per_major=1) == 150
