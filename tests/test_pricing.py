"""
Tests for the pricing engine
"""
from decimal import Decimal

import pytest

from pos.cart import CartLineItem, CartSnapshot
from pos.pricing import (
    Totals,
    change_due,
    is_settled,
    line_base,
    price,
    remaining_amount,
)
from pos.services.money import round_money


def snapshot_of(*lines, **kwargs):
    return CartSnapshot(lines=lines, **kwargs)


class TestScenarios:
    """Reference checkout scenarios."""

    def test_scenario_plain_tax(self, cart, product_a):
        """2 x 100 at 21% tax: subtotal 200, tax 42, total 242."""
        cart.add(product_a, 2)
        totals = price(cart.snapshot())

        assert totals.subtotal == Decimal("200.00")
        assert totals.general_discount_amount == Decimal("0.00")
        assert totals.tax == Decimal("42.00")
        assert totals.total == Decimal("242.00")

    def test_scenario_general_discount(self, cart, product_a):
        """Same cart with a 10% general discount: tax 37.80, total 217.80."""
        cart.add(product_a, 2)
        cart.set_general_discount(10)
        totals = price(cart.snapshot())

        assert totals.general_discount_amount == Decimal("20.00")
        assert totals.subtotal - totals.general_discount_amount == Decimal("180.00")
        assert totals.tax == Decimal("37.80")
        assert totals.total == Decimal("217.80")


class TestPriceProperties:
    """Invariants of price()."""

    def test_empty_snapshot_is_zero(self):
        """Empty cart prices to all zeros."""
        assert price(CartSnapshot(tax_rate=Decimal("0.21"))) == Totals()

    def test_idempotent(self, cart, product_a, service_repair):
        """Pricing the same snapshot twice gives identical results."""
        cart.add(product_a, 3)
        cart.add(service_repair, 1)
        cart.set_line_discount("prod-a", 7.5)
        cart.set_general_discount(3)
        snapshot = cart.snapshot()

        assert price(snapshot) == price(snapshot)

    @pytest.mark.parametrize("include_tax", [False, True])
    @pytest.mark.parametrize("wholesale", [False, True])
    def test_total_equals_parts(self, include_tax, wholesale):
        """total == round(subtotal - discount + tax) in every mode."""
        lines = (
            CartLineItem(item_id="a", name="A", unit_price="19.99", quantity=3, discount_percent=15),
            CartLineItem(item_id="b", name="B", unit_price="33.333", quantity=7),
            CartLineItem(item_id="s", name="Repair", unit_price="12.49", quantity=1, kind="service"),
        )
        snapshot = snapshot_of(
            *lines,
            wholesale_mode=wholesale,
            general_discount_percent=Decimal("12.5"),
            tax_rate=Decimal("0.21"),
            prices_include_tax=include_tax,
        )
        totals = price(snapshot)

        assert totals.total == round_money(totals.subtotal - totals.general_discount_amount + totals.tax)

    def test_every_aggregate_is_in_cents(self):
        """Aggregates are rounded to two decimals."""
        snapshot = snapshot_of(
            CartLineItem(item_id="a", name="A", unit_price="19.99", quantity=3, discount_percent=15),
            tax_rate=Decimal("0.21"),
        )
        totals = price(snapshot)

        assert totals.subtotal == Decimal("50.97")
        assert totals.tax == Decimal("10.70")
        assert totals.total == Decimal("61.67")
        for value in (totals.subtotal, totals.tax, totals.total, totals.general_discount_amount):
            assert value == value.quantize(Decimal("0.01"))

    def test_discount_above_100_clamped(self):
        """General discount over 100% behaves as 100%."""
        snapshot = snapshot_of(
            CartLineItem(item_id="a", name="A", unit_price=100, quantity=1),
            general_discount_percent=Decimal("250"),
        )
        totals = price(snapshot)

        assert totals.general_discount_amount == Decimal("100.00")
        assert totals.total == Decimal("0.00")


class TestWholesale:
    """Wholesale pricing."""

    def test_derived_wholesale_price(self, cart, product_a):
        """Without an explicit price, wholesale is unit * (1 - rate)."""
        cart.add(product_a, 2)
        cart.toggle_wholesale(True)
        cart.set_tax(0, False)
        totals = price(cart.snapshot())

        assert totals.subtotal == Decimal("180.00")
        assert totals.wholesale_savings == Decimal("20.00")

    def test_explicit_wholesale_price(self, cart, product_wholesale):
        """An explicit wholesale price wins over the rate."""
        cart.add(product_wholesale, 2)
        cart.toggle_wholesale(True)
        line = cart.lines[0]

        assert line_base(line, True, Decimal("0.10")) == Decimal("140.00")

    def test_service_unaffected(self):
        """Wholesale mode never changes a service line's base."""
        line = CartLineItem(item_id="s", name="Repair", unit_price=50, quantity=2, kind="service",
                            wholesale_price=10)
        assert line_base(line, True, Decimal("0.5")) == line_base(line, False, Decimal("0.5"))

    def test_general_discount_skips_wholesale_lines(self, cart, product_a, service_repair):
        """With wholesale on, the general discount only reduces service lines."""
        cart.add(product_a, 2)
        cart.add(service_repair, 1)
        cart.toggle_wholesale(True)
        cart.set_general_discount(10)
        cart.set_tax(0, False)
        totals = price(cart.snapshot())

        assert totals.subtotal == Decimal("230.00")
        assert totals.non_wholesale_subtotal == Decimal("50.00")
        assert totals.general_discount_amount == Decimal("5.00")
        assert totals.total == Decimal("225.00")

    def test_general_discount_all_lines_when_retail(self, cart, product_a, service_repair):
        """With wholesale off, every line is in the discount base."""
        cart.add(product_a, 2)
        cart.add(service_repair, 1)
        cart.set_general_discount(10)
        cart.set_tax(0, False)
        totals = price(cart.snapshot())

        assert totals.general_discount_amount == Decimal("25.00")


class TestInclusiveTax:
    """Prices that already include tax."""

    def test_extracts_tax(self):
        """110 gross at 10% is 100 net plus 10 tax."""
        snapshot = snapshot_of(
            CartLineItem(item_id="a", name="A", unit_price=110, quantity=1),
            tax_rate=Decimal("0.10"),
            prices_include_tax=True,
        )
        totals = price(snapshot)

        assert totals.total == Decimal("110.00")
        assert totals.tax == Decimal("10.00")
        assert totals.subtotal == Decimal("100.00")

    def test_discount_reported_net(self):
        """A 10% discount on 110 gross leaves 99 due, 9 of it tax."""
        snapshot = snapshot_of(
            CartLineItem(item_id="a", name="A", unit_price=110, quantity=1),
            general_discount_percent=Decimal("10"),
            tax_rate=Decimal("0.10"),
            prices_include_tax=True,
        )
        totals = price(snapshot)

        assert totals.total == Decimal("99.00")
        assert totals.tax == Decimal("9.00")
        assert totals.general_discount_amount == Decimal("10.00")
        assert totals.subtotal == Decimal("100.00")


class TestPaymentHelpers:
    """change_due / remaining_amount / is_settled."""

    def test_change_due(self):
        """Change is received minus total, never negative."""
        assert change_due(Decimal("242.00"), 300) == Decimal("58.00")
        assert change_due(Decimal("242.00"), 200) == Decimal("0")

    def test_remaining_signed(self):
        """Remaining is positive when owed and negative when overpaid."""
        assert remaining_amount(Decimal("242.00"), [100, 142]) == Decimal("0.00")
        assert remaining_amount(Decimal("242.00"), [100, 100]) == Decimal("42.00")
        assert remaining_amount(Decimal("242.00"), [100, 150]) == Decimal("-8.00")

    def test_is_settled_tolerance(self):
        """One cent either way settles."""
        assert is_settled(Decimal("0.01"))
        assert is_settled(Decimal("-0.01"))
        assert not is_settled(Decimal("0.02"))
