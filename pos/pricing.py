"""
Pricing - pure totals computation for a cart snapshot.

Steps run in a fixed order:
1. Line base (wholesale aware)
2. Line total after the per-line discount
3. Subtotal over all lines
4. Subtotal over lines not under wholesale pricing
5. General discount on that non-wholesale subtotal
6. Tax (exclusive, or extracted when prices include tax)
7. Total

Each aggregate is rounded with ``round_money`` before it feeds the next one.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

from pos.cart.models import CartLineItem, CartSnapshot
from pos.services.money import (
    ONE,
    ZERO,
    clamp_percent,
    clamp_rate,
    divide,
    percent,
    round_money,
    to_decimal,
    to_float,
)

# Mixed payments settle when the splits are within this of the total
SPLIT_TOLERANCE = Decimal("0.01")


@dataclass(frozen=True)
class LineTotals:
    """Priced view of one cart line."""
    line_id: str
    base: Decimal
    discount_percent: Decimal
    discount_amount: Decimal
    total: Decimal
    wholesale_applied: bool

    def to_dict(self) -> dict:
        return {
            "line_id": self.line_id,
            "base": to_float(self.base),
            "discount_percent": to_float(self.discount_percent),
            "discount_amount": to_float(self.discount_amount),
            "total": to_float(self.total),
            "wholesale_applied": self.wholesale_applied,
        }


@dataclass(frozen=True)
class Totals:
    """
    Result of pricing a snapshot.

    ``total == round_money(subtotal - general_discount_amount + tax)`` always
    holds. When prices include tax, ``subtotal`` and ``general_discount_amount``
    are reported net of tax and ``total`` equals the tax-inclusive amount due.
    """
    subtotal: Decimal = ZERO
    non_wholesale_subtotal: Decimal = ZERO
    general_discount_amount: Decimal = ZERO
    tax: Decimal = ZERO
    total: Decimal = ZERO
    item_discounts: Decimal = ZERO
    wholesale_savings: Decimal = ZERO
    lines: tuple[LineTotals, ...] = ()

    def to_dict(self) -> dict:
        return {
            "subtotal": to_float(self.subtotal),
            "non_wholesale_subtotal": to_float(self.non_wholesale_subtotal),
            "general_discount_amount": to_float(self.general_discount_amount),
            "tax": to_float(self.tax),
            "total": to_float(self.total),
            "item_discounts": to_float(self.item_discounts),
            "wholesale_savings": to_float(self.wholesale_savings),
            "lines": [line.to_dict() for line in self.lines],
        }


def is_wholesale_priced(line: CartLineItem, wholesale_mode: bool) -> bool:
    """Wholesale pricing applies to product lines only."""
    return wholesale_mode and line.is_product


def effective_unit_price(line: CartLineItem, wholesale_mode: bool, wholesale_rate) -> Decimal:
    if not is_wholesale_priced(line, wholesale_mode):
        return line.unit_price
    if line.wholesale_price is not None:
        return line.wholesale_price
    return line.unit_price * (ONE - clamp_rate(wholesale_rate))


def line_base(line: CartLineItem, wholesale_mode: bool, wholesale_rate) -> Decimal:
    """Post-wholesale, pre-discount value of a line."""
    return round_money(effective_unit_price(line, wholesale_mode, wholesale_rate) * line.quantity)


def price_line(line: CartLineItem, wholesale_mode: bool, wholesale_rate) -> LineTotals:
    base = line_base(line, wholesale_mode, wholesale_rate)
    discount_percent = clamp_percent(line.discount_percent)
    discount_amount = round_money(percent(base, discount_percent))
    return LineTotals(
        line_id=line.line_id,
        base=base,
        discount_percent=discount_percent,
        discount_amount=discount_amount,
        total=round_money(base - discount_amount),
        wholesale_applied=is_wholesale_priced(line, wholesale_mode),
    )


def price(snapshot: CartSnapshot) -> Totals:
    """Compute totals for a snapshot. Pure: same snapshot, same result."""
    if snapshot.is_empty:
        return Totals()

    line_totals = tuple(
        price_line(line, snapshot.wholesale_mode, snapshot.wholesale_rate)
        for line in snapshot.lines
    )

    subtotal = round_money(sum((lt.total for lt in line_totals), ZERO))
    non_wholesale_subtotal = round_money(
        sum((lt.total for lt in line_totals if not lt.wholesale_applied), ZERO)
    )
    general_discount = round_money(
        percent(non_wholesale_subtotal, clamp_percent(snapshot.general_discount_percent))
    )
    item_discounts = round_money(sum((lt.discount_amount for lt in line_totals), ZERO))
    wholesale_savings = round_money(sum(
        (
            round_money(line.unit_price * line.quantity) - lt.base
            for line, lt in zip(snapshot.lines, line_totals)
            if lt.wholesale_applied
        ),
        ZERO,
    ))

    rate = clamp_rate(snapshot.tax_rate)
    if snapshot.prices_include_tax:
        # Line prices are gross; extract the tax and report the net parts
        gross_due = round_money(subtotal - general_discount)
        tax = round_money(divide(gross_due * rate, ONE + rate))
        general_discount = round_money(divide(general_discount, ONE + rate))
        total = gross_due
        subtotal = round_money(total - tax + general_discount)
    else:
        tax = round_money((subtotal - general_discount) * rate)
        total = round_money(subtotal - general_discount + tax)

    return Totals(
        subtotal=subtotal,
        non_wholesale_subtotal=non_wholesale_subtotal,
        general_discount_amount=general_discount,
        tax=tax,
        total=total,
        item_discounts=item_discounts,
        wholesale_savings=wholesale_savings,
        lines=line_totals,
    )


def change_due(total, received) -> Decimal:
    """Change to hand back for a cash payment; never negative."""
    change = to_decimal(received) - to_decimal(total)
    return round_money(change) if change > 0 else ZERO


def remaining_amount(total, amounts: Iterable) -> Decimal:
    """Signed amount still owed: positive is owed, negative is excess."""
    paid = sum((to_decimal(amount) for amount in amounts), ZERO)
    return round_money(to_decimal(total) - paid)


def is_settled(remaining) -> bool:
    return abs(to_decimal(remaining)) <= SPLIT_TOLERANCE
