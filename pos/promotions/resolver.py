"""
Promotion resolver.

Percentage codes raise each eligible line to ``max(current, value)`` so two
percentage promotions never stack. Fixed-amount codes are split across the
eligible lines in proportion to their base and added on top of the existing
line discount, never past what a line has left to discount. Applied codes
can be previewed beforehand and removed afterwards.
"""
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from pos.cart.models import CartLineItem, CartSnapshot
from pos.cart.service import CartStore
from pos.errors import PromotionCode, PromotionError
from pos.logging import get_logger, sanitize_string_for_logging
from pos.pricing import line_base, price
from pos.services.money import HUNDRED, ZERO, clamp_percent, percent, round_money
from .models import PromotionDefinition, PromotionOutcome, PromotionType, normalize_code

logger = get_logger(__name__)


@dataclass(frozen=True)
class PromotionPlan:
    """New discount percent per line id, plus the amount allocated to each line."""
    line_discounts: dict[str, Decimal]
    allocations: dict[str, Decimal]


def is_eligible(promotion: PromotionDefinition, line: CartLineItem) -> bool:
    products_ok = not promotion.applicable_products or line.item_id in promotion.applicable_products
    categories_ok = not promotion.applicable_categories or line.category_id in promotion.applicable_categories
    return products_ok and categories_ok


def eligible_lines(promotion: PromotionDefinition, snapshot: CartSnapshot) -> list[CartLineItem]:
    return [line for line in snapshot.lines if is_eligible(promotion, line)]


def check_validity(promotion: PromotionDefinition, now: datetime) -> None:
    """Raise PromotionError if the promotion cannot be used at ``now``."""
    if not promotion.is_active:
        raise PromotionError(PromotionCode.INACTIVE)
    if promotion.start_date is not None and now < promotion.start_date:
        raise PromotionError(PromotionCode.NOT_YET_VALID)
    if promotion.end_date is not None and now > promotion.end_date:
        raise PromotionError(PromotionCode.EXPIRED)
    if promotion.usage_limit is not None and promotion.usage_count >= promotion.usage_limit:
        raise PromotionError(PromotionCode.USAGE_LIMIT_REACHED)


def _split_proportional(amount: Decimal, bases: dict[str, Decimal]) -> dict[str, Decimal]:
    eligible_base = sum(bases.values(), ZERO)
    positive = [line_id for line_id, base in bases.items() if base > 0]
    allocations = {line_id: ZERO for line_id in bases}
    if eligible_base <= 0 or not positive:
        return allocations

    allocated = ZERO
    for line_id in positive[:-1]:
        share = round_money(amount * bases[line_id] / eligible_base)
        allocations[line_id] = share
        allocated += share
    allocations[positive[-1]] = round_money(amount - allocated)
    return allocations


def allocate_fixed(
    amount: Decimal,
    bases: dict[str, Decimal],
    limits: Optional[dict[str, Decimal]] = None,
) -> dict[str, Decimal]:
    """
    Split ``amount`` across lines in proportion to their base.

    Shares are rounded to cents; the last positive-base line takes the
    remainder so the shares add up to ``amount`` exactly. With ``limits`` a
    line never gets more than its limit and the excess is split again over
    the lines that still have room.
    """
    allocations = {line_id: ZERO for line_id in bases}
    open_ids = [line_id for line_id, base in bases.items() if base > 0]
    left = amount
    while open_ids and left > 0:
        shares = _split_proportional(left, {line_id: bases[line_id] for line_id in open_ids})
        full = [line_id for line_id in open_ids if limits is not None and shares[line_id] > limits[line_id]]
        if not full:
            for line_id in open_ids:
                allocations[line_id] = shares[line_id]
            break
        for line_id in full:
            allocations[line_id] = limits[line_id]
            left -= limits[line_id]
        open_ids = [line_id for line_id in open_ids if line_id not in full]
    return allocations


def evaluate(
    promotion: PromotionDefinition,
    snapshot: CartSnapshot,
    now: Optional[datetime] = None,
) -> PromotionPlan:
    """
    Work out the line discounts a promotion produces for a snapshot.

    Pure; raises PromotionError when the promotion does not apply.
    """
    now = now or datetime.now(timezone.utc)
    check_validity(promotion, now)

    if promotion.type == PromotionType.FIXED and promotion.key in snapshot.applied_promotions:
        raise PromotionError(PromotionCode.ALREADY_APPLIED)

    lines = eligible_lines(promotion, snapshot)
    if not lines:
        raise PromotionError(PromotionCode.NO_ELIGIBLE_ITEMS)

    if promotion.min_purchase > 0:
        subtotal = price(snapshot).subtotal
        if subtotal < promotion.min_purchase:
            raise PromotionError(
                PromotionCode.MIN_PURCHASE_NOT_MET,
                detail=f"{promotion.min_purchase}",
            )

    bases = {
        line.line_id: line_base(line, snapshot.wholesale_mode, snapshot.wholesale_rate)
        for line in lines
    }
    eligible_base = sum(bases.values(), ZERO)

    if promotion.type == PromotionType.PERCENTAGE:
        return _plan_percentage(promotion, lines, bases, eligible_base)
    return _plan_fixed(promotion, lines, bases, eligible_base)


def _plan_percentage(promotion, lines, bases, eligible_base) -> PromotionPlan:
    value = clamp_percent(promotion.value)
    if promotion.max_discount is not None and eligible_base > 0:
        uncapped = percent(eligible_base, value)
        if uncapped > promotion.max_discount:
            value = clamp_percent(promotion.max_discount / eligible_base * HUNDRED)

    line_discounts = {}
    allocations = {}
    for line in lines:
        new_percent = max(line.discount_percent, value)
        line_discounts[line.line_id] = new_percent
        allocations[line.line_id] = round_money(percent(bases[line.line_id], new_percent))
    return PromotionPlan(line_discounts=line_discounts, allocations=allocations)


def _plan_fixed(promotion, lines, bases, eligible_base) -> PromotionPlan:
    if eligible_base <= 0:
        raise PromotionError(PromotionCode.ZERO_BASE)

    # What each line can still be discounted before it reaches 100%
    room = {
        line.line_id: round_money(bases[line.line_id] - percent(bases[line.line_id], line.discount_percent))
        for line in lines
    }
    available = sum(room.values(), ZERO)
    if available <= 0:
        raise PromotionError(PromotionCode.ZERO_BASE)

    amount = min(promotion.value, available)
    if promotion.max_discount is not None:
        amount = min(amount, promotion.max_discount)
    amount = round_money(amount)

    allocations = allocate_fixed(amount, bases, room)
    line_discounts = {}
    for line in lines:
        base = bases[line.line_id]
        if base <= 0:
            continue
        delta = allocations[line.line_id] / base * HUNDRED
        line_discounts[line.line_id] = clamp_percent(line.discount_percent + delta)
    return PromotionPlan(line_discounts=line_discounts, allocations=allocations)


def projected_discount(snapshot: CartSnapshot, plan: PromotionPlan) -> Decimal:
    """Extra line discount the plan adds to the snapshot's totals."""
    lines = tuple(
        replace(line, discount_percent=plan.line_discounts[line.line_id])
        if line.line_id in plan.line_discounts else line
        for line in snapshot.lines
    )
    before = price(snapshot).item_discounts
    after = price(replace(snapshot, lines=lines)).item_discounts
    return round_money(max(after - before, ZERO))


class PromotionResolver:
    """Applies, previews and removes promotion codes from a catalog on a cart."""

    def __init__(self, catalog):
        self.catalog = catalog

    async def _plan(
        self,
        key: str,
        snapshot: CartSnapshot,
        now: Optional[datetime],
    ) -> tuple[PromotionDefinition, PromotionPlan]:
        if not key:
            raise PromotionError(PromotionCode.INVALID_CODE)
        promotion = await self.catalog.get_promotion(key)
        if promotion is None:
            raise PromotionError(PromotionCode.INVALID_CODE)
        return promotion, evaluate(promotion, snapshot, now)

    async def apply_code(
        self,
        code: str,
        cart: CartStore,
        now: Optional[datetime] = None,
    ) -> PromotionOutcome:
        """
        Apply a code to the cart.

        Rejections come back as ``applied=False`` with a reason; the cart is
        left untouched in that case.
        """
        key = normalize_code(code)
        safe_code = sanitize_string_for_logging(key, 20)
        snapshot = cart.snapshot()
        try:
            promotion, plan = await self._plan(key, snapshot, now)
        except PromotionError as e:
            logger.warning(f"Promotion {safe_code} rejected: {e.code}")
            return PromotionOutcome(
                applied=False,
                code=key,
                reason=e.message,
                error_code=e.promotion_code,
            )

        discount_amount = projected_discount(snapshot, plan)
        cart.apply_promotion(promotion.key, plan.line_discounts)
        logger.info(f"Promotion {safe_code} applied: +{discount_amount} discount")
        return PromotionOutcome(
            applied=True,
            code=promotion.key,
            discount_amount=discount_amount,
            affected_lines=tuple(plan.line_discounts),
        )

    async def preview_code(
        self,
        code: str,
        cart: CartStore,
        now: Optional[datetime] = None,
    ) -> PromotionOutcome:
        """What applying ``code`` would do, without changing the cart."""
        key = normalize_code(code)
        snapshot = cart.snapshot()
        try:
            promotion, plan = await self._plan(key, snapshot, now)
        except PromotionError as e:
            return PromotionOutcome(
                applied=False,
                code=key,
                reason=e.message,
                error_code=e.promotion_code,
                action="preview",
            )
        return PromotionOutcome(
            applied=True,
            code=promotion.key,
            discount_amount=projected_discount(snapshot, plan),
            affected_lines=tuple(plan.line_discounts),
            action="preview",
        )

    def remove_code(self, code: str, cart: CartStore) -> PromotionOutcome:
        """Take an applied code off the cart, restoring the lines it changed."""
        key = normalize_code(code)
        safe_code = sanitize_string_for_logging(key, 20)
        before = price(cart.snapshot()).item_discounts
        try:
            restored = cart.remove_promotion(key)
        except PromotionError as e:
            logger.warning(f"Promotion {safe_code} not removed: {e.code}")
            return PromotionOutcome(
                applied=False,
                code=key,
                reason=e.message,
                error_code=e.promotion_code,
                action="remove",
            )
        after = price(cart.snapshot()).item_discounts
        return PromotionOutcome(
            applied=False,
            code=key,
            discount_amount=round_money(max(before - after, ZERO)),
            affected_lines=restored,
            action="remove",
        )
