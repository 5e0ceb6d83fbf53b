"""Cart store: owns the lines of the sale being rung up."""
from dataclasses import replace
from decimal import Decimal
from typing import Optional

from pos.errors import LineNotFoundError, OutOfStockError, PromotionCode, PromotionError
from pos.logging import get_logger, sanitize_id_for_logging, sanitize_string_for_logging
from pos.services.models import Customer, Product
from pos.services.money import ZERO, clamp_percent, clamp_rate, to_decimal
from .models import CartLineItem, CartSnapshot, LineKind, make_line_id

logger = get_logger(__name__)


class CartStore:
    """
    Mutable cart for one active sale.

    Features:
    - Merge on add by item id + variant, quantities clamped to available stock
    - Wholesale mode, per-line and cart-wide discounts
    - Customer selection with automatic VIP discount
    - Immutable snapshots for pricing, tagged with a version counter

    Every mutating method validates its input before touching state, so a
    rejected call leaves the cart unchanged.
    """

    def __init__(
        self,
        tax_rate: Decimal = Decimal("0.10"),
        prices_include_tax: bool = False,
        wholesale_rate: Decimal = Decimal("0.10"),
    ):
        self._lines: list[CartLineItem] = []
        self._tax_rate = clamp_rate(tax_rate)
        self._prices_include_tax = prices_include_tax
        self._wholesale_rate = clamp_rate(wholesale_rate)
        self._wholesale_mode = False
        self._general_discount = ZERO
        self._manual_general_discount = False
        self._customer: Optional[Customer] = None
        self._applied_promotions: list[str] = []
        # code -> line id -> (discount percent, promo tag) before the code was written
        self._promotion_history: dict[str, dict[str, tuple[Decimal, Optional[str]]]] = {}
        self._version = 0

    @classmethod
    def from_settings(cls, settings) -> "CartStore":
        return cls(
            tax_rate=settings.tax_rate,
            prices_include_tax=settings.prices_include_tax,
            wholesale_rate=settings.wholesale_discount_rate,
        )

    # ==================== READ ====================

    @property
    def version(self) -> int:
        """Incremented on every mutation."""
        return self._version

    @property
    def lines(self) -> tuple[CartLineItem, ...]:
        return tuple(self._lines)

    @property
    def is_empty(self) -> bool:
        return not self._lines

    @property
    def wholesale_mode(self) -> bool:
        return self._wholesale_mode

    @property
    def general_discount_percent(self) -> Decimal:
        return self._general_discount

    @property
    def customer(self) -> Optional[Customer]:
        return self._customer

    @property
    def applied_promotions(self) -> tuple[str, ...]:
        return tuple(self._applied_promotions)

    def get_line(self, line_id: str) -> CartLineItem:
        index = self._index_of(line_id)
        if index is None:
            raise LineNotFoundError(line_id)
        return self._lines[index]

    def snapshot(self) -> CartSnapshot:
        """Consistent copy of the current cart for pricing."""
        return CartSnapshot(
            lines=tuple(self._lines),
            wholesale_mode=self._wholesale_mode,
            general_discount_percent=self._general_discount,
            tax_rate=self._tax_rate,
            prices_include_tax=self._prices_include_tax,
            wholesale_rate=self._wholesale_rate,
            customer_id=self._customer.id if self._customer else None,
            applied_promotions=tuple(self._applied_promotions),
            version=self._version,
        )

    # ==================== LINES ====================

    def add(self, item: Product, quantity: int = 1, variant: Optional[str] = None) -> CartLineItem:
        """Add an item, merging into an existing line with the same identity."""
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
            raise ValueError("quantity must be a positive integer")

        kind = LineKind.SERVICE if item.is_service else LineKind.PRODUCT
        stock = None if kind == LineKind.SERVICE else max(item.stock, 0)
        if kind == LineKind.PRODUCT and stock <= 0:
            logger.warning(f"Out of stock: {sanitize_id_for_logging(item.id)}")
            raise OutOfStockError(item.id)

        variant = variant or item.variant
        line_id = make_line_id(item.id, variant)
        index = self._index_of(line_id)

        if index is not None:
            existing = self._lines[index]
            new_quantity = self._clamp(existing.quantity + quantity, stock)
            line = replace(
                existing,
                quantity=new_quantity,
                unit_price=item.price,
                wholesale_price=item.wholesale_price,
                stock=stock,
            )
            self._lines[index] = line
        else:
            line = CartLineItem(
                item_id=item.id,
                name=item.name,
                unit_price=item.price,
                quantity=self._clamp(quantity, stock),
                kind=kind,
                wholesale_price=item.wholesale_price,
                stock_id=item.id if kind == LineKind.PRODUCT else None,
                variant=variant,
                category_id=item.category_id,
                sku=item.sku,
                stock=stock,
            )
            self._lines.append(line)

        self._touch()
        logger.debug(f"Cart add {sanitize_id_for_logging(line_id)} -> qty {line.quantity}")
        return line

    def update(
        self,
        line_id: str,
        quantity: int,
        available_stock: Optional[int] = None,
    ) -> Optional[CartLineItem]:
        """
        Set a line's quantity. Returns None when the line was removed.

        ``available_stock`` is the current stock for the line's product; when
        omitted the stock seen at the last add or update is the bound.
        """
        if not isinstance(quantity, int) or isinstance(quantity, bool):
            raise ValueError("quantity must be an integer")
        index = self._index_of(line_id)
        if index is None:
            raise LineNotFoundError(line_id)

        line = self._lines[index]
        stock = line.stock
        if available_stock is not None and line.is_product:
            stock = max(int(available_stock), 0)
        new_quantity = self._clamp(quantity, stock)
        if new_quantity == 0:
            del self._lines[index]
            self._touch()
            return None

        line = replace(line, quantity=new_quantity, stock=stock)
        self._lines[index] = line
        self._touch()
        return line

    def remove(self, line_id: str) -> None:
        index = self._index_of(line_id)
        if index is None:
            raise LineNotFoundError(line_id)
        del self._lines[index]
        self._touch()

    def clear(self, keep_preferences: bool = False) -> None:
        """
        Empty the cart.

        Customer, general discount and applied promotions always reset.
        ``keep_preferences`` keeps wholesale mode for the next sale.
        """
        self._lines = []
        self._applied_promotions = []
        self._promotion_history = {}
        self._customer = None
        self._general_discount = ZERO
        self._manual_general_discount = False
        if not keep_preferences:
            self._wholesale_mode = False
        self._touch()

    def toggle_wholesale(self, enabled: bool) -> None:
        self._wholesale_mode = bool(enabled)
        self._touch()
        logger.info(f"Wholesale mode {'on' if self._wholesale_mode else 'off'}")

    # ==================== DISCOUNTS ====================

    def set_line_discount(self, line_id: str, discount_percent) -> CartLineItem:
        """Manual per-line discount; clears any promotion tag on the line."""
        index = self._index_of(line_id)
        if index is None:
            raise LineNotFoundError(line_id)
        line = replace(self._lines[index], discount_percent=clamp_percent(discount_percent), promo_code=None)
        self._lines[index] = line
        self._touch()
        return line

    def set_general_discount(self, discount_percent) -> Decimal:
        """
        Manual cart-wide discount percent.

        A non-zero manual value takes priority over the VIP discount. Setting
        it back to zero lets the selected customer's VIP discount apply again.
        """
        value = clamp_percent(discount_percent)
        if value > ZERO:
            self._manual_general_discount = True
            self._general_discount = value
        else:
            self._manual_general_discount = False
            self._general_discount = self._vip_discount()
        self._touch()
        return self._general_discount

    def set_customer(self, customer: Optional[Customer]) -> None:
        """Select (or clear) the customer; VIP customers fill the general discount if none is set manually."""
        self._customer = customer
        if not self._manual_general_discount:
            self._general_discount = self._vip_discount()
        self._touch()
        if customer is not None:
            logger.info(
                f"Customer {sanitize_id_for_logging(customer.id)} selected "
                f"(vip={customer.is_vip}, general_discount={self._general_discount})"
            )

    def set_tax(self, tax_rate, prices_include_tax: bool) -> None:
        self._tax_rate = clamp_rate(tax_rate)
        self._prices_include_tax = bool(prices_include_tax)
        self._touch()

    def apply_promotion(self, code: str, line_discounts: dict[str, Decimal]) -> None:
        """
        Write promotion discounts onto lines and record the code as applied.

        ``line_discounts`` maps line id to the new discount percent. All ids are
        checked before any line changes.
        """
        indexes = {}
        for line_id in line_discounts:
            index = self._index_of(line_id)
            if index is None:
                raise LineNotFoundError(line_id)
            indexes[line_id] = index

        previous = self._promotion_history.setdefault(code, {})
        for line_id, discount in line_discounts.items():
            index = indexes[line_id]
            line = self._lines[index]
            previous.setdefault(line_id, (line.discount_percent, line.promo_code))
            self._lines[index] = replace(
                self._lines[index],
                discount_percent=clamp_percent(to_decimal(discount)),
                promo_code=code,
            )
        if code not in self._applied_promotions:
            self._applied_promotions.append(code)
        self._touch()
        logger.info(
            f"Promotion {sanitize_string_for_logging(code, 20)} written to {len(line_discounts)} line(s)"
        )

    def remove_promotion(self, code: str) -> tuple[str, ...]:
        """
        Undo an applied promotion code.

        Lines still tagged with ``code`` get back the discount and tag they had
        before it was applied; lines edited since keep their current discount.
        Returns the ids of the restored lines.
        """
        if code not in self._applied_promotions:
            raise PromotionError(PromotionCode.NOT_APPLIED)

        previous = self._promotion_history.pop(code, {})
        restored = []
        for index, line in enumerate(self._lines):
            if line.promo_code != code or line.line_id not in previous:
                continue
            discount, promo_code = previous[line.line_id]
            self._lines[index] = replace(line, discount_percent=discount, promo_code=promo_code)
            restored.append(line.line_id)
        # Codes stacked on top must not bring this one back when they are removed
        for history in self._promotion_history.values():
            for line_id, (_, promo_code) in list(history.items()):
                if promo_code == code and line_id in previous:
                    history[line_id] = previous[line_id]
        self._applied_promotions.remove(code)
        self._touch()
        logger.info(
            f"Promotion {sanitize_string_for_logging(code, 20)} removed from {len(restored)} line(s)"
        )
        return tuple(restored)

    # ==================== INTERNAL ====================

    def _vip_discount(self) -> Decimal:
        if self._customer is not None and self._customer.is_vip:
            return clamp_percent(self._customer.vip_discount_percent)
        return ZERO

    def _index_of(self, line_id: str) -> Optional[int]:
        return next(
            (i for i, line in enumerate(self._lines) if line.line_id == line_id),
            None,
        )

    @staticmethod
    def _clamp(quantity: int, stock: Optional[int]) -> int:
        quantity = max(quantity, 0)
        if stock is not None:
            quantity = min(quantity, stock)
        return quantity

    def _touch(self) -> None:
        self._version += 1
