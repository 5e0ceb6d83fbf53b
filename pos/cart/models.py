"""Cart models with Decimal-based pricing."""
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Optional

from pos.services.money import ZERO, clamp_percent, clamp_rate, to_decimal, to_float


class LineKind(str, Enum):
    """What a cart line sells."""
    PRODUCT = "product"
    SERVICE = "service"


def make_line_id(item_id: str, variant: Optional[str] = None) -> str:
    """Line identity: item id plus variant."""
    return f"{item_id}:{variant}" if variant else item_id


@dataclass(frozen=True)
class CartLineItem:
    """
    Single line in the cart.

    Lines are immutable; the cart store replaces a line on every change so a
    snapshot taken earlier never sees later edits.

    ``stock`` is the available stock seen when the line was last added or
    updated (``None`` for service lines, which are never stock bounded).
    ``wholesale_price`` absent means the wholesale unit price is derived from
    the unit price and the cart's wholesale rate.
    """
    item_id: str
    name: str
    unit_price: Decimal
    quantity: int
    kind: LineKind = LineKind.PRODUCT
    discount_percent: Decimal = ZERO
    wholesale_price: Optional[Decimal] = None
    promo_code: Optional[str] = None
    stock_id: Optional[str] = None
    variant: Optional[str] = None
    category_id: Optional[str] = None
    sku: Optional[str] = None
    stock: Optional[int] = None

    def __post_init__(self):
        if not self.item_id or not isinstance(self.item_id, str):
            raise ValueError("item_id must be a non-empty string")
        if not isinstance(self.quantity, int) or isinstance(self.quantity, bool) or self.quantity < 0:
            raise ValueError("quantity must be a non-negative integer")
        kind = LineKind(self.kind)
        unit_price = to_decimal(self.unit_price)
        if unit_price < 0:
            raise ValueError("unit_price must be a non-negative number")
        wholesale_price = None
        if self.wholesale_price is not None:
            wholesale_price = to_decimal(self.wholesale_price)
            if wholesale_price < 0:
                raise ValueError("wholesale_price must be a non-negative number")
        if kind == LineKind.SERVICE and self.stock_id:
            raise ValueError("service lines cannot be linked to stock")
        # Frozen dataclass: normalize through object.__setattr__
        object.__setattr__(self, "kind", kind)
        object.__setattr__(self, "unit_price", unit_price)
        object.__setattr__(self, "wholesale_price", wholesale_price)
        object.__setattr__(self, "discount_percent", clamp_percent(self.discount_percent))
        if kind == LineKind.SERVICE:
            object.__setattr__(self, "stock", None)

    @property
    def line_id(self) -> str:
        return make_line_id(self.item_id, self.variant)

    @property
    def is_product(self) -> bool:
        return self.kind == LineKind.PRODUCT

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "line_id": self.line_id,
            "item_id": self.item_id,
            "name": self.name,
            "unit_price": str(self.unit_price),
            "quantity": self.quantity,
            "kind": self.kind.value,
            "discount_percent": to_float(self.discount_percent),
            "wholesale_price": str(self.wholesale_price) if self.wholesale_price is not None else None,
            "promo_code": self.promo_code,
            "stock_id": self.stock_id,
            "variant": self.variant,
            "category_id": self.category_id,
            "sku": self.sku,
            "stock": self.stock,
        }


@dataclass(frozen=True)
class CartSnapshot:
    """Immutable view of the cart that pricing runs on. Lines keep insertion order."""
    lines: tuple[CartLineItem, ...] = ()
    wholesale_mode: bool = False
    general_discount_percent: Decimal = ZERO
    tax_rate: Decimal = ZERO
    prices_include_tax: bool = False
    wholesale_rate: Decimal = Decimal("0.10")
    customer_id: Optional[str] = None
    applied_promotions: tuple[str, ...] = field(default_factory=tuple)
    version: int = 0

    def __post_init__(self):
        object.__setattr__(self, "lines", tuple(self.lines))
        object.__setattr__(self, "general_discount_percent", clamp_percent(self.general_discount_percent))
        object.__setattr__(self, "tax_rate", clamp_rate(self.tax_rate))
        object.__setattr__(self, "wholesale_rate", clamp_rate(self.wholesale_rate))

    @property
    def is_empty(self) -> bool:
        return not self.lines

    @property
    def total_items(self) -> int:
        return sum(line.quantity for line in self.lines)

    def to_dict(self) -> dict:
        return {
            "lines": [line.to_dict() for line in self.lines],
            "wholesale_mode": self.wholesale_mode,
            "general_discount_percent": to_float(self.general_discount_percent),
            "tax_rate": to_float(self.tax_rate),
            "prices_include_tax": self.prices_include_tax,
            "customer_id": self.customer_id,
            "applied_promotions": list(self.applied_promotions),
            "total_items": self.total_items,
            "version": self.version,
        }
