"""Base Adapters for register backends.

Defines the interfaces the checkout depends on. Each backend (in-memory,
Supabase) implements them; callers never reach past these methods.

- InventoryAdapter: catalog reads, stock decrement on sale, stock change feed
- SalePersistence: durable sale record, idempotent on an existing sale id
- RegisterLedger: open/closed guard and cash movements per payment method
- PromotionCatalog: read-only promotion lookup by code
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Optional

from pos.payments.models import PaymentSplit
from pos.promotions.models import PromotionDefinition
from pos.services.models import Product
from pos.services.money import ZERO, to_float

StockListener = Callable[[str, int], None]
Unsubscribe = Callable[[], None]


@dataclass(frozen=True)
class SaleItem:
    """Line handed to the collaborators at commit time."""
    id: str
    name: str
    price: Decimal  # effective unit price (wholesale aware)
    quantity: int
    kind: str = "product"
    sku: Optional[str] = None
    stock: Optional[int] = None
    stock_id: Optional[str] = None
    discount_percent: Decimal = ZERO
    line_total: Decimal = ZERO
    promo_code: Optional[str] = None

    @property
    def is_product(self) -> bool:
        return self.kind == "product"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "sku": self.sku,
            "price": to_float(self.price),
            "quantity": self.quantity,
            "stock": self.stock,
            "kind": self.kind,
            "discount_percent": to_float(self.discount_percent),
            "line_total": to_float(self.line_total),
            "promo_code": self.promo_code,
        }


@dataclass(frozen=True)
class SaleReceipt:
    """Inventory acknowledgement of a sale."""
    sale_id: str


@dataclass(frozen=True)
class SaleRecord:
    """What the persistence backend stores for one checkout."""
    items: tuple[SaleItem, ...]
    payment_method: str
    discount: Decimal
    tax: Decimal
    total: Decimal
    subtotal: Decimal = ZERO
    customer_id: Optional[str] = None
    payments: tuple[PaymentSplit, ...] = field(default_factory=tuple)


class InventoryAdapter(ABC):
    """Catalog and stock backend."""

    @abstractmethod
    async def get_products(self) -> list[Product]:
        """Active products and services."""

    @abstractmethod
    async def process_sale(
        self,
        items: list[SaleItem],
        total: Decimal,
        payment_method: str,
    ) -> SaleReceipt:
        """Decrement stock for product lines and return the sale id.

        Raises:
            Exception: backend failure; classified by the caller
        """

    @abstractmethod
    def subscribe(self, callback: StockListener) -> Unsubscribe:
        """Register for (product_id, new_stock) notifications.

        Returns:
            Callable that removes the subscription
        """


class SalePersistence(ABC):
    """Durable sale storage."""

    @abstractmethod
    async def create_or_attach_sale(
        self,
        record: SaleRecord,
        existing_sale_id: Optional[str] = None,
    ) -> str:
        """Write the sale, or attach to ``existing_sale_id`` without duplicating writes.

        Returns:
            The sale id written or attached to

        Raises:
            SchemaMissingWarning: a sale table is absent, the write was skipped
        """


class RegisterLedger(ABC):
    """Cash register session ledger."""

    @abstractmethod
    async def is_open(self) -> bool:
        """Whether a register session is open."""

    @abstractmethod
    async def register_sale(self, sale_id: str, amount: Decimal, method: str) -> None:
        """Record one movement for the amount paid with ``method``."""


class PromotionCatalog(ABC):
    """Read-only promotion lookup."""

    @abstractmethod
    async def get_promotion(self, code: str) -> Optional[PromotionDefinition]:
        """Promotion for a code (case-insensitive), or None."""
