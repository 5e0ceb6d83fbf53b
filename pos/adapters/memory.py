"""In-process backends for a single register (development and tests)."""
import uuid
from decimal import Decimal
from typing import Iterable, Optional

from pos.logging import get_logger, sanitize_id_for_logging
from pos.promotions.models import PromotionDefinition, normalize_code
from pos.services.models import Product
from pos.services.money import round_money, to_decimal
from .base import (
    InventoryAdapter,
    PromotionCatalog,
    RegisterLedger,
    SaleItem,
    SalePersistence,
    SaleReceipt,
    SaleRecord,
    StockListener,
    Unsubscribe,
)

logger = get_logger(__name__)


class MemoryInventory(InventoryAdapter):
    """Product list held in memory; stock decremented on sale."""

    def __init__(self, products: Optional[Iterable[Product]] = None):
        self._products: dict[str, Product] = {p.id: p for p in (products or [])}
        self._listeners: list[StockListener] = []

    def get_product(self, product_id: str) -> Optional[Product]:
        return self._products.get(product_id)

    async def get_products(self) -> list[Product]:
        return [p for p in self._products.values() if p.is_active]

    async def process_sale(self, items: list[SaleItem], total: Decimal, payment_method: str) -> SaleReceipt:
        # Check everything first so a short item leaves stock untouched
        for item in items:
            if not item.is_product:
                continue
            product = self._products.get(item.stock_id or item.id)
            if product is None:
                raise LookupError(f"Product {item.id} is missing from inventory")
            if product.stock < item.quantity:
                raise ValueError(f"Insufficient stock for {product.name} (available {product.stock})")

        for item in items:
            if not item.is_product:
                continue
            product_id = item.stock_id or item.id
            product = self._products[product_id]
            updated = product.model_copy(update={"stock": product.stock - item.quantity})
            self._products[product_id] = updated
            self._notify(product_id, updated.stock)

        sale_id = str(uuid.uuid4())
        logger.info(f"Inventory sale {sanitize_id_for_logging(sale_id)}: {len(items)} item(s), {total} via {payment_method}")
        return SaleReceipt(sale_id=sale_id)

    def subscribe(self, callback: StockListener) -> Unsubscribe:
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _notify(self, product_id: str, stock: int) -> None:
        for listener in list(self._listeners):
            listener(product_id, stock)


class MemorySalePersistence(SalePersistence):
    """Sales kept in a dict keyed by sale id."""

    def __init__(self):
        self.sales: dict[str, SaleRecord] = {}

    async def create_or_attach_sale(self, record: SaleRecord, existing_sale_id: Optional[str] = None) -> str:
        if existing_sale_id and existing_sale_id in self.sales:
            logger.info(f"Sale {sanitize_id_for_logging(existing_sale_id)} already stored, attaching")
            return existing_sale_id
        sale_id = existing_sale_id or str(uuid.uuid4())
        self.sales[sale_id] = record
        return sale_id


class MemoryRegisterLedger(RegisterLedger):
    """Register session with an in-memory movement list."""

    def __init__(self, is_open: bool = True, opening_amount: Decimal = Decimal("0")):
        self._open = is_open
        self.opening_amount = round_money(opening_amount)
        self.movements: list[dict] = []

    def open(self, opening_amount=0) -> None:
        self._open = True
        self.opening_amount = round_money(opening_amount)
        self.movements = []

    def close(self) -> None:
        self._open = False

    async def is_open(self) -> bool:
        return self._open

    async def register_sale(self, sale_id: str, amount: Decimal, method: str) -> None:
        if not self._open:
            raise PermissionError("Cash register is closed")
        self.movements.append({
            "type": "sale",
            "sale_id": sale_id,
            "amount": round_money(amount),
            "method": method,
            "reason": f"Sale {sale_id}",
        })

    @property
    def cash_balance(self) -> Decimal:
        cash_in = sum((to_decimal(m["amount"]) for m in self.movements if m["method"] == "cash"), Decimal("0"))
        return round_money(self.opening_amount + cash_in)


class MemoryPromotionCatalog(PromotionCatalog):
    """Promotions keyed by upper-cased code."""

    def __init__(self, promotions: Optional[Iterable[PromotionDefinition]] = None):
        self._promotions = {p.key: p for p in (promotions or [])}

    async def get_promotion(self, code: str) -> Optional[PromotionDefinition]:
        return self._promotions.get(normalize_code(code))
