"""Supabase backends.

Tables used:
- products: catalog read and stock check, stock moves through the
  ``update_product_stock`` RPC (undone if a later product in the sale fails)
- sales, sale_items, payments: durable sale record
- cash_register_sessions, cash_movements: register ledger
- promotions: promotion catalog
"""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from supabase._async.client import AsyncClient

from pos.errors import SchemaMissingWarning, is_schema_missing
from pos.logging import get_logger, sanitize_id_for_logging
from pos.payments.constants import PaymentMethod
from pos.promotions.models import PromotionDefinition, normalize_code
from pos.services.models import Product
from pos.services.money import to_float
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

PRODUCT_COLUMNS = (
    "id, name, sku, barcode, sale_price, wholesale_price, stock_quantity, "
    "min_stock, category_id, is_active"
)


class SupabaseRepository:
    """Base class for Supabase backends."""

    def __init__(self, client: AsyncClient) -> None:
        self.client = client


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def product_from_row(row: dict) -> Product:
    """Map a ``products`` row onto the register's Product model."""
    return Product(
        id=row["id"],
        name=row.get("name") or "",
        sku=row.get("sku"),
        barcode=row.get("barcode"),
        price=row.get("sale_price", row.get("price")),
        wholesale_price=row.get("wholesale_price"),
        stock=row.get("stock_quantity", row.get("stock")),
        min_stock=row.get("min_stock") or 0,
        category_id=row.get("category_id"),
        kind=row.get("kind") or "product",
        is_active=row.get("is_active", True),
    )


class SupabaseInventory(SupabaseRepository, InventoryAdapter):
    """Catalog from ``products``; stock moves through ``update_product_stock``."""

    def __init__(self, client: AsyncClient) -> None:
        super().__init__(client)
        self._listeners: list[StockListener] = []

    async def get_products(self) -> list[Product]:
        result = await (
            self.client.table("products")
            .select(PRODUCT_COLUMNS)
            .eq("is_active", True)
            .order("name")
            .limit(5000)
            .execute()
        )
        return [product_from_row(row) for row in result.data or []]

    async def process_sale(self, items: list[SaleItem], total: Decimal, payment_method: str) -> SaleReceipt:
        quantities: dict[str, int] = {}
        for item in items:
            if item.is_product:
                product_id = item.stock_id or item.id
                quantities[product_id] = quantities.get(product_id, 0) + item.quantity
        if quantities:
            await self._check_availability(quantities)

        sale_id = str(uuid.uuid4())
        applied: list[tuple[str, int]] = []
        try:
            for product_id, quantity in quantities.items():
                new_stock = await self._move_stock(
                    product_id, -quantity, sale_id, "out", f"Sale of {quantity} unit(s)"
                )
                applied.append((product_id, quantity))
                if new_stock is not None:
                    self._notify(product_id, new_stock)
        except Exception:
            logger.error(
                f"Stock update failed for sale {sanitize_id_for_logging(sale_id)}, "
                f"restoring {len(applied)} product(s)",
                exc_info=True,
            )
            await self._restore_stock(sale_id, applied)
            raise

        logger.info(
            f"Stock updated for sale {sanitize_id_for_logging(sale_id)}: "
            f"{len(items)} item(s), {total} via {payment_method}"
        )
        return SaleReceipt(sale_id=sale_id)

    async def _check_availability(self, quantities: dict[str, int]) -> None:
        """Raise before any stock moves if a product is missing or short."""
        result = await (
            self.client.table("products")
            .select("id, name, stock_quantity")
            .in_("id", list(quantities))
            .execute()
        )
        rows = {row["id"]: row for row in result.data or []}
        for product_id, quantity in quantities.items():
            row = rows.get(product_id)
            if row is None:
                raise LookupError(f"Product {product_id} is missing from inventory")
            stock = int(row.get("stock_quantity") or 0)
            if stock < quantity:
                raise ValueError(f"Insufficient stock for {row.get('name') or product_id} (available {stock})")

    async def _move_stock(
        self,
        product_id: str,
        quantity_change: int,
        sale_id: str,
        movement_type: str,
        reason: str,
    ) -> Optional[int]:
        result = await self.client.rpc(
            "update_product_stock",
            {
                "product_id": product_id,
                "quantity_change": quantity_change,
                "movement_type": movement_type,
                "reason": reason,
                "reference_id": sale_id,
                "reference_type": "sale",
            },
        ).execute()
        return _rpc_new_stock(result.data)

    async def _restore_stock(self, sale_id: str, applied: list[tuple[str, int]]) -> None:
        """Put back stock already taken for a sale that did not complete."""
        for product_id, quantity in reversed(applied):
            try:
                new_stock = await self._move_stock(
                    product_id, quantity, sale_id, "in", "Sale rolled back"
                )
            except Exception:
                logger.error(
                    f"Could not restore {quantity} unit(s) of {sanitize_id_for_logging(product_id)} "
                    f"for sale {sanitize_id_for_logging(sale_id)}",
                    exc_info=True,
                )
                continue
            if new_stock is not None:
                self._notify(product_id, new_stock)

    def subscribe(self, callback: StockListener) -> Unsubscribe:
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _notify(self, product_id: str, stock: int) -> None:
        for listener in list(self._listeners):
            listener(product_id, stock)


def _rpc_new_stock(data) -> Optional[int]:
    if isinstance(data, list):
        data = data[0] if data else None
    if isinstance(data, dict) and data.get("new_stock") is not None:
        return int(data["new_stock"])
    return None


class SupabaseSalePersistence(SupabaseRepository, SalePersistence):
    """
    Sale rows in ``sales``, ``sale_items`` and ``payments``.

    Each table is written only when the sale has no rows there yet, so a
    retry with the same sale id fills in what a failed attempt missed and
    never duplicates what it wrote.
    """

    async def create_or_attach_sale(self, record: SaleRecord, existing_sale_id: Optional[str] = None) -> str:
        sale_id = existing_sale_id or str(uuid.uuid4())
        await self._guarded("sales", self._ensure_sale(sale_id, record))
        await self._guarded("sale_items", self._ensure_items(sale_id, record))
        await self._guarded("payments", self._ensure_payments(sale_id, record))
        return sale_id

    async def _guarded(self, table: str, write) -> None:
        try:
            await write
        except Exception as e:
            if is_schema_missing(e):
                logger.warning(f"Table '{table}' missing, skipping sale write")
                raise SchemaMissingWarning(table, raw_error=e) from e
            raise

    async def _has_rows(self, table: str, column: str, sale_id: str) -> bool:
        result = await self.client.table(table).select("id").eq(column, sale_id).limit(1).execute()
        return bool(result.data)

    async def _ensure_sale(self, sale_id: str, record: SaleRecord) -> None:
        if await self._has_rows("sales", "id", sale_id):
            logger.info(f"Sale {sanitize_id_for_logging(sale_id)} already stored, attaching")
            return
        await self.client.table("sales").insert({
            "id": sale_id,
            "customer_id": record.customer_id,
            "total_amount": to_float(record.total),
            "subtotal_amount": to_float(record.subtotal),
            "tax_amount": to_float(record.tax),
            "discount_amount": to_float(record.discount),
            "payment_method": record.payment_method,
            "payment_status": "completed",
            "status": "completed",
            "created_at": _now(),
        }).execute()

    async def _ensure_items(self, sale_id: str, record: SaleRecord) -> None:
        if not record.items or await self._has_rows("sale_items", "sale_id", sale_id):
            return
        await self.client.table("sale_items").insert([
            {
                "sale_id": sale_id,
                "product_id": item.id,
                "quantity": item.quantity,
                "unit_price": to_float(item.price),
                "discount_amount": to_float(item.price * item.quantity - item.line_total),
                "subtotal": to_float(item.line_total),
            }
            for item in record.items
        ]).execute()

    async def _ensure_payments(self, sale_id: str, record: SaleRecord) -> None:
        if await self._has_rows("payments", "sale_id", sale_id):
            return
        if record.payments:
            rows = [
                {
                    "sale_id": sale_id,
                    "payment_method": split.method.value,
                    "amount": to_float(split.amount),
                    "reference_number": split.transfer_reference or split.card_last4,
                    "status": "completed",
                }
                for split in record.payments
            ]
        else:
            rows = [{
                "sale_id": sale_id,
                "payment_method": record.payment_method,
                "amount": to_float(record.total),
                "reference_number": None,
                "status": "completed",
            }]
        await self.client.table("payments").insert(rows).execute()


class SupabaseRegisterLedger(SupabaseRepository, RegisterLedger):
    """Open session from ``cash_register_sessions``; movements in ``cash_movements``."""

    def __init__(self, client: AsyncClient, register_id: Optional[str] = None) -> None:
        super().__init__(client)
        self.register_id = register_id
        self._session_id: Optional[str] = None

    async def _open_session_id(self) -> Optional[str]:
        query = self.client.table("cash_register_sessions").select("id").eq("status", "open")
        if self.register_id:
            query = query.eq("register_id", self.register_id)
        result = await query.limit(1).execute()
        self._session_id = result.data[0]["id"] if result.data else None
        return self._session_id

    async def is_open(self) -> bool:
        return await self._open_session_id() is not None

    async def register_sale(self, sale_id: str, amount: Decimal, method: str) -> None:
        session_id = self._session_id or await self._open_session_id()
        if session_id is None:
            raise PermissionError("Cash register is closed")
        reason = f"Sale {sale_id}"
        if method != PaymentMethod.CASH.value:
            reason = f"{reason} ({method})"
        await self.client.table("cash_movements").insert({
            "session_id": session_id,
            "type": "sale",
            "amount": to_float(amount),
            "reason": reason,
            "created_at": _now(),
        }).execute()


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class SupabasePromotionCatalog(SupabaseRepository, PromotionCatalog):
    """Promotions from the ``promotions`` table, matched case-insensitively."""

    async def get_promotion(self, code: str) -> Optional[PromotionDefinition]:
        key = normalize_code(code)
        if not key:
            return None
        result = await (
            self.client.table("promotions")
            .select("*")
            .ilike("code", _escape_like(key))
            .limit(1)
            .execute()
        )
        if not result.data:
            return None
        return PromotionDefinition(**result.data[0])
