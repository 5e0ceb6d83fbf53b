"""
Register terminal: one cart, its promotion resolver and its settlement
coordinator wired to a set of backends.
"""
from typing import Optional

from pos.adapters import Backends, create_backends
from pos.cart.service import CartStore
from pos.config import POSSettings, get_settings
from pos.logging import get_logger, sanitize_id_for_logging
from pos.promotions.resolver import PromotionResolver
from pos.services.models import Product
from pos.settlement.coordinator import SettlementCoordinator

logger = get_logger(__name__)


class RegisterTerminal:
    """Everything one register needs for a sale."""

    def __init__(self, settings: POSSettings, backends: Backends):
        self.settings = settings
        self.backends = backends
        self.cart = CartStore.from_settings(settings)
        self.resolver = PromotionResolver(backends.catalog)
        self.coordinator = SettlementCoordinator(
            cart=self.cart,
            inventory=backends.inventory,
            persistence=backends.persistence,
            ledger=backends.ledger,
            attempt_log_size=settings.payment_attempt_log_size,
            close_delay=settings.checkout_close_delay,
            cash_rounding_step=settings.cash_rounding_step,
        )
        self._products: dict[str, Product] = {}
        self._unsubscribe = backends.inventory.subscribe(self._on_stock_change)

    async def refresh_products(self) -> list[Product]:
        products = await self.backends.inventory.get_products()
        self._products = {p.id: p for p in products}
        return products

    async def find_product(self, product_id: str) -> Optional[Product]:
        """Product from the cache, loading the catalog on a miss."""
        if product_id not in self._products:
            await self.refresh_products()
        return self._products.get(product_id)

    def _on_stock_change(self, product_id: str, stock: int) -> None:
        product = self._products.get(product_id)
        if product is not None:
            self._products[product_id] = product.model_copy(update={"stock": stock})
        logger.debug(f"Stock for {sanitize_id_for_logging(product_id)} is now {stock}")

    def close(self) -> None:
        self._unsubscribe()


async def create_terminal(
    settings: Optional[POSSettings] = None,
    backends: Optional[Backends] = None,
) -> RegisterTerminal:
    settings = settings or get_settings()
    backends = backends or await create_backends(settings)
    return RegisterTerminal(settings, backends)
