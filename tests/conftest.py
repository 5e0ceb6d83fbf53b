"""Pytest configuration and fixtures"""
import os
from decimal import Decimal
from unittest.mock import AsyncMock, Mock

import pytest

# Set test environment variables
os.environ.setdefault("POS_BACKEND", "memory")
os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "test_key")

from pos.adapters.memory import (  # noqa: E402
    MemoryInventory,
    MemoryPromotionCatalog,
    MemoryRegisterLedger,
    MemorySalePersistence,
)
from pos.cart.service import CartStore  # noqa: E402
from pos.promotions.models import PromotionDefinition  # noqa: E402
from pos.services.models import Customer, Product  # noqa: E402
from pos.settlement.coordinator import SettlementCoordinator  # noqa: E402


def _make_table(*results):
    """Chainable Supabase table mock; each ``execute()`` returns the next result's data."""
    table = Mock()
    for name in ("select", "insert", "update", "delete", "eq", "in_", "order", "limit", "ilike"):
        getattr(table, name).return_value = table
    table.execute = AsyncMock(side_effect=[Mock(data=data) for data in results])
    return table


@pytest.fixture
def make_table():
    """Factory for chainable table mocks"""
    return _make_table


@pytest.fixture
def mock_supabase_client():
    """Mock async Supabase client; tests register tables in ``client.tables``."""
    client = Mock()
    client.tables = {}
    client.table.side_effect = lambda name: client.tables[name]
    return client


@pytest.fixture
def product_a():
    """Stocked product at 100"""
    return Product(id="prod-a", name="Product A", sku="SKU-A", price=100, stock=10, category_id="cat-phones")


@pytest.fixture
def product_b():
    """Cheaper stocked product in another category"""
    return Product(id="prod-b", name="Product B", sku="SKU-B", price=50, stock=20, category_id="cat-cases")


@pytest.fixture
def product_wholesale():
    """Product with an explicit wholesale price"""
    return Product(id="prod-w", name="Charger", price=100, wholesale_price=70, stock=5, category_id="cat-phones")


@pytest.fixture
def service_repair():
    """Service line, never stock bounded"""
    return Product(id="svc-repair", name="Screen repair", price=50, kind="service")


@pytest.fixture
def out_of_stock_product():
    return Product(id="prod-empty", name="Sold out", price=10, stock=0)


@pytest.fixture
def vip_customer():
    return Customer(id="cust-vip", name="Vip Customer", customer_type="vip", vip_discount_percent=15)


@pytest.fixture
def regular_customer():
    return Customer(id="cust-1", name="Regular Customer")


@pytest.fixture
def cart():
    """Cart with 21% exclusive tax"""
    return CartStore(tax_rate=Decimal("0.21"))


@pytest.fixture
def inventory(product_a, product_b, product_wholesale):
    return MemoryInventory([product_a, product_b, product_wholesale])


@pytest.fixture
def persistence():
    return MemorySalePersistence()


@pytest.fixture
def ledger():
    return MemoryRegisterLedger(is_open=True)


@pytest.fixture
def save20():
    return PromotionDefinition(code="SAVE20", type="percentage", value=20)


@pytest.fixture
def catalog(save20):
    return MemoryPromotionCatalog([save20])


@pytest.fixture
def coordinator(cart, inventory, persistence, ledger):
    """Coordinator that closes the checkout immediately on success"""
    return SettlementCoordinator(
        cart=cart,
        inventory=inventory,
        persistence=persistence,
        ledger=ledger,
        attempt_log_size=10,
        close_delay=0,
    )
