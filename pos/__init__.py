"""
Register Core Module

This package contains the point-of-sale engine:
- cart: cart store and immutable snapshots
- pricing: pure totals computation
- promotions: promotion codes and their resolver
- payments: payment splits and the attempt log
- settlement: checkout validation and the commit sequence
- adapters: inventory, persistence, ledger and promotion backends

Note: Imports are lazy so the Supabase client is only loaded when used.
"""

# Lazy imports to avoid issues at module load time
__all__ = [
    "get_supabase",
    "get_settings",
    "CartStore",
    "price",
    "PromotionResolver",
    "SettlementCoordinator",
]


def __getattr__(name):
    """Lazy attribute access for clean module loading."""
    if name == "get_supabase":
        from pos.db import get_supabase
        return get_supabase
    elif name == "get_settings":
        from pos.config import get_settings
        return get_settings
    elif name == "CartStore":
        from pos.cart.service import CartStore
        return CartStore
    elif name == "price":
        from pos.pricing import price
        return price
    elif name == "PromotionResolver":
        from pos.promotions.resolver import PromotionResolver
        return PromotionResolver
    elif name == "SettlementCoordinator":
        from pos.settlement.coordinator import SettlementCoordinator
        return SettlementCoordinator
    raise AttributeError(f"module 'pos' has no attribute '{name}'")
