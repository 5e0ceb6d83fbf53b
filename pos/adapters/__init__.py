"""Register backends and the factory that picks one from settings."""
from dataclasses import dataclass

from pos.logging import get_logger
from .base import (
    InventoryAdapter,
    PromotionCatalog,
    RegisterLedger,
    SaleItem,
    SalePersistence,
    SaleReceipt,
    SaleRecord,
)
from .memory import MemoryInventory, MemoryPromotionCatalog, MemoryRegisterLedger, MemorySalePersistence

logger = get_logger(__name__)


@dataclass
class Backends:
    """The four collaborators a register needs."""
    inventory: InventoryAdapter
    persistence: SalePersistence
    ledger: RegisterLedger
    catalog: PromotionCatalog


async def create_backends(settings) -> Backends:
    """Build backends for ``settings.backend``."""
    if settings.backend == "supabase":
        from pos.db import get_supabase
        from .supabase import (
            SupabaseInventory,
            SupabasePromotionCatalog,
            SupabaseRegisterLedger,
            SupabaseSalePersistence,
        )

        client = await get_supabase()
        logger.info("Using Supabase backends")
        return Backends(
            inventory=SupabaseInventory(client),
            persistence=SupabaseSalePersistence(client),
            ledger=SupabaseRegisterLedger(client),
            catalog=SupabasePromotionCatalog(client),
        )

    logger.info("Using in-memory backends")
    return Backends(
        inventory=MemoryInventory(),
        persistence=MemorySalePersistence(),
        ledger=MemoryRegisterLedger(),
        catalog=MemoryPromotionCatalog(),
    )


__all__ = [
    "Backends",
    "create_backends",
    "InventoryAdapter",
    "PromotionCatalog",
    "RegisterLedger",
    "SaleItem",
    "SalePersistence",
    "SaleReceipt",
    "SaleRecord",
    "MemoryInventory",
    "MemoryPromotionCatalog",
    "MemoryRegisterLedger",
    "MemorySalePersistence",
]
