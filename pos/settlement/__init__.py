"""Settlement package: checkout validation and the commit sequence."""
from .coordinator import PendingCommit, SettlementCoordinator, SettlementResult, build_sale_items
from .validation import ledger_amounts, validate_mixed, validate_single, validate_split

__all__ = [
    "PendingCommit",
    "SettlementCoordinator",
    "SettlementResult",
    "build_sale_items",
    "ledger_amounts",
    "validate_mixed",
    "validate_single",
    "validate_split",
]
