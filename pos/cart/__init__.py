"""Cart package: line models, snapshots, and the cart store."""
from .models import CartLineItem, CartSnapshot, LineKind, make_line_id
from .service import CartStore

__all__ = [
    "CartLineItem",
    "CartSnapshot",
    "LineKind",
    "make_line_id",
    "CartStore",
]
