"""Promotions package: definitions, outcomes, and the resolver."""
from .models import PromotionDefinition, PromotionOutcome, PromotionType, normalize_code
from .resolver import PromotionResolver, allocate_fixed, evaluate, is_eligible, projected_discount

__all__ = [
    "PromotionDefinition",
    "PromotionOutcome",
    "PromotionType",
    "normalize_code",
    "PromotionResolver",
    "allocate_fixed",
    "evaluate",
    "is_eligible",
    "projected_discount",
]
