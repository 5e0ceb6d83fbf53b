"""Promotion models."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, field_validator

from pos.errors import PromotionCode
from pos.services.money import ZERO, to_decimal, to_float


class PromotionType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


def normalize_code(code: Optional[str]) -> str:
    """Promotion codes are case-insensitive keys."""
    return (code or "").strip().upper()


class PromotionDefinition(BaseModel):
    """Promotion row from the catalog."""
    id: Optional[str] = None
    name: Optional[str] = None
    code: str
    type: PromotionType
    value: Decimal
    applicable_products: list[str] = []  # empty = all
    applicable_categories: list[str] = []  # empty = all
    is_active: bool = True
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    usage_limit: Optional[int] = None
    usage_count: int = 0
    min_purchase: Decimal = Decimal("0")
    max_discount: Optional[Decimal] = None

    class Config:
        extra = "ignore"  # Ignore unknown fields from DB

    @field_validator("value", "min_purchase", mode="before")
    @classmethod
    def convert_to_decimal(cls, v):
        return to_decimal(v) if v is not None else ZERO

    @field_validator("max_discount", mode="before")
    @classmethod
    def convert_cap_to_decimal(cls, v):
        return to_decimal(v) if v is not None else None

    @field_validator("value")
    @classmethod
    def check_value(cls, v):
        if v < 0:
            raise ValueError("promotion value must be non-negative")
        return v

    @field_validator("applicable_products", "applicable_categories", mode="before")
    @classmethod
    def default_empty_list(cls, v):
        return [] if v is None else v

    @field_validator("usage_count", mode="before")
    @classmethod
    def default_usage_count(cls, v):
        return 0 if v is None else v

    @field_validator("start_date", "end_date")
    @classmethod
    def assume_utc(cls, v):
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @property
    def key(self) -> str:
        return normalize_code(self.code)


@dataclass(frozen=True)
class PromotionOutcome:
    """
    Result of a promotion code action.

    - apply: ``applied`` means the code was written to the cart
    - preview: ``applied`` means the code would apply; the cart is untouched
    - remove: ``discount_amount`` is the discount taken back off the cart

    ``discount_amount`` is otherwise the extra discount the code adds.
    """
    applied: bool
    code: str
    discount_amount: Decimal = ZERO
    reason: Optional[str] = None
    error_code: Optional[PromotionCode] = None
    affected_lines: tuple[str, ...] = field(default_factory=tuple)
    action: str = "apply"

    def to_dict(self) -> dict:
        return {
            "applied": self.applied,
            "action": self.action,
            "code": self.code,
            "discount_amount": to_float(self.discount_amount),
            "reason": self.reason,
            "error_code": self.error_code.value if self.error_code else None,
            "affected_lines": list(self.affected_lines),
        }
