"""
Register API Pydantic Models

Request bodies for the register endpoints.
"""
from decimal import Decimal
from typing import Optional
from pydantic import BaseModel


# ==================== CART MODELS ====================

class AddItemRequest(BaseModel):
    product_id: str
    quantity: int = 1
    variant: str | None = None


class UpdateItemRequest(BaseModel):
    quantity: int  # 0 removes the line


class WholesaleRequest(BaseModel):
    enabled: bool


class DiscountRequest(BaseModel):
    discount_percent: Decimal


class CustomerRequest(BaseModel):
    id: str
    name: str
    customer_type: str = "regular"
    vip_discount_percent: Decimal = Decimal("0")


class ApplyPromoRequest(BaseModel):
    code: str


# ==================== CHECKOUT MODELS ====================

class SplitRequest(BaseModel):
    method: str
    amount: Decimal
    card_last4: str | None = None
    transfer_reference: str | None = None


class ConfirmSingleRequest(BaseModel):
    method: str | None = None
    cash_received: Optional[Decimal] = None


class ConfirmMixedRequest(BaseModel):
    splits: list[SplitRequest] | None = None
