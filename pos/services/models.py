"""Backend Models - Pydantic models for rows read from the register backends."""
from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, field_validator

from pos.services.money import to_decimal as _to_decimal


class Product(BaseModel):
    """Sellable catalog entry: a stocked product or a service/repair line."""
    id: str
    name: str
    sku: Optional[str] = None
    barcode: Optional[str] = None
    price: Decimal
    wholesale_price: Optional[Decimal] = None
    stock: int = 0
    min_stock: int = 0
    category_id: Optional[str] = None
    kind: str = "product"  # product | service
    variant: Optional[str] = None
    is_active: bool = True

    class Config:
        extra = "ignore"  # Ignore unknown fields from DB

    @field_validator("price", mode="before")
    @classmethod
    def convert_price_to_decimal(cls, v):
        return _to_decimal(v)

    @field_validator("wholesale_price", mode="before")
    @classmethod
    def convert_wholesale_to_decimal(cls, v):
        return _to_decimal(v) if v is not None else None

    @field_validator("stock", mode="before")
    @classmethod
    def default_stock(cls, v):
        return 0 if v is None else v

    @property
    def is_service(self) -> bool:
        return self.kind == "service"


class Customer(BaseModel):
    """Customer selectable at the register."""
    id: str
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    customer_type: str = "regular"  # regular | vip | wholesale
    vip_discount_percent: Decimal = Decimal("0")

    class Config:
        extra = "ignore"

    @field_validator("vip_discount_percent", mode="before")
    @classmethod
    def convert_discount_to_decimal(cls, v):
        return _to_decimal(v) if v is not None else Decimal("0")

    @property
    def is_vip(self) -> bool:
        return self.customer_type == "vip"
