# Services Module
from .models import Customer, Product

__all__ = ["Customer", "Product"]
