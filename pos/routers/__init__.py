"""Register API routers."""
from .register import router as register_router

__all__ = ["register_router"]
