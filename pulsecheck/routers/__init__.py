"""API routers."""
from .monitors import router as monitors_router
from .ops import router as ops_router

__all__ = ["monitors_router", "ops_router"]
