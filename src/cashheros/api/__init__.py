"""Prefix-scoped API routers."""

from cashheros.api.auth import router as auth_router
from cashheros.api.external import router as external_router
from cashheros.api.feedback import router as feedback_router
from cashheros.api.users import router as users_router

__all__ = ["auth_router", "external_router", "feedback_router", "users_router"]
