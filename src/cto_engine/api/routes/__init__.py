"""API routes."""

from cto_engine.api.routes.applications import router as applications_router
from cto_engine.api.routes.approver_settings import router as approver_settings_router
from cto_engine.api.routes.credits import router as credits_router
from cto_engine.api.routes.health import router as health_router

__all__ = [
    "applications_router",
    "approver_settings_router",
    "credits_router",
    "health_router",
]
