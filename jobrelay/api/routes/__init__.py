"""
API routes module.
"""

from jobrelay.api.routes.admin import router as admin_router
from jobrelay.api.routes.health import router as health_router
from jobrelay.api.routes.jobs import router as jobs_router
from jobrelay.api.routes.subscriptions import router as subscriptions_router

__all__ = ["jobs_router", "admin_router", "subscriptions_router", "health_router"]
