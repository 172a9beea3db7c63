"""
API routes module.
"""

from buildqueue.api.routes.auth import router as auth_router
from buildqueue.api.routes.builds import router as builds_router
from buildqueue.api.routes.health import router as health_router
from buildqueue.api.routes.payments import router as payments_router

__all__ = ["auth_router", "builds_router", "health_router", "payments_router"]
