"""
API Module
FastAPI routers for the CareCircle notification service
"""

from api.notifications import router as notifications_router
from api.push import router as push_router
from api.telegram import router as telegram_router
from api.prescriptions import router as prescriptions_router

from api.deps import (
    get_db,
    get_api_key,
    get_scheduler,
    RateLimiter,
    default_rate_limiter,
    notification_rate_limiter,
    services,
)


__all__ = [
    # Routers
    "notifications_router",
    "push_router",
    "telegram_router",
    "prescriptions_router",
    # Dependencies
    "get_db",
    "get_api_key",
    "get_scheduler",
    "RateLimiter",
    "default_rate_limiter",
    "notification_rate_limiter",
    "services",
]


def include_routers(app):
    """
    Include all API routers in the FastAPI app

    Usage:
        from api import include_routers
        include_routers(app)
    """
    app.include_router(notifications_router, prefix="/api/v1")
    app.include_router(push_router, prefix="/api/v1")
    app.include_router(telegram_router, prefix="/api/v1")
    app.include_router(prescriptions_router, prefix="/api/v1")
