"""
API Dependencies
Common dependencies for FastAPI endpoints
"""

import time
from typing import Optional
from fastapi import Depends, HTTPException, status, Header, Request

from database import get_db


async def get_api_key(
    x_api_key: Optional[str] = Header(None, alias="X-API-Key")
) -> Optional[str]:
    """
    API key header, if provided
    """
    return x_api_key


class RateLimiter:
    """
    Simple rate limiter for API endpoints
    """

    def __init__(self, calls: int = 100, period: int = 60):
        self.calls = calls
        self.period = period
        self._requests: dict = {}

    async def __call__(
        self,
        request: Request,
        api_key: Optional[str] = Depends(get_api_key)
    ) -> bool:
        """Check rate limit for the given API key or client address"""
        key = api_key or (request.client.host if request.client else "anonymous")
        current_time = time.time()

        if key not in self._requests:
            self._requests[key] = []

        # Clean old requests
        self._requests[key] = [
            t for t in self._requests[key]
            if current_time - t < self.period
        ]

        if len(self._requests[key]) >= self.calls:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail=f"Rate limit exceeded. Max {self.calls} requests per {self.period}s",
            )

        self._requests[key].append(current_time)
        return True


# Rate limiter instances
default_rate_limiter = RateLimiter(calls=100, period=60)
notification_rate_limiter = RateLimiter(calls=10, period=60)


def get_scheduler():
    """Scheduler that owns the engines and their in-flight guards"""
    from actions.notification_scheduler import get_notification_scheduler
    return get_notification_scheduler()


class ServiceDependency:
    """
    Dependency injection for services
    """

    @staticmethod
    def get_notification_history_service():
        from services.notification_history_service import notification_history_service
        return notification_history_service

    @staticmethod
    def get_push_subscription_service():
        from services.push_subscription_service import push_subscription_service
        return push_subscription_service

    @staticmethod
    def get_companion_service():
        from services.companion_service import companion_service
        return companion_service

    @staticmethod
    def get_medication_service():
        from services.medication_service import medication_service
        return medication_service

    @staticmethod
    def get_email_channel():
        from tools.email_channel import get_email_channel
        return get_email_channel()

    @staticmethod
    def get_push_channel():
        from tools.push_channel import get_push_channel
        return get_push_channel()

    @staticmethod
    def get_telegram_channel():
        from tools.telegram_channel import get_telegram_channel
        return get_telegram_channel()


# Service dependency instances
services = ServiceDependency()
