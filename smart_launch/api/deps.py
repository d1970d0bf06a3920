"""
Shared dependencies for the API routers
"""

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from smart_launch.core.config import Settings
from smart_launch.smart.service import SMARTLaunchService


def create_limiter(app_settings: Settings) -> Limiter:
    """Rate limiter owned by one application; storage is per instance"""
    return Limiter(key_func=get_remote_address, enabled=app_settings.RATE_LIMIT_ENABLED)


def get_smart_service(request: Request) -> SMARTLaunchService:
    """SMARTLaunchService created by the application factory"""
    return request.app.state.smart_service


def session_cookie_name(request: Request) -> str:
    return request.app.state.smart_service.settings.SESSION_COOKIE_NAME
