# backend/tipu/api/dependencies/__init__.py
"""
Central export point for request dependencies.
"""

from .auth import get_current_user
from .database import get_app_settings, get_db
from .services import (
    get_booking_service,
    get_meeting_client,
    get_payment_gateway,
    get_payment_service,
    get_services,
    get_webhook_service,
)

__all__ = [
    # Auth
    "get_current_user",
    # Database
    "get_app_settings",
    "get_db",
    # Services
    "get_booking_service",
    "get_meeting_client",
    "get_payment_gateway",
    "get_payment_service",
    "get_services",
    "get_webhook_service",
]
