# backend/tipu/api/dependencies/services.py
"""
Service layer dependencies for dependency injection.

Provider clients are process-wide singletons; services are built per request
around the request's database session.
"""

from functools import lru_cache

from fastapi import Depends
from sqlalchemy.orm import Session

from ...core.config import Settings, get_settings
from ...integrations import (
    MeetingClient,
    PaymentGateway,
    build_meeting_client,
    build_payment_gateway,
)
from ...services.booking_service import BookingService
from ...services.dependencies import ServiceBundle, build_services
from ...services.payment_service import PaymentService
from ...services.stripe_webhook_service import StripeWebhookService
from .database import get_app_settings, get_db


@lru_cache(maxsize=1)
def _payment_gateway_singleton() -> PaymentGateway:
    return build_payment_gateway(get_settings())


@lru_cache(maxsize=1)
def _meeting_client_singleton() -> MeetingClient:
    return build_meeting_client(get_settings())


def get_payment_gateway() -> PaymentGateway:
    return _payment_gateway_singleton()


def get_meeting_client() -> MeetingClient:
    return _meeting_client_singleton()


def get_services(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    meeting_client: MeetingClient = Depends(get_meeting_client),
) -> ServiceBundle:
    """Build the service graph for one request."""
    return build_services(db, settings, gateway, meeting_client)


def get_booking_service(services: ServiceBundle = Depends(get_services)) -> BookingService:
    """
    Usage in routes:
        booking_service: BookingService = Depends(get_booking_service)
    """
    return services.bookings


def get_payment_service(services: ServiceBundle = Depends(get_services)) -> PaymentService:
    return services.payments


def get_webhook_service(services: ServiceBundle = Depends(get_services)) -> StripeWebhookService:
    return services.webhooks
