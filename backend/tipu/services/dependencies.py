# backend/tipu/services/dependencies.py
"""
Service wiring shared by the API and the Celery workers.

Everything is built from explicit collaborators (session, settings, provider
clients) so the same graph can be assembled with fakes in tests.
"""

from dataclasses import dataclass
import time
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ..core.config import Settings
from ..integrations import MeetingClient, PaymentGateway
from .base import Clock
from .booking_service import BookingService
from .meeting_service import MeetingService
from .notification_service import NotificationService
from .payment_service import PaymentService
from .scheduled_payment_service import ScheduledPaymentService
from .stripe_webhook_service import StripeWebhookService


@dataclass
class ServiceBundle:
    notifications: NotificationService
    meetings: MeetingService
    payments: PaymentService
    bookings: BookingService
    webhooks: StripeWebhookService
    scheduled_payments: ScheduledPaymentService


def build_services(
    db: Session,
    settings: Settings,
    gateway: PaymentGateway,
    meeting_client: MeetingClient,
    *,
    clock: Optional[Clock] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> ServiceBundle:
    """Assemble the service graph around one database session."""
    notifications = NotificationService(db, clock=clock)
    meetings = MeetingService(db, meeting_client, settings, sleep=sleep, clock=clock)
    payments = PaymentService(db, gateway, meetings, notifications, settings, clock=clock)
    return ServiceBundle(
        notifications=notifications,
        meetings=meetings,
        payments=payments,
        bookings=BookingService(db, payments, meetings, settings, clock=clock),
        webhooks=StripeWebhookService(db, gateway, payments, settings, clock=clock),
        scheduled_payments=ScheduledPaymentService(
            db, gateway, payments, notifications, settings, clock=clock
        ),
    )
