# backend/tipu/services/notification_service.py
"""
Payer notifications for payment problems.

Every public method is fire-and-forget: failures are logged and never reach
the caller, because a missed notice must not undo a payment decision.
Delivery content (email templates) lives outside this service; here the
notice is recorded on the booking and emitted as a structured log event.
"""

from typing import Optional

from sqlalchemy.orm import Session

from ..repositories.factory import RepositoryFactory
from .base import BaseService, Clock
from .booking_access import BookingAccess


class NotificationService(BaseService):
    def __init__(self, db: Session, *, clock: Optional[Clock] = None):
        super().__init__(db, clock=clock)
        self.booking_repository = RepositoryFactory.create_booking_repository(db)

    def notify_payment_failure(self, booking_id: str, reason: str) -> None:
        self._notify(
            booking_id,
            "payment_failed",
            f"We could not take payment for your lesson: {reason}",
        )

    def notify_action_required(self, booking_id: str, reason: str) -> None:
        self._notify(
            booking_id,
            "payment_action_required",
            f"Your bank needs you to confirm the payment for your lesson: {reason}",
        )

    def notify_refund_failure(self, booking_id: str, reason: str) -> None:
        self._notify(
            booking_id,
            "refund_failed",
            f"We could not refund your lesson yet and will retry: {reason}",
        )

    def notify_authorization_expired(self, booking_id: str) -> None:
        self._notify(
            booking_id,
            "authorization_expired",
            "Your card authorization for this lesson expired. Please authorize the payment again.",
        )

    def _notify(self, booking_id: str, kind: str, message: str) -> None:
        try:
            booking = self.booking_repository.get_by_id(booking_id)
            if booking is None:
                self.logger.warning("Skipping %s notice: booking %s not found", kind, booking_id)
                return

            payer = BookingAccess.resolve_payer(booking.student, self.now().date())
            with self.transaction():
                booking.payment_failure_notice = message
                booking.payment_failure_notified_at = self.now()

            self.logger.info(
                "Payer notice %s for booking %s",
                kind,
                booking_id,
                extra={
                    "notification_kind": kind,
                    "booking_id": booking_id,
                    "recipient_id": payer.id if payer else None,
                },
            )
        except Exception as exc:
            self.logger.error(
                "Failed to record %s notice for booking %s: %s",
                kind,
                booking_id,
                exc,
                exc_info=True,
            )
