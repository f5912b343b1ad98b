# backend/tipu/repositories/booking_repository.py
"""
Booking Repository.

Every state-changing method here is a conditional UPDATE so concurrent
request handlers and overlapping batch runs cannot both win the same
transition. Methods return True when this caller's write took effect.
"""

from datetime import datetime
from typing import Any, Iterable, List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.enums import BookingStatus, PaymentAuthType
from ..core.exceptions import RepositoryException
from ..models.booking import Booking
from .base_repository import BaseRepository


class BookingRepository(BaseRepository[Booking]):
    """Data access for bookings."""

    def __init__(self, db: Session):
        super().__init__(db, Booking)

    def get_for_update(self, booking_id: str) -> Optional[Booking]:
        """Load a booking with a row lock (no-op on SQLite)."""
        try:
            return (
                self.db.query(Booking)
                .filter(Booking.id == booking_id)
                .populate_existing()
                .with_for_update()
                .first()
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error locking booking {booking_id}: {str(e)}")
            raise RepositoryException(f"Failed to lock booking: {str(e)}")

    def transition(
        self,
        booking_id: str,
        expected: Iterable[BookingStatus],
        **values: Any,
    ) -> bool:
        """Apply ``values`` only if the booking is still in one of ``expected`` states."""
        expected_values = [status.value for status in expected]
        updated = self._conditional_update(
            [Booking.id == booking_id, Booking.status.in_(expected_values)],
            values,
        )
        return updated == 1

    def update_unless_terminal(self, booking_id: str, **values: Any) -> bool:
        terminal = [status.value for status in BookingStatus.terminal()]
        updated = self._conditional_update(
            [Booking.id == booking_id, Booking.status.notin_(terminal)],
            values,
        )
        return updated == 1

    # ── Payment state ───────────────────────────────────────────────────

    def mark_paid(self, booking_id: str, payment_reference: str, captured_at: datetime) -> bool:
        """Flip an accepted, unpaid booking to confirmed and paid."""
        updated = self._conditional_update(
            [
                Booking.id == booking_id,
                Booking.status == BookingStatus.ACCEPTED.value,
                Booking.is_paid.is_(False),
            ],
            {
                "is_paid": True,
                "payment_intent_id": payment_reference,
                "payment_captured_at": captured_at,
                "status": BookingStatus.CONFIRMED.value,
                "payment_error": None,
            },
        )
        return updated == 1

    def claim_payment_attempt(self, booking_id: str, now: datetime) -> bool:
        """Set ``payment_attempted`` if nobody else has; the caller then owns the charge."""
        updated = self._conditional_update(
            [
                Booking.id == booking_id,
                Booking.status == BookingStatus.ACCEPTED.value,
                Booking.payment_attempted.is_(False),
                Booking.is_paid.is_(False),
            ],
            {"payment_attempted": True, "payment_attempted_at": now},
        )
        return updated == 1

    def release_payment_claim(self, booking_id: str) -> bool:
        updated = self._conditional_update(
            [
                Booking.id == booking_id,
                Booking.payment_attempted.is_(True),
                Booking.is_paid.is_(False),
            ],
            {"payment_attempted": False},
        )
        return updated == 1

    def record_payment_failure(self, booking_id: str, error: str, now: datetime) -> bool:
        """Increment the retry counter and store the failure on an unpaid booking."""
        updated = self._conditional_update(
            [Booking.id == booking_id, Booking.is_paid.is_(False)],
            {
                "payment_retry_count": Booking.payment_retry_count + 1,
                "last_payment_retry_at": now,
                "payment_error": error,
            },
        )
        return updated == 1

    def record_payment_pending(self, booking_id: str, payment_reference: str, error: str) -> bool:
        updated = self._conditional_update(
            [Booking.id == booking_id, Booking.is_paid.is_(False)],
            {"payment_intent_id": payment_reference, "payment_error": error},
        )
        return updated == 1

    def record_reversed_charge(
        self, booking_id: str, payment_reference: str, refund_id: str, now: datetime
    ) -> bool:
        """Keep the audit trail of a charge refunded because the booking left ``accepted``."""
        updated = self._conditional_update(
            [Booking.id == booking_id, Booking.is_paid.is_(False)],
            {
                "payment_intent_id": payment_reference,
                "refund_id": refund_id,
                "refunded_at": now,
            },
        )
        return updated == 1

    def set_payment_error(self, booking_id: str, error: Optional[str]) -> bool:
        updated = self._conditional_update(
            [Booking.id == booking_id, Booking.is_paid.is_(False)],
            {"payment_error": error},
        )
        return updated == 1

    def set_meeting_if_absent(self, booking_id: str, meeting_link: str, meeting_id: str) -> bool:
        updated = self._conditional_update(
            [Booking.id == booking_id, Booking.meeting_link.is_(None)],
            {"meeting_link": meeting_link, "meeting_id": meeting_id},
        )
        return updated == 1

    # ── Batch queries ───────────────────────────────────────────────────

    def get_due_deferred_payments(self, now: datetime, limit: int) -> List[Booking]:
        """Accepted, unpaid, unclaimed bookings whose scheduled charge time has passed."""
        try:
            return (
                self.db.query(Booking)
                .filter(
                    Booking.status == BookingStatus.ACCEPTED.value,
                    Booking.is_paid.is_(False),
                    Booking.payment_attempted.is_(False),
                    Booking.payment_scheduled_for.isnot(None),
                    Booking.payment_scheduled_for <= now,
                )
                .order_by(Booking.payment_scheduled_for.asc())
                .limit(limit)
                .all()
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error loading due payments: {str(e)}")
            raise RepositoryException(f"Failed to load due payments: {str(e)}")

    def get_failed_payments(self, limit: int) -> List[Booking]:
        """Claimed, unpaid bookings carrying a payment error, regardless of retry count."""
        try:
            return (
                self.db.query(Booking)
                .filter(
                    Booking.status == BookingStatus.ACCEPTED.value,
                    Booking.is_paid.is_(False),
                    Booking.payment_attempted.is_(True),
                    Booking.payment_error.isnot(None),
                )
                .order_by(Booking.scheduled_at.asc())
                .limit(limit)
                .all()
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error loading failed payments: {str(e)}")
            raise RepositoryException(f"Failed to load failed payments: {str(e)}")

    def get_expired_authorizations(self, now: datetime, limit: int) -> List[Booking]:
        try:
            return (
                self.db.query(Booking)
                .filter(
                    Booking.status == BookingStatus.ACCEPTED.value,
                    Booking.is_paid.is_(False),
                    Booking.payment_auth_type == PaymentAuthType.IMMEDIATE_AUTH.value,
                    Booking.payment_intent_id.isnot(None),
                    Booking.authorization_expires_at.isnot(None),
                    Booking.authorization_expires_at <= now,
                )
                .limit(limit)
                .all()
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error loading expired authorizations: {str(e)}")
            raise RepositoryException(f"Failed to load expired authorizations: {str(e)}")

    def get_for_participant(self, user_ids: Iterable[str], limit: int = 100) -> List[Booking]:
        ids = list(user_ids)
        try:
            return (
                self.db.query(Booking)
                .filter(or_(Booking.student_id.in_(ids), Booking.tutor_id.in_(ids)))
                .order_by(Booking.scheduled_at.desc())
                .limit(limit)
                .all()
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error listing bookings: {str(e)}")
            raise RepositoryException(f"Failed to list bookings: {str(e)}")

    def get_payment_history(self, student_ids: Iterable[str], limit: int = 100) -> List[Booking]:
        """Bookings for ``student_ids`` whose payment was captured, newest payment first."""
        ids = list(student_ids)
        try:
            return (
                self.db.query(Booking)
                .filter(
                    Booking.student_id.in_(ids),
                    Booking.payment_captured_at.isnot(None),
                )
                .order_by(Booking.payment_captured_at.desc())
                .limit(limit)
                .all()
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error loading payment history: {str(e)}")
            raise RepositoryException(f"Failed to load payment history: {str(e)}")
