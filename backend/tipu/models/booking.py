# backend/tipu/models/booking.py
"""
Booking model for the Tipu platform.

A booking is a paid lesson between a student and a tutor. It carries its own
payment and meeting state so the state machine, the payment orchestrator and
the scheduled processor can all work from one row.
"""

from datetime import datetime, timedelta
import logging
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship
import ulid

from ..core.constants import DEFAULT_LESSON_DURATION
from ..core.enums import BookingStatus
from ..database import Base
from .types import JSONType, UTCDateTime, utc_now

logger = logging.getLogger(__name__)


class Booking(Base):
    """
    Lesson booking with denormalised payment and meeting state.

    Invariants kept by the service layer:
    - ``is_paid`` implies a payment reference and status confirmed/completed
    - ``payment_scheduled_for`` is only set for deferred authorization
    - ``meeting_link`` is only replaced on explicit regeneration
    """

    __tablename__ = "bookings"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))

    student_id = Column(String(26), ForeignKey("users.id"), nullable=False, index=True)
    tutor_id = Column(String(26), ForeignKey("users.id"), nullable=False, index=True)

    subject = Column(String(100), nullable=False)
    level = Column(String(50), nullable=False)
    scheduled_at = Column(UTCDateTime, nullable=False, index=True)
    duration_minutes = Column(Integer, nullable=False, default=DEFAULT_LESSON_DURATION)
    price = Column(Integer, nullable=False, comment="Minor currency units")
    notes = Column(Text, nullable=True)

    status = Column(String(20), nullable=False, default=BookingStatus.PENDING.value, index=True)
    suggested_by_tutor = Column(Boolean, nullable=False, default=False)
    requires_guardian_approval = Column(Boolean, nullable=False, default=False)

    # Payment state
    is_paid = Column(Boolean, nullable=False, default=False)
    payment_auth_type = Column(String(20), nullable=True)
    payment_intent_id = Column(String(255), nullable=True, comment="Stripe payment intent")
    setup_intent_id = Column(String(255), nullable=True, comment="Stripe setup intent")
    saved_payment_method_id = Column(String(255), nullable=True)
    authorization_expires_at = Column(UTCDateTime, nullable=True)
    payment_scheduled_for = Column(UTCDateTime, nullable=True, index=True)
    payment_attempted = Column(Boolean, nullable=False, default=False)
    payment_attempted_at = Column(UTCDateTime, nullable=True)
    payment_retry_count = Column(Integer, nullable=False, default=0)
    last_payment_retry_at = Column(UTCDateTime, nullable=True)
    payment_error = Column(Text, nullable=True)
    payment_captured_at = Column(UTCDateTime, nullable=True)
    payment_failure_notice = Column(Text, nullable=True)
    payment_failure_notified_at = Column(UTCDateTime, nullable=True)

    # Meeting
    meeting_link = Column(Text, nullable=True)
    meeting_id = Column(String(512), nullable=True)

    # Outcomes
    lesson_report = Column(JSONType, nullable=True)
    decline_reason = Column(Text, nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    cancelled_by = Column(String(26), ForeignKey("users.id"), nullable=True)
    cancelled_at = Column(UTCDateTime, nullable=True)
    refund_id = Column(String(255), nullable=True)
    refunded_at = Column(UTCDateTime, nullable=True)
    reschedule_request = Column(JSONType, nullable=True)

    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now)

    student = relationship("User", foreign_keys=[student_id])
    tutor = relationship("User", foreign_keys=[tutor_id])

    __table_args__ = (
        CheckConstraint(
            "status IN ('tutor_suggested', 'pending', 'accepted', 'confirmed', "
            "'completed', 'cancelled', 'declined')",
            name="ck_bookings_status",
        ),
        CheckConstraint(
            "payment_auth_type IS NULL OR payment_auth_type IN "
            "('immediate_charge', 'immediate_auth', 'deferred_auth')",
            name="ck_bookings_payment_auth_type",
        ),
        CheckConstraint("duration_minutes > 0", name="check_duration_positive"),
        CheckConstraint("price > 0", name="check_price_positive"),
        CheckConstraint("payment_retry_count >= 0", name="check_retry_count_non_negative"),
        Index(
            "ix_bookings_due_payments",
            "status",
            "is_paid",
            "payment_attempted",
            "payment_scheduled_for",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<Booking {self.id}: student={self.student_id}, tutor={self.tutor_id}, "
            f"scheduled_at={self.scheduled_at}, status={self.status}, paid={self.is_paid}>"
        )

    @property
    def ends_at(self) -> datetime:
        return self.scheduled_at + timedelta(minutes=self.duration_minutes)

    def hours_until_lesson(self, now: datetime) -> float:
        return (self.scheduled_at - now).total_seconds() / 3600

    @property
    def has_pending_reschedule(self) -> bool:
        request: Optional[dict[str, Any]] = self.reschedule_request
        return bool(request) and request.get("status") == "pending"

    def to_dict(self) -> dict[str, Any]:
        """Wire-level view of the fields clients rely on."""
        return {
            "id": self.id,
            "student_id": self.student_id,
            "tutor_id": self.tutor_id,
            "subject": self.subject,
            "level": self.level,
            "scheduled_at": self.scheduled_at.isoformat() if self.scheduled_at else None,
            "duration_minutes": self.duration_minutes,
            "price": self.price,
            "status": self.status,
            "is_paid": self.is_paid,
            "payment_auth_type": self.payment_auth_type,
            "payment_scheduled_for": (
                self.payment_scheduled_for.isoformat() if self.payment_scheduled_for else None
            ),
            "meeting_link": self.meeting_link,
        }
