"""
Booking request and response schemas.

Length rules for reasons and lesson reports are enforced by the booking
service so that direct service callers get the same validation.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import ConfigDict, Field, field_validator

from ..core.constants import (
    DEFAULT_LESSON_DURATION,
    MAX_LESSON_DURATION,
    MAX_REASON_LENGTH,
    MIN_LESSON_DURATION,
)
from ..core.enums import BookingStatus, PaymentAuthType
from ._strict_base import StrictModel, StrictRequestModel


def _require_timezone(value: datetime) -> datetime:
    if value.tzinfo is None:
        raise ValueError("datetime must include a timezone offset")
    return value.astimezone(timezone.utc)


class BookingCreate(StrictRequestModel):
    """Request to book a lesson with a tutor."""

    tutor_id: str = Field(..., description="Tutor to book")
    student_id: Optional[str] = Field(
        None, description="Student the lesson is for; required when a parent books for a child"
    )
    subject: str = Field(..., min_length=1, max_length=100)
    level: str = Field(..., min_length=1, max_length=50)
    scheduled_at: datetime = Field(..., description="Lesson start, timezone-aware")
    duration_minutes: int = Field(
        DEFAULT_LESSON_DURATION, ge=MIN_LESSON_DURATION, le=MAX_LESSON_DURATION
    )
    price: int = Field(..., gt=0, description="Price in minor currency units")
    notes: Optional[str] = Field(None, max_length=1000)

    @field_validator("scheduled_at")
    @classmethod
    def _tz_aware(cls, v: datetime) -> datetime:
        return _require_timezone(v)


class LessonSuggestionCreate(StrictRequestModel):
    """Tutor proposal for a lesson with one of their students."""

    student_id: str
    subject: str = Field(..., min_length=1, max_length=100)
    level: str = Field(..., min_length=1, max_length=50)
    scheduled_at: datetime
    duration_minutes: int = Field(
        DEFAULT_LESSON_DURATION, ge=MIN_LESSON_DURATION, le=MAX_LESSON_DURATION
    )
    price: int = Field(..., gt=0)
    notes: Optional[str] = Field(None, max_length=1000)

    @field_validator("scheduled_at")
    @classmethod
    def _tz_aware(cls, v: datetime) -> datetime:
        return _require_timezone(v)


class ReasonRequest(StrictRequestModel):
    reason: str = Field(..., max_length=MAX_REASON_LENGTH)


class CancelRequest(StrictRequestModel):
    reason: Optional[str] = Field(None, max_length=MAX_REASON_LENGTH)


class RescheduleRequest(StrictRequestModel):
    scheduled_at: datetime
    reason: Optional[str] = Field(None, max_length=MAX_REASON_LENGTH)

    @field_validator("scheduled_at")
    @classmethod
    def _tz_aware(cls, v: datetime) -> datetime:
        return _require_timezone(v)


class LessonReportCreate(StrictRequestModel):
    topics_covered: str = Field(..., max_length=5000)
    homework: Optional[str] = Field(None, max_length=5000)
    notes: Optional[str] = Field(None, max_length=5000)


class BookingResponse(StrictModel):
    """Booking as seen by clients; status and payment fields form the wire contract."""

    model_config = ConfigDict(from_attributes=True, extra="forbid")

    id: str
    student_id: str
    tutor_id: str
    subject: str
    level: str
    scheduled_at: datetime
    duration_minutes: int
    price: int
    status: BookingStatus
    is_paid: bool
    payment_auth_type: Optional[PaymentAuthType] = None
    payment_scheduled_for: Optional[datetime] = None
    authorization_expires_at: Optional[datetime] = None
    payment_error: Optional[str] = None
    meeting_link: Optional[str] = None
    requires_guardian_approval: bool = False
    decline_reason: Optional[str] = None
    cancellation_reason: Optional[str] = None
    refund_id: Optional[str] = None
    lesson_report: Optional[Dict[str, Any]] = None
    reschedule_request: Optional[Dict[str, Any]] = None
    created_at: datetime


class MeetingResponse(StrictModel):
    booking_id: str
    meeting_link: str
    created: bool
