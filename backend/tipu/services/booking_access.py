# backend/tipu/services/booking_access.py
"""
Relationship checks between a caller and a booking.

Roles alone are not enough: a tutor may only act on their own bookings, a
parent only on bookings for their own children, and a student only acts
alone once they are an adult.
"""

from datetime import date
from typing import Optional

from ..core.exceptions import ForbiddenException
from ..models.booking import Booking
from ..models.user import User
from ..utils.age import is_adult


class BookingAccess:
    """Stateless policy helpers; ``today`` is always passed in by the caller."""

    @staticmethod
    def is_tutor(actor: User, booking: Booking) -> bool:
        return actor.id == booking.tutor_id

    @staticmethod
    def is_student(actor: User, booking: Booking) -> bool:
        return actor.id == booking.student_id

    @staticmethod
    def is_guardian(actor: User, student: User) -> bool:
        return student.parent_id is not None and student.parent_id == actor.id

    @classmethod
    def is_adult_student(cls, actor: User, booking: Booking, today: date) -> bool:
        return cls.is_student(actor, booking) and is_adult(actor.date_of_birth, today)

    @classmethod
    def is_participant(cls, actor: User, booking: Booking) -> bool:
        return (
            cls.is_tutor(actor, booking)
            or cls.is_student(actor, booking)
            or cls.is_guardian(actor, booking.student)
        )

    @staticmethod
    def resolve_payer(student: User, today: date) -> Optional[User]:
        """Adult students pay for themselves; minors are paid for by their guardian."""
        if is_adult(student.date_of_birth, today):
            return student
        return student.parent

    @classmethod
    def is_payer_of_record(cls, actor: User, booking: Booking, today: date) -> bool:
        if actor.is_admin:
            return True
        payer = cls.resolve_payer(booking.student, today)
        return payer is not None and payer.id == actor.id

    @classmethod
    def can_cancel(cls, actor: User, booking: Booking, today: date) -> bool:
        return (
            actor.is_admin
            or cls.is_tutor(actor, booking)
            or cls.is_adult_student(actor, booking, today)
            or cls.is_guardian(actor, booking.student)
        )

    @classmethod
    def can_act_for_student(cls, actor: User, booking: Booking, today: date) -> bool:
        """Adult student, guardian of the student, or admin."""
        return (
            actor.is_admin
            or cls.is_adult_student(actor, booking, today)
            or cls.is_guardian(actor, booking.student)
        )

    @classmethod
    def require_tutor(cls, actor: User, booking: Booking, action: str) -> None:
        if not cls.is_tutor(actor, booking):
            raise ForbiddenException(
                f"Only the assigned tutor can {action} this booking",
                code="NOT_ASSIGNED_TUTOR",
                details={"booking_id": booking.id},
            )
