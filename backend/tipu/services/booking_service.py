# backend/tipu/services/booking_service.py
"""
Booking Service for the Tipu platform.

Owns the booking state machine:

    tutor_suggested -> pending -> accepted -> confirmed -> completed
    pending/accepted -> declined | cancelled
    confirmed -> cancelled (with refund)

``accepted -> confirmed`` belongs to ``PaymentService.confirm_payment``.
Every transition is written with a conditional update on the expected
statuses, so a stale request loses at write time with
``INVALID_BOOKING_TRANSITION`` rather than overwriting a newer state.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..core.config import Settings
from ..core.constants import (
    CANCELLATION_WINDOW_HOURS,
    DEFAULT_CANCELLATION_REASON,
    MIN_REASON_LENGTH,
    MIN_TOPICS_COVERED_LENGTH,
    TUTOR_RESCHEDULE_WINDOW_HOURS,
)
from ..core.enums import BookingStatus, RescheduleRequestStatus, RoleName
from ..core.exceptions import (
    BusinessRuleException,
    ConflictException,
    DuplicateRequestException,
    ForbiddenException,
    InvalidTransitionException,
    NotFoundException,
    ValidationException,
)
from ..models.booking import Booking
from ..models.user import User
from ..repositories.factory import RepositoryFactory
from ..schemas.booking import BookingCreate, LessonReportCreate, LessonSuggestionCreate
from ..utils.age import is_adult
from .base import BaseService, Clock
from .booking_access import BookingAccess
from .meeting_service import MeetingResult, MeetingService
from .payment_service import PaymentService


OPEN_STATUSES = [
    BookingStatus.TUTOR_SUGGESTED,
    BookingStatus.PENDING,
    BookingStatus.ACCEPTED,
    BookingStatus.CONFIRMED,
]


class BookingService(BaseService):
    """
    Service layer for booking operations.

    Payment side effects (strategy selection, refunds, hold release) are
    delegated to ``PaymentService``; meeting side effects to ``MeetingService``.
    """

    def __init__(
        self,
        db: Session,
        payment_service: PaymentService,
        meeting_service: MeetingService,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
    ):
        super().__init__(db, clock=clock)
        self.payment_service = payment_service
        self.meeting_service = meeting_service
        self.settings = settings
        self.repository = RepositoryFactory.create_booking_repository(db)
        self.user_repository = RepositoryFactory.create_user_repository(db)

    # ── Helpers ─────────────────────────────────────────────────────────

    def _get_booking(self, booking_id: str) -> Booking:
        booking = self.repository.get_by_id(booking_id)
        if booking is None:
            raise NotFoundException("Booking not found", details={"booking_id": booking_id})
        return booking

    def _get_user_with_role(self, user_id: str, role: RoleName, label: str) -> User:
        user = self.user_repository.get_by_id(user_id)
        if user is None or user.role != role.value:
            raise NotFoundException(f"{label} not found", details={f"{label.lower()}_id": user_id})
        return user

    def _require_future(self, scheduled_at: datetime) -> None:
        if scheduled_at <= self.now():
            raise ValidationException(
                "Lesson time must be in the future",
                code="SCHEDULED_IN_PAST",
                details={"scheduled_at": scheduled_at.isoformat()},
            )

    @staticmethod
    def _require_text(value: Optional[str], minimum: int, field: str) -> str:
        text = (value or "").strip()
        if len(text) < minimum:
            raise ValidationException(
                f"{field} must be at least {minimum} characters",
                code="TEXT_TOO_SHORT",
                details={"field": field, "min_length": minimum},
            )
        return text

    def _apply_transition(
        self,
        booking: Booking,
        expected: List[BookingStatus],
        action: str,
        **values: Any,
    ) -> Booking:
        """Write ``values`` if the booking is still in ``expected``; otherwise report the current state."""
        with self.transaction():
            updated = self.repository.transition(booking.id, expected, **values)
        if not updated:
            self.repository.refresh(booking)
            raise InvalidTransitionException(booking.id, booking.status, action)
        return booking

    def _require_status(self, booking: Booking, expected: List[BookingStatus], action: str) -> None:
        if booking.status not in {status.value for status in expected}:
            raise InvalidTransitionException(booking.id, booking.status, action)

    # ── Creation ────────────────────────────────────────────────────────

    @BaseService.measure_operation("create_booking")
    def create_booking(self, actor: User, data: BookingCreate) -> Booking:
        """
        Create a pending booking.

        Adult students book for themselves, parents for a linked child and
        admins for any student. Students under 18 must ask a guardian.
        """
        today = self.now().date()
        if actor.role == RoleName.STUDENT.value:
            if data.student_id not in (None, actor.id):
                raise ForbiddenException(
                    "Students can only book lessons for themselves", code="NOT_OWN_BOOKING"
                )
            if not is_adult(actor.date_of_birth, today):
                raise ForbiddenException(
                    "Students under 18 cannot book lessons directly",
                    code="PARENT_BOOKING_REQUIRED",
                )
            student = actor
        elif actor.role == RoleName.PARENT.value:
            if not data.student_id or data.student_id not in actor.child_ids:
                raise ForbiddenException(
                    "You can only create bookings for your registered children",
                    code="NOT_GUARDIAN",
                    details={"student_id": data.student_id},
                )
            student = self._get_user_with_role(data.student_id, RoleName.STUDENT, "Student")
        elif actor.is_admin:
            if not data.student_id:
                raise ValidationException("student_id is required", code="STUDENT_REQUIRED")
            student = self._get_user_with_role(data.student_id, RoleName.STUDENT, "Student")
        else:
            raise ForbiddenException("Tutors cannot book lessons", code="ROLE_NOT_ALLOWED")

        tutor = self._get_user_with_role(data.tutor_id, RoleName.TUTOR, "Tutor")
        self._require_future(data.scheduled_at)

        with self.transaction():
            booking = self.repository.create(
                student_id=student.id,
                tutor_id=tutor.id,
                subject=data.subject,
                level=data.level,
                scheduled_at=data.scheduled_at,
                duration_minutes=data.duration_minutes,
                price=data.price,
                notes=data.notes,
                status=BookingStatus.PENDING.value,
            )

        self.logger.info(
            "Created booking %s: student=%s tutor=%s at %s",
            booking.id,
            student.id,
            tutor.id,
            booking.scheduled_at.isoformat(),
        )
        return booking

    @BaseService.measure_operation("suggest_lesson")
    def suggest_lesson(self, tutor: User, data: LessonSuggestionCreate) -> Booking:
        """Tutor proposes a lesson; the student's payer approves it before it becomes pending."""
        if not tutor.is_tutor:
            raise ForbiddenException("Only tutors can suggest lessons", code="ROLE_NOT_ALLOWED")

        student = self._get_user_with_role(data.student_id, RoleName.STUDENT, "Student")
        self._require_future(data.scheduled_at)

        requires_guardian = not is_adult(student.date_of_birth, self.now().date())
        if requires_guardian and student.parent_id is None:
            raise BusinessRuleException(
                "This student has no guardian linked to approve lessons",
                code="NO_PAYER_OF_RECORD",
                details={"student_id": student.id},
            )

        with self.transaction():
            booking = self.repository.create(
                student_id=student.id,
                tutor_id=tutor.id,
                subject=data.subject,
                level=data.level,
                scheduled_at=data.scheduled_at,
                duration_minutes=data.duration_minutes,
                price=data.price,
                notes=data.notes,
                status=BookingStatus.TUTOR_SUGGESTED.value,
                suggested_by_tutor=True,
                requires_guardian_approval=requires_guardian,
            )

        self.logger.info(
            "Tutor %s suggested booking %s (guardian approval: %s)",
            tutor.id,
            booking.id,
            requires_guardian,
        )
        return booking

    def _require_suggestion_approver(self, actor: User, booking: Booking) -> None:
        if actor.is_admin:
            return
        if booking.requires_guardian_approval:
            allowed = BookingAccess.is_guardian(actor, booking.student)
        else:
            allowed = BookingAccess.is_student(actor, booking)
        if not allowed:
            raise ForbiddenException(
                "Not authorized to respond to this lesson suggestion",
                code="NOT_SUGGESTION_APPROVER",
                details={"booking_id": booking.id},
            )

    @BaseService.measure_operation("approve_suggestion")
    def approve_suggestion(self, actor: User, booking_id: str) -> Booking:
        booking = self._get_booking(booking_id)
        self._require_status(booking, [BookingStatus.TUTOR_SUGGESTED], "approve")
        self._require_suggestion_approver(actor, booking)
        self._require_future(booking.scheduled_at)

        self._apply_transition(
            booking,
            [BookingStatus.TUTOR_SUGGESTED],
            "approve",
            status=BookingStatus.PENDING.value,
        )
        self.logger.info("Suggestion %s approved by %s", booking.id, actor.id)
        return booking

    @BaseService.measure_operation("decline_suggestion")
    def decline_suggestion(
        self, actor: User, booking_id: str, reason: Optional[str] = None
    ) -> Booking:
        booking = self._get_booking(booking_id)
        self._require_status(booking, [BookingStatus.TUTOR_SUGGESTED], "decline")
        self._require_suggestion_approver(actor, booking)

        self._apply_transition(
            booking,
            [BookingStatus.TUTOR_SUGGESTED],
            "decline",
            status=BookingStatus.DECLINED.value,
            decline_reason=(reason or "").strip() or DEFAULT_CANCELLATION_REASON,
        )
        self.logger.info("Suggestion %s declined by %s", booking.id, actor.id)
        return booking

    # ── Tutor decisions ─────────────────────────────────────────────────

    @BaseService.measure_operation("accept_booking")
    def accept_booking(self, actor: User, booking_id: str) -> Booking:
        """Accept a pending booking and record which payment strategy applies."""
        booking = self._get_booking(booking_id)
        BookingAccess.require_tutor(actor, booking, "accept")
        self._require_status(booking, [BookingStatus.PENDING], "accept")
        self._require_future(booking.scheduled_at)

        plan = self.payment_service.plan_for(booking.scheduled_at)
        self._apply_transition(
            booking,
            [BookingStatus.PENDING],
            "accept",
            status=BookingStatus.ACCEPTED.value,
            payment_auth_type=plan.auth_type.value,
            payment_scheduled_for=plan.payment_scheduled_for,
        )
        self.logger.info(
            "Booking %s accepted; payment strategy %s", booking.id, plan.auth_type.value
        )
        return booking

    @BaseService.measure_operation("decline_booking")
    def decline_booking(self, actor: User, booking_id: str, reason: str) -> Booking:
        booking = self._get_booking(booking_id)
        BookingAccess.require_tutor(actor, booking, "decline")
        reason = self._require_text(reason, MIN_REASON_LENGTH, "reason")
        self._require_status(booking, [BookingStatus.PENDING], "decline")

        self._apply_transition(
            booking,
            [BookingStatus.PENDING],
            "decline",
            status=BookingStatus.DECLINED.value,
            decline_reason=reason,
        )
        self.logger.info("Booking %s declined by tutor %s", booking.id, actor.id)
        return booking

    @BaseService.measure_operation("submit_lesson_report")
    def submit_lesson_report(
        self, actor: User, booking_id: str, report: LessonReportCreate
    ) -> Booking:
        booking = self._get_booking(booking_id)
        BookingAccess.require_tutor(actor, booking, "report on")
        topics = self._require_text(report.topics_covered, MIN_TOPICS_COVERED_LENGTH, "topics_covered")
        self._require_status(booking, [BookingStatus.CONFIRMED], "complete")

        lesson_report: Dict[str, Any] = {
            "topics_covered": topics,
            "homework": report.homework,
            "notes": report.notes,
            "submitted_at": self.now().isoformat(),
        }
        self._apply_transition(
            booking,
            [BookingStatus.CONFIRMED],
            "complete",
            status=BookingStatus.COMPLETED.value,
            lesson_report=lesson_report,
        )
        self.logger.info("Lesson report submitted for booking %s", booking.id)
        return booking

    # ── Cancellation ────────────────────────────────────────────────────

    @BaseService.measure_operation("cancel_booking")
    def cancel_booking(self, actor: User, booking_id: str, reason: Optional[str] = None) -> Booking:
        """
        Cancel a booking, returning any money first.

        A paid booking is refunded before the state changes; a refund failure
        leaves the booking untouched and raises ``RefundFailedException``.
        An uncaptured hold is released under the same rule.
        """
        booking = self._get_booking(booking_id)
        now = self.now()

        if not BookingAccess.can_cancel(actor, booking, now.date()):
            raise ForbiddenException(
                "Not authorized to cancel this booking",
                code="NOT_AUTHORIZED_TO_CANCEL",
                details={"booking_id": booking.id},
            )
        self._require_status(booking, OPEN_STATUSES, "cancel")

        is_tutor = BookingAccess.is_tutor(actor, booking)
        if is_tutor:
            reason = self._require_text(reason, MIN_REASON_LENGTH, "reason")
        else:
            reason = (reason or "").strip() or DEFAULT_CANCELLATION_REASON

        hours_until = booking.hours_until_lesson(now)
        if not is_tutor and not actor.is_admin and hours_until < CANCELLATION_WINDOW_HOURS:
            raise BusinessRuleException(
                f"Lessons cannot be cancelled within {CANCELLATION_WINDOW_HOURS} hours of the start time",
                code="CANCELLATION_WINDOW_CLOSED",
                details={"booking_id": booking.id, "hours_until_lesson": round(hours_until, 2)},
            )

        values: Dict[str, Any] = {
            "status": BookingStatus.CANCELLED.value,
            "cancellation_reason": reason,
            "cancelled_by": actor.id,
            "cancelled_at": now,
        }

        if booking.is_paid:
            refund_id = self.payment_service.refund_booking(booking)
            values.update(is_paid=False, refund_id=refund_id, refunded_at=now)
            expected = [BookingStatus.CONFIRMED]
        else:
            self.payment_service.release_hold(booking)
            expected = [
                BookingStatus.TUTOR_SUGGESTED,
                BookingStatus.PENDING,
                BookingStatus.ACCEPTED,
            ]

        try:
            self._apply_transition(booking, expected, "cancel", **values)
        except InvalidTransitionException:
            if "refund_id" in values:
                self.logger.error(
                    "Booking %s refunded (%s) but moved to %s before cancellation was stored",
                    booking.id,
                    values["refund_id"],
                    booking.status,
                )
            raise

        self.meeting_service.delete_meeting_for_booking(booking)

        self.logger.info(
            "Booking %s cancelled by %s (refund=%s)",
            booking.id,
            actor.id,
            values.get("refund_id"),
        )
        return booking

    # ── Rescheduling ────────────────────────────────────────────────────

    def _require_reschedule_party(self, actor: User, booking: Booking) -> None:
        if not BookingAccess.can_cancel(actor, booking, self.now().date()):
            raise ForbiddenException(
                "Not authorized to reschedule this booking",
                code="NOT_AUTHORIZED_TO_RESCHEDULE",
                details={"booking_id": booking.id},
            )

    def _require_tutor_window(self, actor: User, booking: Booking) -> None:
        if not BookingAccess.is_tutor(actor, booking):
            return
        hours_until = booking.hours_until_lesson(self.now())
        if 0 < hours_until < TUTOR_RESCHEDULE_WINDOW_HOURS:
            raise BusinessRuleException(
                f"Tutors cannot reschedule within {TUTOR_RESCHEDULE_WINDOW_HOURS} hours of a lesson; "
                "cancel it or contact the student instead",
                code="RESCHEDULE_WINDOW_CLOSED",
                details={"booking_id": booking.id, "hours_until_lesson": round(hours_until, 2)},
            )

    def _apply_reschedule(
        self,
        booking: Booking,
        new_time: datetime,
        reschedule_request: Optional[Dict[str, Any]] = None,
    ) -> Booking:
        self._require_future(new_time)

        values: Dict[str, Any] = {"scheduled_at": new_time}
        if reschedule_request is not None:
            values["reschedule_request"] = reschedule_request
        if not booking.is_paid:
            values.update(
                payment_attempted=False,
                payment_attempted_at=None,
                payment_error=None,
                payment_retry_count=0,
                last_payment_retry_at=None,
            )
            # Strategies are chosen at acceptance; earlier states have none to recompute.
            if booking.status == BookingStatus.ACCEPTED.value:
                plan = self.payment_service.plan_for(new_time)
                values.update(
                    payment_auth_type=plan.auth_type.value,
                    payment_scheduled_for=plan.payment_scheduled_for,
                )
                if plan.auth_type.value != booking.payment_auth_type and (
                    booking.payment_intent_id or booking.setup_intent_id
                ):
                    # The old intent must not stay payable alongside the new strategy.
                    self.payment_service.release_hold(booking)
                    values.update(
                        payment_intent_id=None,
                        setup_intent_id=None,
                        authorization_expires_at=None,
                    )

        had_meeting = bool(booking.meeting_link)
        previous_time = booking.scheduled_at
        self._apply_transition(booking, OPEN_STATUSES, "reschedule", **values)

        self.logger.info(
            "Booking %s rescheduled from %s to %s",
            booking.id,
            previous_time.isoformat(),
            new_time.isoformat(),
        )

        if had_meeting:
            try:
                self.meeting_service.generate_meeting_for_booking(booking.id, regenerate=True)
            except Exception as exc:
                self.logger.error(
                    "Failed to regenerate meeting for rescheduled booking %s: %s",
                    booking.id,
                    exc,
                    exc_info=True,
                )
        return booking

    @BaseService.measure_operation("reschedule_booking")
    def reschedule_booking(self, actor: User, booking_id: str, new_time: datetime) -> Booking:
        """Move a booking to ``new_time`` directly; status is unchanged."""
        booking = self._get_booking(booking_id)
        self._require_reschedule_party(actor, booking)
        self._require_status(booking, OPEN_STATUSES, "reschedule")
        self._require_tutor_window(actor, booking)
        return self._apply_reschedule(booking, new_time)

    @BaseService.measure_operation("request_reschedule")
    def request_reschedule(
        self,
        actor: User,
        booking_id: str,
        new_time: datetime,
        reason: Optional[str] = None,
    ) -> Booking:
        """Propose a new time; the other party approves or declines it."""
        booking = self._get_booking(booking_id)
        self._require_reschedule_party(actor, booking)
        self._require_status(booking, OPEN_STATUSES, "reschedule")
        self._require_tutor_window(actor, booking)
        if booking.has_pending_reschedule:
            raise DuplicateRequestException(
                "There is already a pending reschedule request for this booking",
                details={"booking_id": booking.id},
            )
        self._require_future(new_time)

        request = {
            "requested_by": actor.id,
            "requested_at": self.now().isoformat(),
            "new_scheduled_at": new_time.isoformat(),
            "reason": (reason or "").strip() or None,
            "status": RescheduleRequestStatus.PENDING.value,
        }
        with self.transaction():
            updated = self.repository.update_unless_terminal(booking.id, reschedule_request=request)
        if not updated:
            self.repository.refresh(booking)
            raise InvalidTransitionException(booking.id, booking.status, "reschedule")

        self.logger.info(
            "Reschedule requested for booking %s by %s to %s",
            booking.id,
            actor.id,
            new_time.isoformat(),
        )
        return booking

    def _pending_request_for_responder(self, actor: User, booking: Booking) -> Dict[str, Any]:
        if not booking.has_pending_reschedule:
            raise ConflictException(
                "No pending reschedule request found",
                code="NO_PENDING_RESCHEDULE",
                details={"booking_id": booking.id},
            )
        request = dict(booking.reschedule_request)
        if request.get("requested_by") == actor.id:
            raise ForbiddenException(
                "You cannot respond to your own reschedule request",
                code="OWN_RESCHEDULE_REQUEST",
                details={"booking_id": booking.id},
            )
        self._require_reschedule_party(actor, booking)

        requested_by_tutor = request.get("requested_by") == booking.tutor_id
        if not actor.is_admin and BookingAccess.is_tutor(actor, booking) == requested_by_tutor:
            raise ForbiddenException(
                "Only the other party can respond to this reschedule request",
                code="NOT_OTHER_PARTY",
                details={"booking_id": booking.id},
            )
        return request

    @BaseService.measure_operation("approve_reschedule")
    def approve_reschedule(self, actor: User, booking_id: str) -> Booking:
        booking = self._get_booking(booking_id)
        self._require_status(booking, OPEN_STATUSES, "reschedule")
        request = self._pending_request_for_responder(actor, booking)

        new_time = datetime.fromisoformat(request["new_scheduled_at"])
        request.update(
            status=RescheduleRequestStatus.APPROVED.value,
            responded_by=actor.id,
            responded_at=self.now().isoformat(),
        )
        return self._apply_reschedule(booking, new_time, reschedule_request=request)

    @BaseService.measure_operation("decline_reschedule")
    def decline_reschedule(
        self, actor: User, booking_id: str, reason: Optional[str] = None
    ) -> Booking:
        booking = self._get_booking(booking_id)
        self._require_status(booking, OPEN_STATUSES, "reschedule")
        request = self._pending_request_for_responder(actor, booking)

        request.update(
            status=RescheduleRequestStatus.DECLINED.value,
            responded_by=actor.id,
            responded_at=self.now().isoformat(),
            decline_reason=(reason or "").strip() or DEFAULT_CANCELLATION_REASON,
        )
        with self.transaction():
            updated = self.repository.update_unless_terminal(booking.id, reschedule_request=request)
        if not updated:
            self.repository.refresh(booking)
            raise InvalidTransitionException(booking.id, booking.status, "reschedule")

        self.logger.info("Reschedule request for booking %s declined by %s", booking.id, actor.id)
        return booking

    # ── Reads and meetings ──────────────────────────────────────────────

    def get_booking(self, actor: User, booking_id: str) -> Booking:
        booking = self._get_booking(booking_id)
        if not (actor.is_admin or BookingAccess.is_participant(actor, booking)):
            raise ForbiddenException(
                "Not authorized to view this booking",
                code="NOT_PARTICIPANT",
                details={"booking_id": booking.id},
            )
        return booking

    def list_bookings(self, actor: User, limit: int = 100) -> List[Booking]:
        """Bookings where the caller, or one of their children, takes part."""
        return self.repository.get_for_participant({actor.id} | actor.child_ids, limit=limit)

    @BaseService.measure_operation("generate_meeting_on_demand")
    def generate_meeting(self, actor: User, booking_id: str) -> MeetingResult:
        booking = self.get_booking(actor, booking_id)
        if booking.status != BookingStatus.CONFIRMED.value:
            raise BusinessRuleException(
                "Meeting links are only available for confirmed bookings",
                code="BOOKING_NOT_CONFIRMED",
                details={"booking_id": booking.id, "status": booking.status},
            )
        return self.meeting_service.generate_meeting_for_booking(booking.id)
