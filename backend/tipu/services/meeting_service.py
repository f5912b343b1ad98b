# backend/tipu/services/meeting_service.py
"""
Meeting Generator.

Ensures a booking has a Teams join link. Generation is idempotent: an
existing link is returned without calling the provider unless the caller
explicitly asks to regenerate (after a reschedule).
"""

from dataclasses import dataclass
import time
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from ..core.config import Settings
from ..core.exceptions import ConflictException, NotFoundException, RetryableServiceException
from ..integrations import MeetingClient, MeetingDetails, MeetingProviderError
from ..models.booking import Booking
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from ..utils.retry import with_retry
from .base import BaseService, Clock


@dataclass(frozen=True)
class MeetingResult:
    booking_id: str
    meeting_link: str
    meeting_id: Optional[str]
    created: bool


class MeetingService(BaseService):
    def __init__(
        self,
        db: Session,
        meeting_client: MeetingClient,
        settings: Settings,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Optional[Clock] = None,
    ):
        super().__init__(db, clock=clock)
        self.meeting_client = meeting_client
        self.settings = settings
        self._sleep = sleep
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.user_repository = RepositoryFactory.create_user_repository(db)

    @BaseService.measure_operation("generate_meeting")
    def generate_meeting_for_booking(
        self, booking_id: str, *, regenerate: bool = False
    ) -> MeetingResult:
        """
        Return the booking's meeting link, creating the meeting if needed.

        Args:
            booking_id: Booking to generate for
            regenerate: Replace an existing meeting (used after reschedule)

        Raises:
            NotFoundException: Booking does not exist
            RetryableServiceException: Provider still failing after all attempts
        """
        booking = self.booking_repository.get_by_id(booking_id)
        if booking is None:
            raise NotFoundException("Booking not found", details={"booking_id": booking_id})

        if booking.meeting_link and not regenerate:
            prometheus_metrics.inc_meeting_generation("existing")
            return MeetingResult(booking.id, booking.meeting_link, booking.meeting_id, False)

        details = self._create_with_retry(booking)

        if regenerate:
            return self._replace_meeting(booking, details)

        with self.transaction():
            stored = self.booking_repository.set_meeting_if_absent(
                booking.id, details.join_url, details.meeting_id
            )
        if not stored:
            # Another caller stored a link first; keep theirs and drop ours.
            self.logger.info("Meeting for booking %s already generated concurrently", booking.id)
            self._delete_quietly(details.meeting_id)
            self.booking_repository.refresh(booking)
            prometheus_metrics.inc_meeting_generation("existing")
            return MeetingResult(booking.id, booking.meeting_link, booking.meeting_id, False)

        self.logger.info("Generated meeting %s for booking %s", details.meeting_id, booking.id)
        prometheus_metrics.inc_meeting_generation("created")
        return MeetingResult(booking.id, details.join_url, details.meeting_id, True)

    def _replace_meeting(self, booking: Booking, details: MeetingDetails) -> MeetingResult:
        previous_meeting_id = booking.meeting_id
        with self.transaction():
            updated = self.booking_repository.update_unless_terminal(
                booking.id, meeting_link=details.join_url, meeting_id=details.meeting_id
            )
        if not updated:
            self._delete_quietly(details.meeting_id)
            raise ConflictException(
                "Booking is no longer active",
                code="BOOKING_NOT_ACTIVE",
                details={"booking_id": booking.id},
            )

        if previous_meeting_id and previous_meeting_id != details.meeting_id:
            self._delete_quietly(previous_meeting_id)

        self.logger.info(
            "Regenerated meeting for booking %s (%s -> %s)",
            booking.id,
            previous_meeting_id,
            details.meeting_id,
        )
        prometheus_metrics.inc_meeting_generation("created")
        return MeetingResult(booking.id, details.join_url, details.meeting_id, True)

    def _create_with_retry(self, booking: Booking) -> MeetingDetails:
        attendees = self._attendee_emails(booking)
        subject = f"{booking.subject} {booking.level} Lesson"

        try:
            return with_retry(
                lambda: self.meeting_client.create_meeting(
                    subject=subject,
                    start=booking.scheduled_at,
                    end=booking.ends_at,
                    attendees=attendees,
                ),
                max_attempts=self.settings.meeting_max_attempts,
                base_delay=self.settings.meeting_retry_base_delay_seconds,
                retry_on=(MeetingProviderError,),
                sleep=self._sleep,
                description=f"create_meeting[{booking.id}]",
            )
        except MeetingProviderError as exc:
            prometheus_metrics.inc_meeting_generation("failed")
            raise RetryableServiceException(
                "Meeting link could not be generated",
                code="MEETING_GENERATION_FAILED",
                details={"booking_id": booking.id, "provider_error": exc.message},
            ) from exc

    def _attendee_emails(self, booking: Booking) -> List[str]:
        emails = []
        for user_id in (booking.student_id, booking.tutor_id):
            user = self.user_repository.get_by_id(user_id)
            if user is not None and user.email:
                emails.append(user.email)
        return emails

    def delete_meeting_for_booking(self, booking: Booking) -> None:
        """Clear the booking's meeting and delete it at the provider; provider errors are logged."""
        meeting_id = booking.meeting_id
        if not meeting_id and not booking.meeting_link:
            return
        with self.transaction():
            booking.meeting_link = None
            booking.meeting_id = None
        if meeting_id:
            self._delete_quietly(meeting_id)

    def _delete_quietly(self, meeting_id: str) -> None:
        try:
            self.meeting_client.delete_meeting(meeting_id)
        except MeetingProviderError as exc:
            self.logger.warning("Failed to delete meeting %s: %s", meeting_id, exc.message)
