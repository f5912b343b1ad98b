# backend/tipu/routes/bookings.py
"""
Booking routes - API v1

Versioned booking endpoints under /api/v1/bookings.
All business logic delegated to BookingService.

Endpoints:
    GET / - Bookings for the caller and their children
    POST / - Create a booking
    POST /suggestions - Tutor suggests a lesson
    GET /{booking_id} - Booking details
    POST /{booking_id}/accept - Tutor accepts
    POST /{booking_id}/decline - Tutor declines
    POST /{booking_id}/cancel - Cancel (refunds paid bookings)
    POST /{booking_id}/reschedule - Move the lesson directly
    POST /{booking_id}/reschedule-request - Propose a new time
    POST /{booking_id}/reschedule-request/approve
    POST /{booking_id}/reschedule-request/decline
    POST /{booking_id}/suggestion/approve
    POST /{booking_id}/suggestion/decline
    POST /{booking_id}/lesson-report - Tutor completes the lesson
    POST /{booking_id}/meeting - Generate the meeting link on demand
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, Query, status

from ..api.dependencies import get_booking_service, get_current_user
from ..api.errors import handle_domain_exception
from ..core.exceptions import DomainException
from ..models.user import User
from ..schemas.booking import (
    BookingCreate,
    BookingResponse,
    CancelRequest,
    LessonReportCreate,
    LessonSuggestionCreate,
    MeetingResponse,
    ReasonRequest,
    RescheduleRequest,
)
from ..services.booking_service import BookingService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["bookings"])


@router.get("", response_model=List[BookingResponse])
def list_bookings(
    limit: int = Query(100, ge=1, le=500),
    current_user: User = Depends(get_current_user),
    booking_service: BookingService = Depends(get_booking_service),
) -> List[BookingResponse]:
    bookings = booking_service.list_bookings(current_user, limit=limit)
    return [BookingResponse.model_validate(booking) for booking in bookings]


@router.post(
    "",
    response_model=BookingResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        403: {"description": "Caller may not book for this student"},
        404: {"description": "Tutor or student not found"},
    },
)
def create_booking(
    payload: BookingCreate = Body(...),
    current_user: User = Depends(get_current_user),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    try:
        booking = booking_service.create_booking(current_user, payload)
        return BookingResponse.model_validate(booking)
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/suggestions", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
def suggest_lesson(
    payload: LessonSuggestionCreate = Body(...),
    current_user: User = Depends(get_current_user),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    try:
        booking = booking_service.suggest_lesson(current_user, payload)
        return BookingResponse.model_validate(booking)
    except DomainException as e:
        handle_domain_exception(e)


@router.get("/{booking_id}", response_model=BookingResponse)
def get_booking(
    booking_id: str,
    current_user: User = Depends(get_current_user),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    try:
        return BookingResponse.model_validate(booking_service.get_booking(current_user, booking_id))
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/{booking_id}/accept", response_model=BookingResponse)
def accept_booking(
    booking_id: str,
    current_user: User = Depends(get_current_user),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    """Tutor accepts; the response carries the selected payment strategy."""
    try:
        booking = booking_service.accept_booking(current_user, booking_id)
        return BookingResponse.model_validate(booking)
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/{booking_id}/decline", response_model=BookingResponse)
def decline_booking(
    booking_id: str,
    payload: ReasonRequest = Body(...),
    current_user: User = Depends(get_current_user),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    try:
        booking = booking_service.decline_booking(current_user, booking_id, payload.reason)
        return BookingResponse.model_validate(booking)
    except DomainException as e:
        handle_domain_exception(e)


@router.post(
    "/{booking_id}/cancel",
    response_model=BookingResponse,
    responses={503: {"description": "Refund or hold release failed; booking unchanged"}},
)
def cancel_booking(
    booking_id: str,
    payload: Optional[CancelRequest] = Body(None),
    current_user: User = Depends(get_current_user),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    try:
        reason = payload.reason if payload else None
        booking = booking_service.cancel_booking(current_user, booking_id, reason)
        return BookingResponse.model_validate(booking)
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/{booking_id}/reschedule", response_model=BookingResponse)
def reschedule_booking(
    booking_id: str,
    payload: RescheduleRequest = Body(...),
    current_user: User = Depends(get_current_user),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    try:
        booking = booking_service.reschedule_booking(
            current_user, booking_id, payload.scheduled_at
        )
        return BookingResponse.model_validate(booking)
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/{booking_id}/reschedule-request", response_model=BookingResponse)
def request_reschedule(
    booking_id: str,
    payload: RescheduleRequest = Body(...),
    current_user: User = Depends(get_current_user),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    try:
        booking = booking_service.request_reschedule(
            current_user, booking_id, payload.scheduled_at, payload.reason
        )
        return BookingResponse.model_validate(booking)
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/{booking_id}/reschedule-request/approve", response_model=BookingResponse)
def approve_reschedule(
    booking_id: str,
    current_user: User = Depends(get_current_user),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    try:
        booking = booking_service.approve_reschedule(current_user, booking_id)
        return BookingResponse.model_validate(booking)
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/{booking_id}/reschedule-request/decline", response_model=BookingResponse)
def decline_reschedule(
    booking_id: str,
    payload: Optional[CancelRequest] = Body(None),
    current_user: User = Depends(get_current_user),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    try:
        booking = booking_service.decline_reschedule(
            current_user, booking_id, payload.reason if payload else None
        )
        return BookingResponse.model_validate(booking)
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/{booking_id}/suggestion/approve", response_model=BookingResponse)
def approve_suggestion(
    booking_id: str,
    current_user: User = Depends(get_current_user),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    try:
        booking = booking_service.approve_suggestion(current_user, booking_id)
        return BookingResponse.model_validate(booking)
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/{booking_id}/suggestion/decline", response_model=BookingResponse)
def decline_suggestion(
    booking_id: str,
    payload: Optional[CancelRequest] = Body(None),
    current_user: User = Depends(get_current_user),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    try:
        booking = booking_service.decline_suggestion(
            current_user, booking_id, payload.reason if payload else None
        )
        return BookingResponse.model_validate(booking)
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/{booking_id}/lesson-report", response_model=BookingResponse)
def submit_lesson_report(
    booking_id: str,
    payload: LessonReportCreate = Body(...),
    current_user: User = Depends(get_current_user),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    try:
        booking = booking_service.submit_lesson_report(current_user, booking_id, payload)
        return BookingResponse.model_validate(booking)
    except DomainException as e:
        handle_domain_exception(e)


@router.post(
    "/{booking_id}/meeting",
    response_model=MeetingResponse,
    responses={503: {"description": "Meeting provider unavailable; retry later"}},
)
def generate_meeting(
    booking_id: str,
    current_user: User = Depends(get_current_user),
    booking_service: BookingService = Depends(get_booking_service),
) -> MeetingResponse:
    """Return the booking's meeting link, creating it if it does not exist yet."""
    try:
        meeting = booking_service.generate_meeting(current_user, booking_id)
        return MeetingResponse(
            booking_id=meeting.booking_id,
            meeting_link=meeting.meeting_link,
            created=meeting.created,
        )
    except DomainException as e:
        handle_domain_exception(e)
