# backend/tipu/routes/payments.py
"""
Payment routes - API v1

Endpoints:
    POST /payments/authorize - Create the intent for an accepted booking
    PATCH /payments/bookings/{booking_id}/confirm - Client-side confirmation after payment
    GET /payments/history - Captured payments for the caller and their children
"""

import logging

from fastapi import APIRouter, Body, Depends

from ..api.dependencies import get_current_user, get_payment_service
from ..api.errors import handle_domain_exception
from ..core.exceptions import DomainException
from ..models.user import User
from ..schemas.payment import (
    AuthorizePaymentRequest,
    AuthorizePaymentResponse,
    ConfirmPaymentRequest,
    ConfirmPaymentResponse,
    PaymentHistoryEntry,
    PaymentHistoryResponse,
)
from ..services.payment_service import PaymentService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["payments"])


@router.post(
    "/authorize",
    response_model=AuthorizePaymentResponse,
    responses={
        403: {"description": "Caller is not the payer of record"},
        409: {"description": "Booking already paid"},
        503: {"description": "Payment provider unavailable"},
    },
)
def authorize_payment(
    payload: AuthorizePaymentRequest = Body(...),
    current_user: User = Depends(get_current_user),
    payment_service: PaymentService = Depends(get_payment_service),
) -> AuthorizePaymentResponse:
    """
    Start payment for an accepted booking.

    The strategy depends on how far away the lesson is: an immediate charge,
    a manual-capture hold, or a setup intent that saves a card for a charge
    closer to the lesson.
    """
    try:
        result = payment_service.create_authorization(current_user, payload.booking_id)
        return AuthorizePaymentResponse(
            booking_id=result.booking_id,
            payment_auth_type=result.payment_auth_type,
            client_secret=result.client_secret,
            reference=result.reference,
            expires_at=result.expires_at,
            payment_scheduled_for=result.payment_scheduled_for,
        )
    except DomainException as e:
        handle_domain_exception(e)


@router.patch(
    "/bookings/{booking_id}/confirm",
    response_model=ConfirmPaymentResponse,
    responses={
        409: {"description": "Booking already paid with a different reference"},
        422: {"description": "Payment has not completed"},
    },
)
def confirm_payment(
    booking_id: str,
    payload: ConfirmPaymentRequest = Body(...),
    current_user: User = Depends(get_current_user),
    payment_service: PaymentService = Depends(get_payment_service),
) -> ConfirmPaymentResponse:
    try:
        result = payment_service.confirm_client_payment(
            current_user, booking_id, payload.payment_intent_id
        )
        booking = result.booking
        return ConfirmPaymentResponse(
            booking_id=booking.id,
            status=booking.status,
            is_paid=booking.is_paid,
            already_confirmed=result.already_confirmed,
            meeting_link=result.meeting_link,
            meeting_error=result.meeting_error,
        )
    except DomainException as e:
        handle_domain_exception(e)


@router.get("/history", response_model=PaymentHistoryResponse)
def payment_history(
    current_user: User = Depends(get_current_user),
    payment_service: PaymentService = Depends(get_payment_service),
) -> PaymentHistoryResponse:
    try:
        bookings = payment_service.get_payment_history(current_user)
        return PaymentHistoryResponse(
            payments=[
                PaymentHistoryEntry(
                    booking_id=booking.id,
                    student_id=booking.student_id,
                    tutor_id=booking.tutor_id,
                    subject=booking.subject,
                    level=booking.level,
                    amount=booking.price,
                    paid_at=booking.payment_captured_at,
                    status=booking.status,
                    refunded=booking.refund_id is not None,
                    refunded_at=booking.refunded_at,
                )
                for booking in bookings
            ]
        )
    except DomainException as e:
        handle_domain_exception(e)
