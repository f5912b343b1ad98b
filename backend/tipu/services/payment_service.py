# backend/tipu/services/payment_service.py
"""
Payment Orchestrator.

Chooses how a booking is paid for based on how far away the lesson is,
creates the matching Stripe intent, and owns ``confirm_payment``: the single
routine that flips a booking to paid and confirmed. Webhooks, the scheduled
processor and manual confirmation all go through it.

Strategies (hours until lesson):
    < 24           immediate_charge  automatic-capture payment intent
    24 .. < 168    immediate_auth    manual-capture hold, captured once authorized
    >= 168         deferred_auth     setup intent now, off-session charge at T-24h
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
import re
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.config import Settings
from ..core.constants import (
    DEFERRED_AUTH_THRESHOLD_HOURS,
    DEFERRED_CHARGE_LEAD_HOURS,
    IMMEDIATE_CHARGE_WINDOW_HOURS,
    PAYMENT_INTENT_PREFIX,
)
from ..core.enums import BookingStatus, PaymentAuthType
from ..core.exceptions import (
    BusinessRuleException,
    ConflictException,
    ForbiddenException,
    InvalidTransitionException,
    NotFoundException,
    PaymentReferenceConflictException,
    RefundFailedException,
    RetryableServiceException,
    ValidationException,
)
from ..integrations import GatewayIntent, PaymentGateway, PaymentGatewayError
from ..models.booking import Booking
from ..models.payment import BillingCustomer
from ..models.user import User
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from .base import BaseService, Clock
from .booking_access import BookingAccess
from .meeting_service import MeetingService
from .notification_service import NotificationService

PAYMENT_REFERENCE_PATTERN = re.compile(rf"^{PAYMENT_INTENT_PREFIX}[A-Za-z0-9_]+$")


def is_valid_payment_reference(reference: Optional[str]) -> bool:
    return bool(reference) and PAYMENT_REFERENCE_PATTERN.match(reference) is not None


def is_placeholder_reference(reference: Optional[str]) -> bool:
    """Anything stored before a real payment intent id was known."""
    return not is_valid_payment_reference(reference)


@dataclass(frozen=True)
class PaymentPlan:
    auth_type: PaymentAuthType
    payment_scheduled_for: Optional[datetime]


@dataclass(frozen=True)
class AuthorizationResult:
    booking_id: str
    payment_auth_type: PaymentAuthType
    client_secret: Optional[str]
    reference: str
    expires_at: datetime
    payment_scheduled_for: Optional[datetime]


@dataclass(frozen=True)
class ConfirmationResult:
    booking: Booking
    already_confirmed: bool
    meeting_link: Optional[str] = None
    meeting_error: Optional[str] = None


def select_strategy(scheduled_at: datetime, now: datetime) -> PaymentPlan:
    """Pick the authorization strategy for a lesson starting at ``scheduled_at``."""
    hours_until_lesson = (scheduled_at - now).total_seconds() / 3600
    if hours_until_lesson < IMMEDIATE_CHARGE_WINDOW_HOURS:
        return PaymentPlan(PaymentAuthType.IMMEDIATE_CHARGE, None)
    if hours_until_lesson < DEFERRED_AUTH_THRESHOLD_HOURS:
        return PaymentPlan(PaymentAuthType.IMMEDIATE_AUTH, None)
    return PaymentPlan(
        PaymentAuthType.DEFERRED_AUTH,
        scheduled_at - timedelta(hours=DEFERRED_CHARGE_LEAD_HOURS),
    )


class PaymentService(BaseService):
    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        meeting_service: MeetingService,
        notification_service: NotificationService,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
    ):
        super().__init__(db, clock=clock)
        self.gateway = gateway
        self.meeting_service = meeting_service
        self.notification_service = notification_service
        self.settings = settings
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.billing_repository = RepositoryFactory.create_billing_customer_repository(db)

    def _get_booking(self, booking_id: str) -> Booking:
        booking = self.booking_repository.get_by_id(booking_id)
        if booking is None:
            raise NotFoundException("Booking not found", details={"booking_id": booking_id})
        return booking

    def plan_for(self, scheduled_at: datetime) -> PaymentPlan:
        return select_strategy(scheduled_at, self.now())

    # ── Billing identity ────────────────────────────────────────────────

    @BaseService.measure_operation("get_or_create_billing_customer")
    def get_or_create_billing_customer(self, payer: User) -> BillingCustomer:
        """
        Return the payer's Stripe customer, creating it on first use.

        The Stripe call uses a per-user idempotency key and the table has a
        unique ``user_id``, so concurrent first payments converge on one
        customer: the losing insert re-reads the winner.
        """
        existing = self.billing_repository.get_by_user_id(payer.id)
        if existing:
            return existing

        try:
            customer_id = self.gateway.create_customer(
                user_id=payer.id,
                email=payer.email,
                name=payer.display_name,
                idempotency_key=f"customer-{payer.id}",
            )
        except PaymentGatewayError as exc:
            raise RetryableServiceException(
                "Payment provider unavailable",
                code="PAYMENT_PROVIDER_UNAVAILABLE",
                details={"reason": exc.message},
            ) from exc

        try:
            with self.transaction():
                customer = self.billing_repository.create(
                    user_id=payer.id, stripe_customer_id=customer_id
                )
        except IntegrityError:
            winner = self.billing_repository.get_by_user_id(payer.id)
            if winner is None:
                raise
            self.logger.info("Billing customer for %s created concurrently", payer.id)
            return winner

        self.logger.info("Created billing customer %s for user %s", customer_id, payer.id)
        return customer

    # ── Authorization ───────────────────────────────────────────────────

    @BaseService.measure_operation("create_authorization")
    def create_authorization(self, actor: User, booking_id: str) -> AuthorizationResult:
        """
        Start payment for an accepted booking.

        Returns the client secret the payer uses to complete the charge, hold
        or card-saving flow. The intent reference and expiry are stored on
        the booking before returning.
        """
        booking = self._get_booking(booking_id)
        if booking.is_paid:
            raise ConflictException(
                "Booking is already paid", code="BOOKING_ALREADY_PAID", details={"booking_id": booking.id}
            )
        if booking.status != BookingStatus.ACCEPTED.value:
            raise InvalidTransitionException(booking.id, booking.status, "pay for")

        now = self.now()
        today = now.date()
        payer = BookingAccess.resolve_payer(booking.student, today)
        if payer is None:
            raise BusinessRuleException(
                "This booking has no payer on record; a guardian must be linked to the student",
                code="NO_PAYER_OF_RECORD",
                details={"booking_id": booking.id},
            )
        if not (actor.is_admin or actor.id == payer.id):
            raise ForbiddenException(
                "Only the student's payer can authorize payment",
                code="NOT_PAYER_OF_RECORD",
                details={"booking_id": booking.id},
            )
        if booking.scheduled_at <= now:
            raise BusinessRuleException(
                "Lesson has already started", code="LESSON_STARTED", details={"booking_id": booking.id}
            )

        plan = select_strategy(booking.scheduled_at, now)
        customer = self.get_or_create_billing_customer(payer)
        metadata = {
            "booking_id": booking.id,
            "student_id": booking.student_id,
            "tutor_id": booking.tutor_id,
            "payer_id": payer.id,
            "payment_auth_type": plan.auth_type.value,
        }
        idempotency_key = (
            f"{plan.auth_type.value}-{booking.id}-{int(booking.scheduled_at.timestamp())}"
        )

        intent = self._create_intent(plan, booking, customer, metadata, idempotency_key)
        expires_at = now + timedelta(days=self.settings.authorization_expiry_days)

        values = {
            "payment_auth_type": plan.auth_type.value,
            "payment_scheduled_for": plan.payment_scheduled_for,
            "authorization_expires_at": expires_at,
        }
        if plan.auth_type == PaymentAuthType.DEFERRED_AUTH:
            values["setup_intent_id"] = intent.reference
        else:
            values["payment_intent_id"] = intent.reference

        with self.transaction():
            updated = self.booking_repository.transition(
                booking.id, [BookingStatus.ACCEPTED], **values
            )
        if not updated:
            self.booking_repository.refresh(booking)
            raise InvalidTransitionException(booking.id, booking.status, "pay for")

        self.logger.info(
            "Created %s authorization %s for booking %s",
            plan.auth_type.value,
            intent.reference,
            booking.id,
        )
        return AuthorizationResult(
            booking_id=booking.id,
            payment_auth_type=plan.auth_type,
            client_secret=intent.client_secret,
            reference=intent.reference,
            expires_at=expires_at,
            payment_scheduled_for=plan.payment_scheduled_for,
        )

    def _create_intent(
        self,
        plan: PaymentPlan,
        booking: Booking,
        customer: BillingCustomer,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> GatewayIntent:
        try:
            if plan.auth_type == PaymentAuthType.IMMEDIATE_CHARGE:
                return self.gateway.create_charge(
                    amount=booking.price,
                    customer_id=customer.stripe_customer_id,
                    metadata=metadata,
                    idempotency_key=idempotency_key,
                )
            if plan.auth_type == PaymentAuthType.IMMEDIATE_AUTH:
                return self.gateway.create_hold(
                    amount=booking.price,
                    customer_id=customer.stripe_customer_id,
                    metadata=metadata,
                    idempotency_key=idempotency_key,
                )
            return self.gateway.create_setup_intent(
                customer_id=customer.stripe_customer_id,
                metadata=metadata,
                idempotency_key=idempotency_key,
            )
        except PaymentGatewayError as exc:
            self.logger.error("Failed to create %s for booking %s: %s", plan.auth_type.value, booking.id, exc)
            raise RetryableServiceException(
                "Payment provider unavailable",
                code="PAYMENT_PROVIDER_UNAVAILABLE",
                details={"booking_id": booking.id, "reason": exc.message},
            ) from exc

    # ── Confirmation ────────────────────────────────────────────────────

    @BaseService.measure_operation("confirm_payment")
    def confirm_payment(
        self, booking_id: str, payment_reference: str, *, source: str = "manual"
    ) -> ConfirmationResult:
        """
        Mark a booking paid and confirmed, then make sure it has a meeting.

        Safe to repeat with the same reference. A different real reference on
        an already-referenced booking is a conflict. Meeting generation
        failures are reported in the result and never undo the payment.
        """
        if not is_valid_payment_reference(payment_reference):
            raise ValidationException(
                "Malformed payment reference",
                code="INVALID_PAYMENT_REFERENCE",
                details={"payment_reference": payment_reference},
            )

        booking = self._get_booking(booking_id)
        if booking.is_paid:
            if booking.payment_intent_id == payment_reference:
                self.logger.info("Booking %s already confirmed with %s", booking.id, payment_reference)
                return ConfirmationResult(booking, True, booking.meeting_link)
            raise PaymentReferenceConflictException(
                booking.id, booking.payment_intent_id or "", payment_reference
            )

        existing = booking.payment_intent_id
        if existing and existing != payment_reference and not is_placeholder_reference(existing):
            raise PaymentReferenceConflictException(booking.id, existing, payment_reference)

        with self.transaction():
            updated = self.booking_repository.mark_paid(booking.id, payment_reference, self.now())

        if not updated:
            self.booking_repository.refresh(booking)
            if booking.is_paid and booking.payment_intent_id == payment_reference:
                return ConfirmationResult(booking, True, booking.meeting_link)
            if booking.is_paid:
                raise PaymentReferenceConflictException(
                    booking.id, booking.payment_intent_id or "", payment_reference
                )
            self.logger.error(
                "Payment %s succeeded for booking %s in status %s",
                payment_reference,
                booking.id,
                booking.status,
            )
            raise InvalidTransitionException(booking.id, booking.status, "confirm payment for")

        self.logger.info("Booking %s confirmed with payment %s (%s)", booking.id, payment_reference, source)
        prometheus_metrics.inc_payment_confirmed(source)

        meeting_link = None
        meeting_error = None
        try:
            meeting = self.meeting_service.generate_meeting_for_booking(booking.id)
            meeting_link = meeting.meeting_link
        except Exception as exc:
            meeting_error = str(exc)
            self.logger.error(
                "Meeting generation failed for confirmed booking %s: %s",
                booking.id,
                exc,
                exc_info=True,
            )

        return ConfirmationResult(booking, False, meeting_link, meeting_error)

    @BaseService.measure_operation("confirm_client_payment")
    def confirm_client_payment(
        self, actor: User, booking_id: str, payment_reference: str
    ) -> ConfirmationResult:
        """Confirmation requested by the payer's client after completing the charge."""
        booking = self._get_booking(booking_id)
        if not BookingAccess.is_payer_of_record(actor, booking, self.now().date()):
            raise ForbiddenException(
                "Only the student's payer can confirm payment",
                code="NOT_PAYER_OF_RECORD",
                details={"booking_id": booking.id},
            )
        if not is_valid_payment_reference(payment_reference):
            raise ValidationException(
                "Malformed payment reference",
                code="INVALID_PAYMENT_REFERENCE",
                details={"payment_reference": payment_reference},
            )

        try:
            intent = self.gateway.retrieve_intent(payment_reference)
        except PaymentGatewayError as exc:
            if exc.is_resource_missing:
                raise ValidationException(
                    "Unknown payment reference", code="INVALID_PAYMENT_REFERENCE"
                ) from exc
            raise RetryableServiceException(
                "Payment provider unavailable", code="PAYMENT_PROVIDER_UNAVAILABLE"
            ) from exc

        if intent.metadata.get("booking_id") != booking.id:
            raise ValidationException(
                "Payment does not belong to this booking",
                code="PAYMENT_BOOKING_MISMATCH",
                details={"booking_id": booking.id},
            )
        if intent.status != "succeeded":
            raise BusinessRuleException(
                "Payment has not completed",
                code="PAYMENT_NOT_COMPLETED",
                details={"booking_id": booking.id, "status": intent.status},
            )
        return self.confirm_payment(booking.id, payment_reference, source="manual")

    # ── Intermediate payment state ──────────────────────────────────────

    @BaseService.measure_operation("capture_hold")
    def capture_hold(self, booking_id: str, payment_reference: str) -> Optional[GatewayIntent]:
        """
        Record an authorized hold on the booking and capture it.

        The resulting ``payment_intent.succeeded`` event confirms the booking
        through ``confirm_payment``. Holds on bookings that are no longer
        awaiting payment are released instead.
        """
        if not is_valid_payment_reference(payment_reference):
            raise ValidationException(
                "Malformed payment reference", code="INVALID_PAYMENT_REFERENCE"
            )

        booking = self._get_booking(booking_id)
        if booking.is_paid:
            return None
        if booking.status != BookingStatus.ACCEPTED.value:
            self.logger.warning(
                "Releasing hold %s for booking %s in status %s",
                payment_reference,
                booking.id,
                booking.status,
            )
            self._cancel_hold_quietly(payment_reference)
            return None

        existing = booking.payment_intent_id
        if existing and existing != payment_reference and not is_placeholder_reference(existing):
            raise PaymentReferenceConflictException(booking.id, existing, payment_reference)

        with self.transaction():
            self.booking_repository.transition(
                booking.id,
                [BookingStatus.ACCEPTED],
                payment_intent_id=payment_reference,
                authorization_expires_at=self.now()
                + timedelta(days=self.settings.authorization_expiry_days),
            )

        try:
            intent = self.gateway.capture(
                payment_reference, idempotency_key=f"capture-{booking.id}"
            )
        except PaymentGatewayError as exc:
            with self.transaction():
                self.booking_repository.set_payment_error(booking.id, exc.message)
            raise RetryableServiceException(
                "Could not capture payment authorization",
                code="CAPTURE_FAILED",
                details={"booking_id": booking.id, "reason": exc.message},
            ) from exc

        self.logger.info("Captured hold %s for booking %s", payment_reference, booking.id)
        return intent

    def record_saved_payment_method(
        self, booking_id: str, setup_intent_id: str, payment_method_id: Optional[str]
    ) -> bool:
        with self.transaction():
            updated = self.booking_repository.update_unless_terminal(
                booking_id,
                setup_intent_id=setup_intent_id,
                saved_payment_method_id=payment_method_id,
            )
        if updated:
            self.logger.info("Saved payment method recorded for booking %s", booking_id)
        return updated

    def record_payment_failed(self, booking_id: str, message: str) -> bool:
        with self.transaction():
            updated = self.booking_repository.set_payment_error(booking_id, message)
        if updated:
            self.notification_service.notify_payment_failure(booking_id, message)
        return updated

    # ── Money back ──────────────────────────────────────────────────────

    def refund_booking(self, booking: Booking) -> str:
        """Fully refund a paid booking. Raises ``RefundFailedException`` on failure."""
        try:
            refund_id = self.gateway.refund(
                booking.payment_intent_id,
                metadata={"booking_id": booking.id},
                idempotency_key=f"refund-{booking.id}",
            )
        except PaymentGatewayError as exc:
            self.logger.error("Refund failed for booking %s: %s", booking.id, exc.message)
            self.notification_service.notify_refund_failure(booking.id, exc.message)
            raise RefundFailedException(booking.id, exc.message) from exc

        self.logger.info("Refunded booking %s with refund %s", booking.id, refund_id)
        return refund_id

    def release_hold(self, booking: Booking) -> None:
        """Cancel an uncaptured payment intent so the payer's funds are released."""
        reference = booking.payment_intent_id
        if booking.is_paid or not is_valid_payment_reference(reference):
            return
        try:
            self.gateway.cancel_hold(reference)
        except PaymentGatewayError as exc:
            if exc.is_resource_missing:
                self.logger.info("Hold %s for booking %s no longer exists", reference, booking.id)
                return
            self.logger.error("Failed to release hold %s: %s", reference, exc.message)
            raise RetryableServiceException(
                "Payment authorization could not be released and the booking was not changed; please retry.",
                code="HOLD_RELEASE_FAILED",
                details={"booking_id": booking.id, "reason": exc.message},
            ) from exc
        self.logger.info("Released hold %s for booking %s", reference, booking.id)

    def _cancel_hold_quietly(self, reference: str) -> None:
        try:
            self.gateway.cancel_hold(reference)
        except PaymentGatewayError as exc:
            self.logger.warning("Failed to release hold %s: %s", reference, exc.message)

    # ── History ─────────────────────────────────────────────────────────

    @BaseService.measure_operation("get_payment_history")
    def get_payment_history(self, actor: User, limit: int = 100) -> List[Booking]:
        """Captured payments for the actor's own bookings and their children's, newest first."""
        student_ids = {actor.id} | actor.child_ids
        return self.booking_repository.get_payment_history(student_ids, limit)
