# backend/tipu/services/scheduled_payment_service.py
"""
Scheduled Payment Processor.

Batch jobs run by Celery beat:

- ``process_scheduled_payments``: charge deferred-authorization bookings whose
  charge time (lesson start minus 24h) has arrived.
- ``retry_failed_payments``: release the claim on failed charges so the next
  run tries again, up to ``max_payment_retries``.
- ``reconcile_payment_markers``: finish webhook confirmations that failed
  after their marker was committed.
- ``sweep_expired_authorizations``: drop holds that are too old to capture.
- ``purge_expired_markers``: delete markers past their retention.

Runs may overlap. Each booking is claimed with a conditional update that is
committed before any money moves, so at most one run charges it.
"""

from datetime import datetime, timedelta
from typing import List, Optional, TypedDict

from sqlalchemy.orm import Session

from ..core.config import Settings
from ..core.enums import BookingStatus, MarkerStatus, PaymentAuthType
from ..core.exceptions import ConflictException, InvalidTransitionException
from ..integrations import OffSessionCharge, PaymentGateway, PaymentGatewayError
from ..models.booking import Booking
from ..models.payment import ProcessedPaymentEvent
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from .base import BaseService, Clock
from .booking_access import BookingAccess
from .notification_service import NotificationService
from .payment_service import PaymentService, is_valid_payment_reference

AUTHENTICATION_REQUIRED_ERROR = "Payment requires authentication by the payer"
AUTHORIZATION_EXPIRED_ERROR = "Authorization expired"


class PaymentError(TypedDict):
    booking_id: str
    error: str


class ProcessResult(TypedDict):
    processed: int
    successful: int
    failed: int
    requires_action: int
    skipped: int
    errors: List[PaymentError]


class RetryResult(TypedDict):
    checked: int
    reset: int
    exhausted: int
    waiting: int


class ReconcileResult(TypedDict):
    checked: int
    confirmed: int
    failed: int
    conflicts: int


class SweepResult(TypedDict):
    checked: int
    expired: int


class _ChargeFailed(Exception):
    """Hard failure for one booking; counts toward its retry limit."""


class ScheduledPaymentService(BaseService):
    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        payment_service: PaymentService,
        notification_service: NotificationService,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
    ):
        super().__init__(db, clock=clock)
        self.gateway = gateway
        self.payment_service = payment_service
        self.notification_service = notification_service
        self.settings = settings
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.billing_repository = RepositoryFactory.create_billing_customer_repository(db)
        self.marker_repository = RepositoryFactory.create_processed_payment_repository(db)

    # ── Deferred charges ────────────────────────────────────────────────

    @BaseService.measure_operation("process_scheduled_payments")
    def process_scheduled_payments(self, now: Optional[datetime] = None) -> ProcessResult:
        """Charge every due deferred booking once. A failing booking never stops the batch."""
        now = now or self.now()
        result: ProcessResult = {
            "processed": 0,
            "successful": 0,
            "failed": 0,
            "requires_action": 0,
            "skipped": 0,
            "errors": [],
        }

        due = self.booking_repository.get_due_deferred_payments(now, self.settings.payment_batch_size)
        self.logger.info("Processing %d scheduled payments", len(due))

        for booking in due:
            with self.transaction():
                claimed = self.booking_repository.claim_payment_attempt(booking.id, now)
            if not claimed:
                result["skipped"] += 1
                prometheus_metrics.inc_scheduled_payment("skipped")
                continue

            result["processed"] += 1
            try:
                outcome = self._charge_booking(booking)
            except _ChargeFailed as exc:
                self._record_failure(booking, str(exc), now)
                outcome = "failed"
                result["errors"].append({"booking_id": booking.id, "error": str(exc)})
            except Exception as exc:
                self.logger.error(
                    "Unexpected error charging booking %s: %s", booking.id, exc, exc_info=True
                )
                self._record_failure(booking, str(exc), now)
                outcome = "failed"
                result["errors"].append({"booking_id": booking.id, "error": str(exc)})

            result[outcome] += 1
            prometheus_metrics.inc_scheduled_payment(outcome)

        self.logger.info(
            "Scheduled payments: %d processed, %d successful, %d failed, %d requires action, %d skipped",
            result["processed"],
            result["successful"],
            result["failed"],
            result["requires_action"],
            result["skipped"],
        )
        return result

    def _charge_booking(self, booking: Booking) -> str:
        payer = BookingAccess.resolve_payer(booking.student, self.now().date())
        if payer is None:
            raise _ChargeFailed("No payer of record for this booking")

        customer = self.billing_repository.get_by_user_id(payer.id)
        if customer is None:
            raise _ChargeFailed("No billing customer for payer")

        try:
            methods = self.gateway.list_saved_methods(customer.stripe_customer_id)
        except PaymentGatewayError as exc:
            raise _ChargeFailed(exc.message) from exc
        if not methods:
            raise _ChargeFailed("No saved payment method")

        payment_method = booking.saved_payment_method_id
        if payment_method not in methods:
            payment_method = methods[0]

        try:
            charge = self.gateway.charge_off_session(
                customer_id=customer.stripe_customer_id,
                payment_method_id=payment_method,
                amount=booking.price,
                metadata={
                    "booking_id": booking.id,
                    "student_id": booking.student_id,
                    "tutor_id": booking.tutor_id,
                    "payer_id": payer.id,
                    "payment_auth_type": PaymentAuthType.DEFERRED_AUTH.value,
                },
                idempotency_key=f"offsession-{booking.id}-{booking.payment_retry_count}",
            )
        except PaymentGatewayError as exc:
            raise _ChargeFailed(exc.message) from exc

        if charge.requires_action:
            return self._record_requires_action(booking, charge)
        if not charge.succeeded:
            raise _ChargeFailed(f"Unexpected payment status: {charge.status}")

        with self.transaction():
            self.booking_repository.update_unless_terminal(
                booking.id, payment_intent_id=charge.reference
            )
        self.logger.info("Off-session charge %s succeeded for booking %s", charge.reference, booking.id)

        # The charge reference is stored, so a failure here is not retried off-session.
        try:
            self.payment_service.confirm_payment(booking.id, charge.reference, source="scheduled")
        except InvalidTransitionException:
            self._reverse_charge(booking, charge.reference)
            raise
        return "successful"

    def _reverse_charge(self, booking: Booking, payment_reference: str) -> None:
        """Refund an off-session charge whose booking was cancelled mid-flight."""
        try:
            refund_id = self.gateway.refund(
                payment_reference,
                metadata={"booking_id": booking.id},
                idempotency_key=f"refund-{payment_reference}",
            )
        except PaymentGatewayError as exc:
            self.logger.error(
                "Charge %s for booking %s could not be refunded: %s",
                payment_reference,
                booking.id,
                exc.message,
            )
            self.notification_service.notify_refund_failure(booking.id, exc.message)
            return

        with self.transaction():
            self.booking_repository.record_reversed_charge(
                booking.id, payment_reference, refund_id, self.now()
            )
        self.logger.warning(
            "Refunded charge %s (%s): booking %s left accepted before confirmation",
            payment_reference,
            refund_id,
            booking.id,
        )

    def _record_requires_action(self, booking: Booking, charge: OffSessionCharge) -> str:
        with self.transaction():
            self.booking_repository.record_payment_pending(
                booking.id, charge.reference, AUTHENTICATION_REQUIRED_ERROR
            )
        self.logger.warning(
            "Off-session charge %s for booking %s requires authentication",
            charge.reference,
            booking.id,
        )
        self.notification_service.notify_action_required(booking.id, AUTHENTICATION_REQUIRED_ERROR)
        return "requires_action"

    def _record_failure(self, booking: Booking, error: str, now: datetime) -> None:
        with self.transaction():
            self.booking_repository.record_payment_failure(booking.id, error, now)
        self.logger.warning(
            "Scheduled payment failed for booking %s (attempt %d): %s",
            booking.id,
            booking.payment_retry_count,
            error,
        )
        self.notification_service.notify_payment_failure(booking.id, error)

    # ── Retries ─────────────────────────────────────────────────────────

    @BaseService.measure_operation("retry_failed_payments")
    def retry_failed_payments(self, now: Optional[datetime] = None) -> RetryResult:
        """
        Make failed charges eligible again once the cooldown has passed.

        Bookings that already hold a payment reference are waiting for the
        payer to authenticate and are not charged again off-session.
        """
        now = now or self.now()
        cooldown = timedelta(minutes=self.settings.payment_retry_cooldown_minutes)
        result: RetryResult = {"checked": 0, "reset": 0, "exhausted": 0, "waiting": 0}

        for booking in self.booking_repository.get_failed_payments(self.settings.payment_batch_size):
            result["checked"] += 1
            if booking.payment_retry_count >= self.settings.max_payment_retries:
                result["exhausted"] += 1
                continue
            if is_valid_payment_reference(booking.payment_intent_id):
                result["waiting"] += 1
                continue

            last_attempt = booking.last_payment_retry_at or booking.payment_attempted_at
            if last_attempt is not None and now - last_attempt < cooldown:
                result["waiting"] += 1
                continue

            with self.transaction():
                released = self.booking_repository.release_payment_claim(booking.id)
            if released:
                result["reset"] += 1
                self.logger.info(
                    "Booking %s queued for payment retry %d",
                    booking.id,
                    booking.payment_retry_count + 1,
                )

        if result["exhausted"]:
            self.logger.warning("%d bookings reached the payment retry limit", result["exhausted"])
        return result

    # ── Webhook marker repair ───────────────────────────────────────────

    @BaseService.measure_operation("reconcile_payment_markers")
    def reconcile_payment_markers(self, now: Optional[datetime] = None) -> ReconcileResult:
        now = now or self.now()
        cutoff = now - timedelta(minutes=self.settings.marker_repair_grace_minutes)
        result: ReconcileResult = {"checked": 0, "confirmed": 0, "failed": 0, "conflicts": 0}

        for marker in self.marker_repository.get_unconfirmed(
            cutoff, self.settings.marker_repair_batch_size
        ):
            result["checked"] += 1
            if not marker.booking_id:
                self._update_marker(marker, MarkerStatus.CONFLICT, "Marker has no booking", now)
                result["conflicts"] += 1
                continue
            try:
                self.payment_service.confirm_payment(
                    marker.booking_id, marker.payment_reference, source="reconcile"
                )
            except ConflictException as exc:
                self.logger.error(
                    "Payment %s for booking %s needs manual follow-up: %s",
                    marker.payment_reference,
                    marker.booking_id,
                    exc.message,
                )
                self._update_marker(marker, MarkerStatus.CONFLICT, exc.message, now)
                result["conflicts"] += 1
            except Exception as exc:
                self.logger.warning(
                    "Marker %s still failing: %s", marker.event_id, exc, exc_info=True
                )
                self._update_marker(marker, MarkerStatus.FAILED, str(exc), now)
                result["failed"] += 1
            else:
                self._update_marker(marker, MarkerStatus.CONFIRMED, None, now)
                result["confirmed"] += 1

        return result

    def _update_marker(
        self,
        marker: ProcessedPaymentEvent,
        status: MarkerStatus,
        error: Optional[str],
        now: datetime,
    ) -> None:
        with self.transaction():
            self.marker_repository.update(
                marker.event_id,
                status=status.value,
                last_error=error,
                attempts=marker.attempts + 1,
                processed_at=now,
            )

    # ── Housekeeping ────────────────────────────────────────────────────

    @BaseService.measure_operation("sweep_expired_authorizations")
    def sweep_expired_authorizations(self, now: Optional[datetime] = None) -> SweepResult:
        """Release holds that expired before capture and ask the payer to authorize again."""
        now = now or self.now()
        result: SweepResult = {"checked": 0, "expired": 0}

        for booking in self.booking_repository.get_expired_authorizations(
            now, self.settings.payment_batch_size
        ):
            result["checked"] += 1
            reference = booking.payment_intent_id
            try:
                self.gateway.cancel_hold(reference)
            except PaymentGatewayError as exc:
                self.logger.warning("Could not cancel expired hold %s: %s", reference, exc.message)

            with self.transaction():
                updated = self.booking_repository.transition(
                    booking.id,
                    [BookingStatus.ACCEPTED],
                    payment_intent_id=None,
                    authorization_expires_at=None,
                    payment_error=AUTHORIZATION_EXPIRED_ERROR,
                )
            if updated:
                result["expired"] += 1
                self.logger.info("Authorization %s for booking %s expired", reference, booking.id)
                self.notification_service.notify_authorization_expired(booking.id)

        return result

    @BaseService.measure_operation("purge_expired_markers")
    def purge_expired_markers(self, now: Optional[datetime] = None) -> int:
        now = now or self.now()
        with self.transaction():
            deleted = self.marker_repository.delete_expired(now)
        if deleted:
            self.logger.info("Purged %d expired payment markers", deleted)
        return deleted
