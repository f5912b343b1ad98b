from __future__ import annotations

from datetime import timedelta
from typing import Any, Callable
from unittest.mock import patch

import pytest
from sqlalchemy.orm import Session

from tests.conftest import ADULT_DOB, NOW
from tipu.core.enums import BookingStatus, MarkerStatus, PaymentAuthType, RoleName
from tipu.integrations import FakeStripeClient, PaymentGatewayError
from tipu.models.booking import Booking
from tipu.models.payment import BillingCustomer, ProcessedPaymentEvent
from tipu.models.user import User
from tipu.services.dependencies import ServiceBundle
from tipu.services.scheduled_payment_service import (
    AUTHENTICATION_REQUIRED_ERROR,
    AUTHORIZATION_EXPIRED_ERROR,
    ScheduledPaymentService,
)


@pytest.fixture
def scheduler(services: ServiceBundle) -> ScheduledPaymentService:
    return services.scheduled_payments


@pytest.fixture
def deferred_booking(
    make_booking: Callable[..., Booking],
    billing_customer: Callable[[User], BillingCustomer],
    gateway: FakeStripeClient,
) -> Callable[..., Booking]:
    """Accepted deferred booking whose charge time has arrived, with a saved card."""

    def _make(student: User, tutor: User, **overrides: Any) -> Booking:
        customer = billing_customer(student)
        gateway.saved_methods[customer.stripe_customer_id] = ["pm_card"]
        values: dict[str, Any] = {
            "hours_ahead": 20,
            "status": BookingStatus.ACCEPTED,
            "payment_auth_type": PaymentAuthType.DEFERRED_AUTH.value,
            "setup_intent_id": "seti_saved",
            "saved_payment_method_id": "pm_card",
            "payment_scheduled_for": NOW - timedelta(hours=4),
        }
        values.update(overrides)
        return make_booking(student, tutor, **values)

    return _make


def _add_marker(db: Session, booking_id: str, reference: str, **overrides: Any) -> ProcessedPaymentEvent:
    values: dict[str, Any] = {
        "event_id": f"evt_{reference}",
        "payment_reference": reference,
        "booking_id": booking_id,
        "event_type": "payment_intent.succeeded",
        "status": MarkerStatus.PENDING.value,
        "attempts": 1,
        "created_at": NOW - timedelta(minutes=30),
        "expires_at": NOW + timedelta(days=30),
    }
    values.update(overrides)
    marker = ProcessedPaymentEvent(**values)
    db.add(marker)
    db.commit()
    return marker


class TestProcessScheduledPayments:
    def test_charges_due_booking_and_confirms(
        self,
        scheduler: ScheduledPaymentService,
        gateway: FakeStripeClient,
        deferred_booking: Callable[..., Booking],
        adult_student: User,
        tutor: User,
    ) -> None:
        booking = deferred_booking(adult_student, tutor)

        result = scheduler.process_scheduled_payments()

        assert result["processed"] == 1
        assert result["successful"] == 1
        assert booking.status == BookingStatus.CONFIRMED.value
        assert booking.is_paid is True
        charge = gateway.calls("charge_off_session")[0]
        assert charge["payment_method_id"] == "pm_card"
        assert charge["amount"] == 4500
        assert charge["idempotency_key"] == f"offsession-{booking.id}-0"

    def test_second_run_does_not_charge_again(
        self,
        scheduler: ScheduledPaymentService,
        gateway: FakeStripeClient,
        deferred_booking: Callable[..., Booking],
        adult_student: User,
        tutor: User,
    ) -> None:
        deferred_booking(adult_student, tutor)
        scheduler.process_scheduled_payments()

        again = scheduler.process_scheduled_payments()

        assert again["processed"] == 0
        assert len(gateway.calls("charge_off_session")) == 1

    def test_booking_claimed_by_overlapping_run_is_skipped(
        self,
        scheduler: ScheduledPaymentService,
        gateway: FakeStripeClient,
        deferred_booking: Callable[..., Booking],
        adult_student: User,
        tutor: User,
    ) -> None:
        booking = deferred_booking(adult_student, tutor)
        # Both runs loaded the booking; the other one claims it first.
        with scheduler.transaction():
            scheduler.booking_repository.claim_payment_attempt(booking.id, NOW)

        with patch.object(
            scheduler.booking_repository, "get_due_deferred_payments", return_value=[booking]
        ):
            result = scheduler.process_scheduled_payments()

        assert result["skipped"] == 1
        assert result["processed"] == 0
        assert not gateway.calls("charge_off_session")

    def test_bookings_not_yet_due_are_left_alone(
        self,
        scheduler: ScheduledPaymentService,
        deferred_booking: Callable[..., Booking],
        adult_student: User,
        tutor: User,
    ) -> None:
        deferred_booking(
            adult_student, tutor, hours_ahead=200, payment_scheduled_for=NOW + timedelta(hours=176)
        )

        assert scheduler.process_scheduled_payments()["processed"] == 0

    def test_authentication_required_waits_for_payer(
        self,
        scheduler: ScheduledPaymentService,
        gateway: FakeStripeClient,
        deferred_booking: Callable[..., Booking],
        adult_student: User,
        tutor: User,
    ) -> None:
        booking = deferred_booking(adult_student, tutor)
        gateway.off_session_status = "requires_action"

        result = scheduler.process_scheduled_payments()

        assert result["requires_action"] == 1
        assert booking.is_paid is False
        assert booking.status == BookingStatus.ACCEPTED.value
        assert booking.payment_intent_id.startswith("pi_")
        assert booking.payment_error == AUTHENTICATION_REQUIRED_ERROR
        assert booking.payment_retry_count == 0
        assert booking.payment_failure_notice

        retry = scheduler.retry_failed_payments(now=NOW + timedelta(days=1))
        assert retry["waiting"] == 1
        assert retry["reset"] == 0

    def test_hard_failure_counts_toward_retries(
        self,
        db: Session,
        scheduler: ScheduledPaymentService,
        gateway: FakeStripeClient,
        deferred_booking: Callable[..., Booking],
        adult_student: User,
        tutor: User,
    ) -> None:
        booking = deferred_booking(adult_student, tutor)
        gateway.set_error(
            "charge_off_session", PaymentGatewayError("Your card was declined.", code="card_declined")
        )

        result = scheduler.process_scheduled_payments()

        assert result["failed"] == 1
        assert result["errors"] == [{"booking_id": booking.id, "error": "Your card was declined."}]
        db.refresh(booking)
        assert booking.payment_retry_count == 1
        assert booking.last_payment_retry_at == NOW
        assert booking.payment_error == "Your card was declined."
        assert "declined" in booking.payment_failure_notice

    def test_missing_saved_card_fails_booking(
        self,
        db: Session,
        scheduler: ScheduledPaymentService,
        gateway: FakeStripeClient,
        deferred_booking: Callable[..., Booking],
        adult_student: User,
        tutor: User,
    ) -> None:
        booking = deferred_booking(adult_student, tutor)
        gateway.saved_methods.clear()

        scheduler.process_scheduled_payments()

        db.refresh(booking)
        assert booking.payment_error == "No saved payment method"
        assert not gateway.calls("charge_off_session")

    def test_one_failure_does_not_stop_the_batch(
        self,
        scheduler: ScheduledPaymentService,
        make_booking: Callable[..., Booking],
        deferred_booking: Callable[..., Booking],
        adult_student: User,
        make_user: Callable[..., User],
        tutor: User,
    ) -> None:
        no_customer = make_user(RoleName.STUDENT, date_of_birth=ADULT_DOB)
        broken = make_booking(
            no_customer,
            tutor,
            hours_ahead=20,
            status=BookingStatus.ACCEPTED,
            payment_auth_type=PaymentAuthType.DEFERRED_AUTH.value,
            payment_scheduled_for=NOW - timedelta(hours=5),
        )
        healthy = deferred_booking(adult_student, tutor)

        result = scheduler.process_scheduled_payments()

        assert result["failed"] == 1
        assert result["successful"] == 1
        assert result["errors"][0]["booking_id"] == broken.id
        assert healthy.is_paid is True

    def test_unexpected_error_counts_toward_retries(
        self,
        db: Session,
        scheduler: ScheduledPaymentService,
        gateway: FakeStripeClient,
        deferred_booking: Callable[..., Booking],
        adult_student: User,
        tutor: User,
    ) -> None:
        booking = deferred_booking(adult_student, tutor)

        with patch.object(
            scheduler.billing_repository, "get_by_user_id", side_effect=RuntimeError("lookup exploded")
        ):
            result = scheduler.process_scheduled_payments()

        assert result["failed"] == 1
        assert not gateway.calls("charge_off_session")
        db.refresh(booking)
        assert booking.payment_retry_count == 1
        assert booking.last_payment_retry_at == NOW
        assert booking.payment_error == "lookup exploded"


class TestCancelledDuringBatch:
    def test_booking_cancelled_after_query_is_not_charged(
        self,
        services: ServiceBundle,
        scheduler: ScheduledPaymentService,
        gateway: FakeStripeClient,
        deferred_booking: Callable[..., Booking],
        adult_student: User,
        tutor: User,
    ) -> None:
        booking = deferred_booking(adult_student, tutor)
        load_due = scheduler.booking_repository.get_due_deferred_payments

        def load_then_cancel(now: Any, limit: int) -> list[Booking]:
            due = load_due(now, limit)
            services.bookings.cancel_booking(tutor, booking.id, "Tutor no longer available")
            return due

        with patch.object(
            scheduler.booking_repository, "get_due_deferred_payments", side_effect=load_then_cancel
        ):
            result = scheduler.process_scheduled_payments()

        assert result["skipped"] == 1
        assert not gateway.calls("charge_off_session")
        assert booking.status == BookingStatus.CANCELLED.value
        assert booking.payment_attempted is False

    def test_charge_is_refunded_when_booking_cancelled_mid_charge(
        self,
        db: Session,
        services: ServiceBundle,
        scheduler: ScheduledPaymentService,
        gateway: FakeStripeClient,
        deferred_booking: Callable[..., Booking],
        adult_student: User,
        tutor: User,
    ) -> None:
        booking = deferred_booking(adult_student, tutor)
        charge = gateway.charge_off_session

        def charge_then_cancel(**kwargs: Any) -> Any:
            outcome = charge(**kwargs)
            services.bookings.cancel_booking(tutor, booking.id, "Tutor no longer available")
            return outcome

        with patch.object(gateway, "charge_off_session", side_effect=charge_then_cancel):
            result = scheduler.process_scheduled_payments()

        assert result["failed"] == 1
        refunds = gateway.calls("refund")
        assert len(refunds) == 1
        db.refresh(booking)
        assert refunds[0]["reference"] == booking.payment_intent_id
        assert booking.status == BookingStatus.CANCELLED.value
        assert booking.is_paid is False
        assert booking.refund_id.startswith("re_")
        assert booking.refunded_at == NOW


class TestRetryFailedPayments:
    def test_cooldown_then_retry_succeeds(
        self,
        db: Session,
        scheduler: ScheduledPaymentService,
        gateway: FakeStripeClient,
        deferred_booking: Callable[..., Booking],
        adult_student: User,
        tutor: User,
    ) -> None:
        booking = deferred_booking(adult_student, tutor)
        gateway.set_error("charge_off_session", PaymentGatewayError("Insufficient funds"))
        scheduler.process_scheduled_payments()

        early = scheduler.retry_failed_payments(now=NOW + timedelta(minutes=30))
        assert early["waiting"] == 1

        later = NOW + timedelta(minutes=61)
        assert scheduler.retry_failed_payments(now=later)["reset"] == 1
        db.refresh(booking)
        assert booking.payment_attempted is False

        gateway.clear_errors()
        result = scheduler.process_scheduled_payments(now=later)

        assert result["successful"] == 1
        assert booking.is_paid is True
        keys = [call["idempotency_key"] for call in gateway.calls("charge_off_session")]
        assert keys == [f"offsession-{booking.id}-0", f"offsession-{booking.id}-1"]

    def test_stops_after_max_retries(
        self,
        scheduler: ScheduledPaymentService,
        deferred_booking: Callable[..., Booking],
        adult_student: User,
        tutor: User,
    ) -> None:
        booking = deferred_booking(
            adult_student,
            tutor,
            payment_attempted=True,
            payment_retry_count=3,
            payment_error="Card declined",
            last_payment_retry_at=NOW - timedelta(days=1),
        )

        result = scheduler.retry_failed_payments()

        assert result["exhausted"] == 1
        assert result["reset"] == 0
        assert booking.payment_attempted is True


class TestReconcileMarkers:
    def test_finishes_interrupted_confirmation(
        self,
        db: Session,
        scheduler: ScheduledPaymentService,
        make_booking: Callable[..., Booking],
        adult_student: User,
        tutor: User,
    ) -> None:
        booking = make_booking(adult_student, tutor, status=BookingStatus.ACCEPTED)
        marker = _add_marker(db, booking.id, "pi_stuck", status=MarkerStatus.FAILED.value)

        result = scheduler.reconcile_payment_markers()

        assert result == {"checked": 1, "confirmed": 1, "failed": 0, "conflicts": 0}
        assert booking.is_paid is True
        db.refresh(marker)
        assert marker.status == MarkerStatus.CONFIRMED.value
        assert marker.attempts == 2

    def test_recent_markers_are_left_to_the_webhook(
        self,
        db: Session,
        scheduler: ScheduledPaymentService,
        make_booking: Callable[..., Booking],
        adult_student: User,
        tutor: User,
    ) -> None:
        booking = make_booking(adult_student, tutor, status=BookingStatus.ACCEPTED)
        _add_marker(db, booking.id, "pi_fresh", created_at=NOW - timedelta(minutes=2))

        assert scheduler.reconcile_payment_markers()["checked"] == 0

    def test_conflicting_payment_is_flagged(
        self,
        db: Session,
        scheduler: ScheduledPaymentService,
        make_paid_booking: Callable[..., Booking],
        adult_student: User,
        tutor: User,
    ) -> None:
        booking = make_paid_booking(adult_student, tutor, payment_intent_id="pi_original")
        marker = _add_marker(db, booking.id, "pi_duplicate_charge")

        result = scheduler.reconcile_payment_markers()

        assert result["conflicts"] == 1
        db.refresh(marker)
        assert marker.status == MarkerStatus.CONFLICT.value
        assert booking.payment_intent_id == "pi_original"


class TestHousekeeping:
    def test_expired_hold_is_released(
        self,
        db: Session,
        scheduler: ScheduledPaymentService,
        gateway: FakeStripeClient,
        make_booking: Callable[..., Booking],
        adult_student: User,
        tutor: User,
    ) -> None:
        booking = make_booking(
            adult_student,
            tutor,
            hours_ahead=100,
            status=BookingStatus.ACCEPTED,
            payment_auth_type=PaymentAuthType.IMMEDIATE_AUTH.value,
            payment_intent_id="pi_oldhold",
            authorization_expires_at=NOW - timedelta(hours=1),
        )

        result = scheduler.sweep_expired_authorizations()

        assert result == {"checked": 1, "expired": 1}
        assert gateway.calls("cancel_hold")[0]["reference"] == "pi_oldhold"
        db.refresh(booking)
        assert booking.payment_intent_id is None
        assert booking.payment_error == AUTHORIZATION_EXPIRED_ERROR
        assert booking.status == BookingStatus.ACCEPTED.value
        assert booking.payment_failure_notice

    def test_unexpired_hold_is_kept(
        self,
        scheduler: ScheduledPaymentService,
        make_booking: Callable[..., Booking],
        adult_student: User,
        tutor: User,
    ) -> None:
        make_booking(
            adult_student,
            tutor,
            status=BookingStatus.ACCEPTED,
            payment_auth_type=PaymentAuthType.IMMEDIATE_AUTH.value,
            payment_intent_id="pi_fresh",
            authorization_expires_at=NOW + timedelta(days=3),
        )

        assert scheduler.sweep_expired_authorizations()["expired"] == 0

    def test_purges_only_expired_markers(
        self,
        db: Session,
        scheduler: ScheduledPaymentService,
        make_booking: Callable[..., Booking],
        adult_student: User,
        tutor: User,
    ) -> None:
        booking = make_booking(adult_student, tutor)
        _add_marker(db, booking.id, "pi_old", expires_at=NOW - timedelta(days=1))
        _add_marker(db, booking.id, "pi_new")

        assert scheduler.purge_expired_markers() == 1
        assert db.get(ProcessedPaymentEvent, "evt_pi_new") is not None
