from __future__ import annotations

from datetime import timedelta
from typing import Callable, List
from unittest.mock import patch

import pytest
from sqlalchemy.orm import Session

from tests.conftest import NOW
from tipu.core.enums import BookingStatus, PaymentAuthType
from tipu.core.exceptions import (
    BusinessRuleException,
    ConflictException,
    ForbiddenException,
    InvalidTransitionException,
    PaymentReferenceConflictException,
    RefundFailedException,
    RetryableServiceException,
    ValidationException,
)
from tipu.integrations import (
    FakeMeetingClient,
    FakeStripeClient,
    MeetingProviderError,
    PaymentGatewayError,
)
from tipu.models.booking import Booking
from tipu.models.payment import BillingCustomer
from tipu.models.user import User
from tipu.services.dependencies import ServiceBundle
from tipu.services.payment_service import (
    PaymentService,
    is_placeholder_reference,
    is_valid_payment_reference,
    select_strategy,
)


@pytest.fixture
def payments(services: ServiceBundle) -> PaymentService:
    return services.payments


class TestStrategySelection:
    @pytest.mark.parametrize(
        "hours, expected",
        [
            (1, PaymentAuthType.IMMEDIATE_CHARGE),
            (23.99, PaymentAuthType.IMMEDIATE_CHARGE),
            (24, PaymentAuthType.IMMEDIATE_AUTH),
            (167.99, PaymentAuthType.IMMEDIATE_AUTH),
            (168, PaymentAuthType.DEFERRED_AUTH),
            (500, PaymentAuthType.DEFERRED_AUTH),
        ],
    )
    def test_thresholds(self, hours: float, expected: PaymentAuthType) -> None:
        plan = select_strategy(NOW + timedelta(hours=hours), NOW)
        assert plan.auth_type == expected

    def test_deferred_charge_is_scheduled_a_day_before(self) -> None:
        lesson = NOW + timedelta(days=10)
        plan = select_strategy(lesson, NOW)
        assert plan.payment_scheduled_for == lesson - timedelta(hours=24)

    def test_only_deferred_has_a_schedule(self) -> None:
        assert select_strategy(NOW + timedelta(hours=48), NOW).payment_scheduled_for is None


class TestReferenceFormat:
    def test_valid_and_placeholder_references(self) -> None:
        assert is_valid_payment_reference("pi_3Nk12ab")
        assert not is_valid_payment_reference("seti_123")
        assert not is_valid_payment_reference("")
        assert not is_valid_payment_reference(None)
        assert is_placeholder_reference("pending")
        assert not is_placeholder_reference("pi_123")


class TestCreateAuthorization:
    def test_hold_for_lesson_within_a_week(
        self,
        payments: PaymentService,
        gateway: FakeStripeClient,
        make_booking: Callable[..., Booking],
        adult_student: User,
        tutor: User,
    ) -> None:
        booking = make_booking(adult_student, tutor, hours_ahead=72, status=BookingStatus.ACCEPTED)

        result = payments.create_authorization(adult_student, booking.id)

        assert result.payment_auth_type == PaymentAuthType.IMMEDIATE_AUTH
        assert result.reference.startswith("pi_")
        assert result.client_secret
        assert result.expires_at == NOW + timedelta(days=7)
        assert booking.payment_intent_id == result.reference
        assert booking.authorization_expires_at == NOW + timedelta(days=7)
        hold = gateway.calls("create_hold")[0]
        assert hold["amount"] == 4500
        assert hold["metadata"]["booking_id"] == booking.id
        assert hold["metadata"]["payer_id"] == adult_student.id

    def test_setup_intent_for_distant_lesson(
        self,
        payments: PaymentService,
        gateway: FakeStripeClient,
        make_booking: Callable[..., Booking],
        adult_student: User,
        tutor: User,
    ) -> None:
        booking = make_booking(adult_student, tutor, hours_ahead=200, status=BookingStatus.ACCEPTED)

        result = payments.create_authorization(adult_student, booking.id)

        assert result.payment_auth_type == PaymentAuthType.DEFERRED_AUTH
        assert result.reference.startswith("seti_")
        assert booking.setup_intent_id == result.reference
        assert booking.payment_intent_id is None
        assert booking.payment_scheduled_for == booking.scheduled_at - timedelta(hours=24)
        assert gateway.calls("create_setup_intent")

    def test_immediate_charge_for_lesson_within_a_day(
        self,
        payments: PaymentService,
        gateway: FakeStripeClient,
        make_booking: Callable[..., Booking],
        adult_student: User,
        tutor: User,
    ) -> None:
        booking = make_booking(adult_student, tutor, hours_ahead=12, status=BookingStatus.ACCEPTED)

        result = payments.create_authorization(adult_student, booking.id)

        assert result.payment_auth_type == PaymentAuthType.IMMEDIATE_CHARGE
        assert gateway.calls("create_charge")
        assert not gateway.calls("create_hold")

    def test_guardian_pays_for_minor(
        self,
        payments: PaymentService,
        gateway: FakeStripeClient,
        make_booking: Callable[..., Booking],
        minor_student: User,
        parent: User,
        tutor: User,
    ) -> None:
        booking = make_booking(minor_student, tutor, status=BookingStatus.ACCEPTED)

        with pytest.raises(ForbiddenException) as exc_info:
            payments.create_authorization(minor_student, booking.id)
        assert exc_info.value.code == "NOT_PAYER_OF_RECORD"

        payments.create_authorization(parent, booking.id)
        assert gateway.calls("create_customer")[0]["user_id"] == parent.id

    def test_minor_without_guardian_has_no_payer(
        self,
        payments: PaymentService,
        make_booking: Callable[..., Booking],
        unlinked_minor: User,
        admin: User,
        tutor: User,
    ) -> None:
        booking = make_booking(unlinked_minor, tutor, status=BookingStatus.ACCEPTED)

        with pytest.raises(BusinessRuleException) as exc_info:
            payments.create_authorization(admin, booking.id)
        assert exc_info.value.code == "NO_PAYER_OF_RECORD"

    def test_paid_booking_is_a_conflict(
        self,
        payments: PaymentService,
        make_paid_booking: Callable[..., Booking],
        adult_student: User,
        tutor: User,
    ) -> None:
        booking = make_paid_booking(adult_student, tutor)

        with pytest.raises(ConflictException) as exc_info:
            payments.create_authorization(adult_student, booking.id)
        assert exc_info.value.code == "BOOKING_ALREADY_PAID"

    def test_booking_must_be_accepted(
        self,
        payments: PaymentService,
        make_booking: Callable[..., Booking],
        adult_student: User,
        tutor: User,
    ) -> None:
        booking = make_booking(adult_student, tutor, status=BookingStatus.PENDING)

        with pytest.raises(InvalidTransitionException):
            payments.create_authorization(adult_student, booking.id)

    def test_provider_failure_is_retryable_and_leaves_booking_alone(
        self,
        payments: PaymentService,
        gateway: FakeStripeClient,
        make_booking: Callable[..., Booking],
        adult_student: User,
        tutor: User,
    ) -> None:
        booking = make_booking(adult_student, tutor, status=BookingStatus.ACCEPTED)
        gateway.set_error("create_hold", PaymentGatewayError("Stripe is down"))

        with pytest.raises(RetryableServiceException) as exc_info:
            payments.create_authorization(adult_student, booking.id)

        assert exc_info.value.code == "PAYMENT_PROVIDER_UNAVAILABLE"
        assert booking.payment_intent_id is None

    def test_same_booking_reuses_intent_and_customer(
        self,
        payments: PaymentService,
        gateway: FakeStripeClient,
        make_booking: Callable[..., Booking],
        adult_student: User,
        tutor: User,
    ) -> None:
        booking = make_booking(adult_student, tutor, status=BookingStatus.ACCEPTED)

        first = payments.create_authorization(adult_student, booking.id)
        second = payments.create_authorization(adult_student, booking.id)

        assert first.reference == second.reference
        assert len(gateway.calls("create_customer")) == 1


class TestBillingCustomer:
    def test_concurrent_creation_converges_on_one_customer(
        self,
        db: Session,
        payments: PaymentService,
        billing_customer: Callable[[User], BillingCustomer],
        adult_student: User,
    ) -> None:
        winner = billing_customer(adult_student)

        # The first lookup misses, as it would for a request racing the winner.
        with patch.object(
            payments.billing_repository, "get_by_user_id", side_effect=[None, winner]
        ):
            customer = payments.get_or_create_billing_customer(adult_student)

        assert customer.id == winner.id
        assert db.query(BillingCustomer).count() == 1


class TestConfirmPayment:
    def test_confirms_and_generates_meeting(
        self,
        payments: PaymentService,
        meeting_client: FakeMeetingClient,
        make_booking: Callable[..., Booking],
        adult_student: User,
        tutor: User,
    ) -> None:
        booking = make_booking(adult_student, tutor, status=BookingStatus.ACCEPTED)

        result = payments.confirm_payment(booking.id, "pi_abc123")

        assert result.already_confirmed is False
        assert booking.status == BookingStatus.CONFIRMED.value
        assert booking.is_paid is True
        assert booking.payment_intent_id == "pi_abc123"
        assert booking.payment_captured_at == NOW
        assert result.meeting_link == booking.meeting_link
        assert len(meeting_client.calls("create_meeting")) == 1

    def test_repeat_with_same_reference_is_a_no_op(
        self,
        payments: PaymentService,
        meeting_client: FakeMeetingClient,
        make_booking: Callable[..., Booking],
        adult_student: User,
        tutor: User,
    ) -> None:
        booking = make_booking(adult_student, tutor, status=BookingStatus.ACCEPTED)
        payments.confirm_payment(booking.id, "pi_abc123")

        again = payments.confirm_payment(booking.id, "pi_abc123")

        assert again.already_confirmed is True
        assert len(meeting_client.calls("create_meeting")) == 1

    def test_different_reference_on_paid_booking_conflicts(
        self,
        payments: PaymentService,
        make_paid_booking: Callable[..., Booking],
        adult_student: User,
        tutor: User,
    ) -> None:
        booking = make_paid_booking(adult_student, tutor, payment_intent_id="pi_first")

        with pytest.raises(PaymentReferenceConflictException):
            payments.confirm_payment(booking.id, "pi_second")

    def test_different_real_reference_on_unpaid_booking_conflicts(
        self,
        payments: PaymentService,
        make_booking: Callable[..., Booking],
        adult_student: User,
        tutor: User,
    ) -> None:
        booking = make_booking(
            adult_student, tutor, status=BookingStatus.ACCEPTED, payment_intent_id="pi_hold1"
        )

        with pytest.raises(PaymentReferenceConflictException):
            payments.confirm_payment(booking.id, "pi_other")
        assert booking.is_paid is False

    def test_placeholder_reference_is_replaced(
        self,
        payments: PaymentService,
        make_booking: Callable[..., Booking],
        adult_student: User,
        tutor: User,
    ) -> None:
        booking = make_booking(
            adult_student, tutor, status=BookingStatus.ACCEPTED, payment_intent_id="pending"
        )

        payments.confirm_payment(booking.id, "pi_real1")

        assert booking.payment_intent_id == "pi_real1"

    def test_malformed_reference_is_rejected(
        self,
        payments: PaymentService,
        make_booking: Callable[..., Booking],
        adult_student: User,
        tutor: User,
    ) -> None:
        booking = make_booking(adult_student, tutor, status=BookingStatus.ACCEPTED)

        with pytest.raises(ValidationException):
            payments.confirm_payment(booking.id, "ch_123")

    def test_cancelled_booking_cannot_be_confirmed(
        self,
        payments: PaymentService,
        make_booking: Callable[..., Booking],
        adult_student: User,
        tutor: User,
    ) -> None:
        booking = make_booking(adult_student, tutor, status=BookingStatus.CANCELLED)

        with pytest.raises(InvalidTransitionException):
            payments.confirm_payment(booking.id, "pi_late")
        assert booking.is_paid is False

    def test_meeting_failure_does_not_undo_payment(
        self,
        payments: PaymentService,
        meeting_client: FakeMeetingClient,
        sleeps: List[float],
        make_booking: Callable[..., Booking],
        adult_student: User,
        tutor: User,
    ) -> None:
        booking = make_booking(adult_student, tutor, status=BookingStatus.ACCEPTED)
        meeting_client.set_error("create_meeting", MeetingProviderError("Graph down", 503))

        result = payments.confirm_payment(booking.id, "pi_abc123")

        assert booking.is_paid is True
        assert booking.status == BookingStatus.CONFIRMED.value
        assert booking.meeting_link is None
        assert result.meeting_error
        assert len(meeting_client.calls("create_meeting")) == 3
        assert sleeps == [1.0, 2.0]


class TestConfirmClientPayment:
    def _succeeded_intent(self, gateway: FakeStripeClient, booking: Booking) -> str:
        intent = gateway.create_charge(
            amount=booking.price, customer_id="cus_x", metadata={"booking_id": booking.id}
        )
        gateway.set_intent_status(intent.reference, "succeeded")
        return intent.reference

    def test_confirms_after_checking_the_intent(
        self,
        payments: PaymentService,
        gateway: FakeStripeClient,
        make_booking: Callable[..., Booking],
        adult_student: User,
        tutor: User,
    ) -> None:
        booking = make_booking(adult_student, tutor, status=BookingStatus.ACCEPTED)
        reference = self._succeeded_intent(gateway, booking)

        result = payments.confirm_client_payment(adult_student, booking.id, reference)

        assert result.booking.status == BookingStatus.CONFIRMED.value

    def test_incomplete_payment_is_rejected(
        self,
        payments: PaymentService,
        gateway: FakeStripeClient,
        make_booking: Callable[..., Booking],
        adult_student: User,
        tutor: User,
    ) -> None:
        booking = make_booking(adult_student, tutor, status=BookingStatus.ACCEPTED)
        intent = gateway.create_charge(
            amount=booking.price, customer_id="cus_x", metadata={"booking_id": booking.id}
        )

        with pytest.raises(BusinessRuleException) as exc_info:
            payments.confirm_client_payment(adult_student, booking.id, intent.reference)
        assert exc_info.value.code == "PAYMENT_NOT_COMPLETED"

    def test_intent_for_another_booking_is_rejected(
        self,
        payments: PaymentService,
        gateway: FakeStripeClient,
        make_booking: Callable[..., Booking],
        adult_student: User,
        tutor: User,
    ) -> None:
        booking = make_booking(adult_student, tutor, status=BookingStatus.ACCEPTED)
        other = make_booking(adult_student, tutor, status=BookingStatus.ACCEPTED)
        reference = self._succeeded_intent(gateway, other)

        with pytest.raises(ValidationException) as exc_info:
            payments.confirm_client_payment(adult_student, booking.id, reference)
        assert exc_info.value.code == "PAYMENT_BOOKING_MISMATCH"

    def test_unknown_intent_is_rejected(
        self,
        payments: PaymentService,
        make_booking: Callable[..., Booking],
        adult_student: User,
        tutor: User,
    ) -> None:
        booking = make_booking(adult_student, tutor, status=BookingStatus.ACCEPTED)

        with pytest.raises(ValidationException):
            payments.confirm_client_payment(adult_student, booking.id, "pi_doesnotexist")

    def test_only_the_payer_can_confirm(
        self,
        payments: PaymentService,
        make_booking: Callable[..., Booking],
        minor_student: User,
        tutor: User,
    ) -> None:
        booking = make_booking(minor_student, tutor, status=BookingStatus.ACCEPTED)

        with pytest.raises(ForbiddenException):
            payments.confirm_client_payment(tutor, booking.id, "pi_abc")


class TestCaptureHold:
    def test_captures_authorized_hold(
        self,
        payments: PaymentService,
        gateway: FakeStripeClient,
        make_booking: Callable[..., Booking],
        adult_student: User,
        tutor: User,
    ) -> None:
        booking = make_booking(adult_student, tutor, status=BookingStatus.ACCEPTED)
        hold = gateway.create_hold(amount=4500, customer_id="cus", metadata={"booking_id": booking.id})

        intent = payments.capture_hold(booking.id, hold.reference)

        assert intent is not None and intent.status == "succeeded"
        assert gateway.calls("capture")[0]["idempotency_key"] == f"capture-{booking.id}"
        assert booking.payment_intent_id == hold.reference
        # Confirmation happens when the succeeded event arrives.
        assert booking.is_paid is False

    def test_hold_on_cancelled_booking_is_released(
        self,
        payments: PaymentService,
        gateway: FakeStripeClient,
        make_booking: Callable[..., Booking],
        adult_student: User,
        tutor: User,
    ) -> None:
        booking = make_booking(adult_student, tutor, status=BookingStatus.CANCELLED)

        assert payments.capture_hold(booking.id, "pi_orphan") is None
        assert gateway.calls("cancel_hold")[0]["reference"] == "pi_orphan"
        assert not gateway.calls("capture")

    def test_capture_failure_is_recorded_and_retryable(
        self,
        payments: PaymentService,
        gateway: FakeStripeClient,
        make_booking: Callable[..., Booking],
        adult_student: User,
        tutor: User,
    ) -> None:
        booking = make_booking(adult_student, tutor, status=BookingStatus.ACCEPTED)
        gateway.set_error("capture", PaymentGatewayError("capture window closed"))

        with pytest.raises(RetryableServiceException):
            payments.capture_hold(booking.id, "pi_hold9")

        assert booking.payment_error == "capture window closed"


class TestMoneyBack:
    def test_refund_failure_notifies_payer(
        self,
        db: Session,
        payments: PaymentService,
        gateway: FakeStripeClient,
        make_paid_booking: Callable[..., Booking],
        adult_student: User,
        tutor: User,
    ) -> None:
        booking = make_paid_booking(adult_student, tutor)
        gateway.set_error("refund", PaymentGatewayError("refund declined"))

        with pytest.raises(RefundFailedException):
            payments.refund_booking(booking)

        db.refresh(booking)
        assert "refund" in booking.payment_failure_notice
        assert booking.payment_failure_notified_at == NOW

    def test_release_hold_tolerates_missing_intent(
        self,
        payments: PaymentService,
        gateway: FakeStripeClient,
        make_booking: Callable[..., Booking],
        adult_student: User,
        tutor: User,
    ) -> None:
        booking = make_booking(
            adult_student, tutor, status=BookingStatus.ACCEPTED, payment_intent_id="pi_gone"
        )
        gateway.set_error("cancel_hold", PaymentGatewayError("No such", code="resource_missing"))

        payments.release_hold(booking)

    def test_release_hold_failure_is_retryable(
        self,
        payments: PaymentService,
        gateway: FakeStripeClient,
        make_booking: Callable[..., Booking],
        adult_student: User,
        tutor: User,
    ) -> None:
        booking = make_booking(
            adult_student, tutor, status=BookingStatus.ACCEPTED, payment_intent_id="pi_hold2"
        )
        gateway.set_error("cancel_hold", PaymentGatewayError("timeout"))

        with pytest.raises(RetryableServiceException) as exc_info:
            payments.release_hold(booking)
        assert exc_info.value.code == "HOLD_RELEASE_FAILED"

    def test_release_hold_skips_placeholder(
        self,
        payments: PaymentService,
        gateway: FakeStripeClient,
        make_booking: Callable[..., Booking],
        adult_student: User,
        tutor: User,
    ) -> None:
        booking = make_booking(adult_student, tutor, status=BookingStatus.PENDING)

        payments.release_hold(booking)

        assert not gateway.calls("cancel_hold")


class TestPaymentHistory:
    def test_parent_sees_own_and_childrens_payments(
        self,
        payments: PaymentService,
        make_booking: Callable[..., Booking],
        make_paid_booking: Callable[..., Booking],
        parent: User,
        minor_student: User,
        adult_student: User,
        tutor: User,
    ) -> None:
        older = make_paid_booking(minor_student, tutor, payment_captured_at=NOW - timedelta(days=3))
        newer = make_paid_booking(minor_student, tutor, payment_captured_at=NOW - timedelta(hours=1))
        make_booking(minor_student, tutor, status=BookingStatus.ACCEPTED)
        make_paid_booking(adult_student, tutor)

        history = payments.get_payment_history(parent)

        assert [booking.id for booking in history] == [newer.id, older.id]

    def test_refunded_payments_stay_in_history(
        self,
        payments: PaymentService,
        make_paid_booking: Callable[..., Booking],
        adult_student: User,
        tutor: User,
    ) -> None:
        refunded = make_paid_booking(
            adult_student,
            tutor,
            status=BookingStatus.CANCELLED,
            is_paid=False,
            refund_id="re_123",
            refunded_at=NOW,
        )

        history = payments.get_payment_history(adult_student)

        assert [booking.id for booking in history] == [refunded.id]
        assert history[0].refund_id == "re_123"

    def test_tutor_has_no_payer_history(
        self,
        payments: PaymentService,
        make_paid_booking: Callable[..., Booking],
        adult_student: User,
        tutor: User,
    ) -> None:
        make_paid_booking(adult_student, tutor)

        assert payments.get_payment_history(tutor) == []
