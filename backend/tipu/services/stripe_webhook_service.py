# backend/tipu/services/stripe_webhook_service.py
"""
Stripe webhook reconciler.

Routes receive the raw payload bytes and the ``Stripe-Signature`` header and
hand both to ``StripeWebhookService.handle``; no framework request object
reaches this layer.

``payment_intent.succeeded`` is processed exactly once per event: a marker
row is committed before confirmation runs, so a redelivered event finds the
marker and stops. If confirmation then fails the marker is flagged and the
error propagates, letting Stripe retry while the marker repair sweep in
``ScheduledPaymentService`` finishes the work.
"""

from datetime import timedelta
from typing import Any, Callable, Dict, Optional, TypedDict

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.config import Settings
from ..core.enums import MarkerStatus
from ..core.exceptions import ConflictException, ValidationException
from ..integrations import PaymentGateway, WebhookVerificationError
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from .base import BaseService, Clock
from .payment_service import PaymentService

PAYMENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_FAILED = "payment_intent.payment_failed"
AMOUNT_CAPTURABLE_UPDATED = "payment_intent.amount_capturable_updated"
SETUP_INTENT_SUCCEEDED = "setup_intent.succeeded"


class WebhookResult(TypedDict):
    status: str
    event_type: str


class StripeWebhookService(BaseService):
    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        payment_service: PaymentService,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
    ):
        super().__init__(db, clock=clock)
        self.gateway = gateway
        self.payment_service = payment_service
        self.settings = settings
        self.marker_repository = RepositoryFactory.create_processed_payment_repository(db)
        self._handlers: Dict[str, Callable[[Dict[str, Any]], str]] = {
            PAYMENT_SUCCEEDED: self._handle_payment_succeeded,
            PAYMENT_FAILED: self._handle_payment_failed,
            AMOUNT_CAPTURABLE_UPDATED: self._handle_amount_capturable_updated,
            SETUP_INTENT_SUCCEEDED: self._handle_setup_intent_succeeded,
        }

    @BaseService.measure_operation("handle_webhook")
    def handle(self, payload: bytes, signature: Optional[str]) -> WebhookResult:
        """
        Verify and dispatch one webhook delivery.

        Returns ``{"status": "processed" | "duplicate" | "ignored", "event_type": ...}``.

        Raises:
            ValidationException: Missing or invalid signature, malformed payload
        """
        event = self._verify(payload, signature)
        event_type = str(event.get("type") or "")

        handler = self._handlers.get(event_type)
        if handler is None:
            self.logger.debug("Ignoring Stripe event %s (%s)", event.get("id"), event_type)
            prometheus_metrics.inc_webhook_event(event_type or "unknown", "ignored")
            return {"status": "ignored", "event_type": event_type}

        try:
            result = handler(event)
        except Exception:
            prometheus_metrics.inc_webhook_event(event_type, "error")
            raise
        prometheus_metrics.inc_webhook_event(event_type, result)
        return {"status": result, "event_type": event_type}

    def _verify(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        if not signature:
            raise ValidationException("Missing Stripe-Signature header", code="INVALID_WEBHOOK_SIGNATURE")
        try:
            return self.gateway.verify_event(
                payload, signature, self.settings.stripe_webhook_secret.get_secret_value()
            )
        except WebhookVerificationError as exc:
            self.logger.warning("Rejected Stripe webhook: %s", exc)
            raise ValidationException(str(exc), code="INVALID_WEBHOOK_SIGNATURE") from exc

    @staticmethod
    def _object(event: Dict[str, Any]) -> Dict[str, Any]:
        return (event.get("data") or {}).get("object") or {}

    @staticmethod
    def _booking_id(obj: Dict[str, Any]) -> Optional[str]:
        return (obj.get("metadata") or {}).get("booking_id")

    # ── payment_intent.succeeded ────────────────────────────────────────

    def _handle_payment_succeeded(self, event: Dict[str, Any]) -> str:
        obj = self._object(event)
        event_id = event["id"]
        reference = obj.get("id")
        booking_id = self._booking_id(obj)
        if not reference or not booking_id:
            self.logger.warning("Payment event %s has no booking metadata; ignoring", event_id)
            return "ignored"

        if not self._claim_event(event_id, reference, booking_id, event["type"]):
            self.logger.info("Duplicate payment event %s for %s", event_id, reference)
            return "duplicate"

        try:
            self.payment_service.confirm_payment(booking_id, reference, source="webhook")
        except ConflictException as exc:
            self._finish_marker(event_id, MarkerStatus.CONFLICT, exc.message)
            raise
        except Exception as exc:
            self._finish_marker(event_id, MarkerStatus.FAILED, str(exc))
            raise

        self._finish_marker(event_id, MarkerStatus.CONFIRMED, None)
        return "processed"

    def _claim_event(
        self, event_id: str, reference: str, booking_id: str, event_type: str
    ) -> bool:
        """Commit a pending marker; False if this event or payment was already seen."""
        now = self.now()
        try:
            with self.transaction():
                if self.marker_repository.find_existing(event_id, reference) is not None:
                    return False
                self.marker_repository.create(
                    event_id=event_id,
                    payment_reference=reference,
                    booking_id=booking_id,
                    event_type=event_type,
                    status=MarkerStatus.PENDING.value,
                    attempts=1,
                    created_at=now,
                    expires_at=now + timedelta(days=self.settings.marker_retention_days),
                )
        except IntegrityError:
            return False
        return True

    def _finish_marker(self, event_id: str, status: MarkerStatus, error: Optional[str]) -> None:
        with self.transaction():
            self.marker_repository.update(
                event_id,
                status=status.value,
                last_error=error,
                processed_at=self.now(),
            )

    # ── Intermediate states ─────────────────────────────────────────────

    def _handle_payment_failed(self, event: Dict[str, Any]) -> str:
        obj = self._object(event)
        booking_id = self._booking_id(obj)
        if not booking_id:
            return "ignored"
        last_error = obj.get("last_payment_error") or {}
        message = last_error.get("message") or "Payment failed"
        self.logger.warning("Payment %s failed for booking %s: %s", obj.get("id"), booking_id, message)
        self.payment_service.record_payment_failed(booking_id, message)
        return "processed"

    def _handle_amount_capturable_updated(self, event: Dict[str, Any]) -> str:
        obj = self._object(event)
        booking_id = self._booking_id(obj)
        if not booking_id or not obj.get("id"):
            return "ignored"
        self.payment_service.capture_hold(booking_id, obj["id"])
        return "processed"

    def _handle_setup_intent_succeeded(self, event: Dict[str, Any]) -> str:
        obj = self._object(event)
        booking_id = self._booking_id(obj)
        if not booking_id:
            return "ignored"
        payment_method = obj.get("payment_method")
        if isinstance(payment_method, dict):
            payment_method = payment_method.get("id")
        self.payment_service.record_saved_payment_method(booking_id, obj["id"], payment_method)
        return "processed"
