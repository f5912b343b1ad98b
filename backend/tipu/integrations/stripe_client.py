"""Stripe payment gateway client.

Thin wrapper over the ``stripe`` SDK exposing only the operations the payment
orchestrator needs. Credentials are passed per call (``api_key=``) so no
module-level Stripe state is mutated.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
from typing import Any, Callable, TypeVar
import uuid

from pydantic import SecretStr
import stripe

logger = logging.getLogger(__name__)

T = TypeVar("T")

REQUIRES_ACTION_STATUSES = frozenset({"requires_action", "requires_confirmation"})


class PaymentGatewayError(RuntimeError):
    """Raised when Stripe rejects a request or cannot be reached."""

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        decline_code: str | None = None,
        reference: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.decline_code = decline_code
        self.reference = reference
        self.status_code = status_code

    @property
    def is_resource_missing(self) -> bool:
        return self.code == "resource_missing"


class WebhookVerificationError(ValueError):
    """Raised when a webhook payload fails signature verification or parsing."""


@dataclass(frozen=True)
class GatewayIntent:
    """Client-facing handle for a charge, hold or setup intent."""

    reference: str
    client_secret: str | None
    status: str
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class OffSessionCharge:
    reference: str
    status: str

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"

    @property
    def requires_action(self) -> bool:
        return self.status in REQUIRES_ACTION_STATUSES


def _to_intent(obj: Any) -> GatewayIntent:
    metadata = getattr(obj, "metadata", None) or {}
    return GatewayIntent(
        reference=obj.id,
        client_secret=getattr(obj, "client_secret", None),
        status=getattr(obj, "status", "") or "",
        metadata={str(k): str(v) for k, v in dict(metadata).items()},
    )


class StripeClient:
    """Payment gateway backed by the Stripe API."""

    def __init__(
        self,
        *,
        api_key: str | SecretStr,
        currency: str = "gbp",
    ) -> None:
        self._api_key = api_key.get_secret_value() if isinstance(api_key, SecretStr) else api_key
        self.currency = currency

    def _call(self, description: str, func: Callable[..., T], **kwargs: Any) -> T:
        """Invoke a Stripe SDK call, mapping SDK errors to ``PaymentGatewayError``."""
        try:
            return func(api_key=self._api_key, **kwargs)
        except stripe.CardError as exc:
            error = getattr(exc, "error", None)
            payment_intent = getattr(error, "payment_intent", None) if error else None
            reference = None
            if payment_intent is not None:
                reference = (
                    payment_intent.get("id")
                    if isinstance(payment_intent, dict)
                    else getattr(payment_intent, "id", None)
                )
            logger.warning("Stripe card error during %s: %s", description, exc.user_message)
            raise PaymentGatewayError(
                exc.user_message or str(exc),
                code=exc.code,
                decline_code=getattr(error, "decline_code", None) if error else None,
                reference=reference,
                status_code=exc.http_status,
            ) from exc
        except stripe.StripeError as exc:
            logger.error("Stripe error during %s: %s", description, exc)
            raise PaymentGatewayError(
                exc.user_message or str(exc),
                code=exc.code,
                status_code=exc.http_status,
            ) from exc

    # ── Customers ───────────────────────────────────────────────────────

    def create_customer(
        self, *, user_id: str, email: str, name: str, idempotency_key: str | None = None
    ) -> str:
        customer = self._call(
            "create_customer",
            stripe.Customer.create,
            email=email,
            name=name,
            metadata={"user_id": user_id},
            idempotency_key=idempotency_key,
        )
        return customer.id

    # ── Intents ─────────────────────────────────────────────────────────

    def create_charge(
        self,
        *,
        amount: int,
        customer_id: str,
        metadata: dict[str, str],
        idempotency_key: str | None = None,
        currency: str | None = None,
    ) -> GatewayIntent:
        """Automatic-capture payment intent completed by the client."""
        intent = self._call(
            "create_charge",
            stripe.PaymentIntent.create,
            amount=amount,
            currency=currency or self.currency,
            customer=customer_id,
            metadata=metadata,
            automatic_payment_methods={"enabled": True},
            idempotency_key=idempotency_key,
        )
        return _to_intent(intent)

    def create_hold(
        self,
        *,
        amount: int,
        customer_id: str,
        metadata: dict[str, str],
        idempotency_key: str | None = None,
        currency: str | None = None,
    ) -> GatewayIntent:
        """Manual-capture payment intent: funds are reserved, not moved."""
        intent = self._call(
            "create_hold",
            stripe.PaymentIntent.create,
            amount=amount,
            currency=currency or self.currency,
            customer=customer_id,
            metadata=metadata,
            capture_method="manual",
            automatic_payment_methods={"enabled": True},
            idempotency_key=idempotency_key,
        )
        return _to_intent(intent)

    def create_setup_intent(
        self,
        *,
        customer_id: str,
        metadata: dict[str, str],
        idempotency_key: str | None = None,
    ) -> GatewayIntent:
        """Save a reusable payment method for a later off-session charge."""
        intent = self._call(
            "create_setup_intent",
            stripe.SetupIntent.create,
            customer=customer_id,
            usage="off_session",
            metadata=metadata,
            automatic_payment_methods={"enabled": True},
            idempotency_key=idempotency_key,
        )
        return _to_intent(intent)

    def retrieve_intent(self, reference: str) -> GatewayIntent:
        intent = self._call("retrieve_intent", stripe.PaymentIntent.retrieve, id=reference)
        return _to_intent(intent)

    def capture(self, reference: str, *, idempotency_key: str | None = None) -> GatewayIntent:
        intent = self._call(
            "capture",
            stripe.PaymentIntent.capture,
            intent=reference,
            idempotency_key=idempotency_key,
        )
        return _to_intent(intent)

    def cancel_hold(self, reference: str) -> None:
        self._call(
            "cancel_hold",
            stripe.PaymentIntent.cancel,
            intent=reference,
            cancellation_reason="requested_by_customer",
        )

    def charge_off_session(
        self,
        *,
        customer_id: str,
        payment_method_id: str,
        amount: int,
        metadata: dict[str, str],
        idempotency_key: str | None = None,
        currency: str | None = None,
    ) -> OffSessionCharge:
        """
        Charge a saved payment method without the payer present.

        Stripe reports a strong-authentication challenge as a card error with
        code ``authentication_required``; that case is returned as a
        ``requires_action`` charge rather than raised.
        """
        try:
            intent = self._call(
                "charge_off_session",
                stripe.PaymentIntent.create,
                amount=amount,
                currency=currency or self.currency,
                customer=customer_id,
                payment_method=payment_method_id,
                off_session=True,
                confirm=True,
                metadata=metadata,
                idempotency_key=idempotency_key,
            )
        except PaymentGatewayError as exc:
            if exc.code == "authentication_required" and exc.reference:
                return OffSessionCharge(reference=exc.reference, status="requires_action")
            raise
        return OffSessionCharge(reference=intent.id, status=intent.status)

    def refund(
        self,
        reference: str,
        *,
        metadata: dict[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> str:
        refund = self._call(
            "refund",
            stripe.Refund.create,
            payment_intent=reference,
            reason="requested_by_customer",
            metadata=metadata or {},
            idempotency_key=idempotency_key,
        )
        return refund.id

    def list_saved_methods(self, customer_id: str) -> list[str]:
        methods = self._call(
            "list_saved_methods",
            stripe.PaymentMethod.list,
            customer=customer_id,
            type="card",
        )
        return [method.id for method in methods.data]

    # ── Webhooks ────────────────────────────────────────────────────────

    def verify_event(self, payload: bytes, signature: str, secret: str) -> dict[str, Any]:
        """Verify and parse a webhook payload into a plain dict."""
        if not secret:
            raise WebhookVerificationError("Webhook secret not configured")
        try:
            event = stripe.Webhook.construct_event(payload, signature, secret)
        except stripe.SignatureVerificationError as exc:
            raise WebhookVerificationError("Invalid webhook signature") from exc
        except ValueError as exc:
            raise WebhookVerificationError("Malformed webhook payload") from exc
        logger.debug("Verified Stripe event %s (%s)", event.id, event.type)
        return json.loads(payload.decode("utf-8") if isinstance(payload, bytes) else payload)


class FakeStripeClient:
    """In-memory stand-in for local development and tests."""

    def __init__(self, *, currency: str = "gbp", webhook_secret: str = "whsec_fake") -> None:
        self.currency = currency
        self.webhook_secret = webhook_secret
        self._calls: list[dict[str, Any]] = []
        self._errors: dict[str, Exception] = {}
        self._intents: dict[str, dict[str, Any]] = {}
        self.saved_methods: dict[str, list[str]] = {}
        self.off_session_status = "succeeded"

    def set_error(self, method: str, error: Exception) -> None:
        """Inject a method-specific error for deterministic failure testing."""
        self._errors[method] = error

    def clear_errors(self) -> None:
        self._errors.clear()

    def calls(self, method: str | None = None) -> list[dict[str, Any]]:
        if method is None:
            return list(self._calls)
        return [call for call in self._calls if call["method"] == method]

    def _record(self, method: str, **kwargs: Any) -> None:
        self._calls.append({"method": method, **kwargs})
        error = self._errors.get(method)
        if error is not None:
            raise error

    def _new_intent(
        self, prefix: str, status: str, metadata: dict[str, str], idempotency_key: str | None
    ) -> GatewayIntent:
        if idempotency_key:
            for reference, stored in self._intents.items():
                if stored.get("idempotency_key") == idempotency_key:
                    return GatewayIntent(
                        reference, f"{reference}_secret", stored["status"], stored["metadata"]
                    )
        reference = f"{prefix}_fake{uuid.uuid4().hex[:16]}"
        self._intents[reference] = {
            "status": status,
            "metadata": dict(metadata),
            "idempotency_key": idempotency_key,
        }
        return GatewayIntent(reference, f"{reference}_secret", status, dict(metadata))

    def set_intent_status(self, reference: str, status: str) -> None:
        self._intents.setdefault(reference, {"metadata": {}})["status"] = status

    def create_customer(
        self, *, user_id: str, email: str, name: str, idempotency_key: str | None = None
    ) -> str:
        self._record("create_customer", user_id=user_id, idempotency_key=idempotency_key)
        return f"cus_fake{user_id[-12:]}"

    def create_charge(
        self, *, amount: int, customer_id: str, metadata: dict[str, str], **kwargs: Any
    ) -> GatewayIntent:
        self._record("create_charge", amount=amount, customer_id=customer_id, metadata=metadata)
        return self._new_intent(
            "pi", "requires_payment_method", metadata, kwargs.get("idempotency_key")
        )

    def create_hold(
        self, *, amount: int, customer_id: str, metadata: dict[str, str], **kwargs: Any
    ) -> GatewayIntent:
        self._record("create_hold", amount=amount, customer_id=customer_id, metadata=metadata)
        return self._new_intent(
            "pi", "requires_payment_method", metadata, kwargs.get("idempotency_key")
        )

    def create_setup_intent(
        self, *, customer_id: str, metadata: dict[str, str], **kwargs: Any
    ) -> GatewayIntent:
        self._record("create_setup_intent", customer_id=customer_id, metadata=metadata)
        return self._new_intent(
            "seti", "requires_payment_method", metadata, kwargs.get("idempotency_key")
        )

    def retrieve_intent(self, reference: str) -> GatewayIntent:
        self._record("retrieve_intent", reference=reference)
        stored = self._intents.get(reference)
        if stored is None:
            raise PaymentGatewayError("No such payment_intent", code="resource_missing")
        return GatewayIntent(reference, None, stored["status"], stored["metadata"])

    def capture(self, reference: str, *, idempotency_key: str | None = None) -> GatewayIntent:
        self._record("capture", reference=reference, idempotency_key=idempotency_key)
        self.set_intent_status(reference, "succeeded")
        return GatewayIntent(reference, None, "succeeded", self._intents[reference]["metadata"])

    def cancel_hold(self, reference: str) -> None:
        self._record("cancel_hold", reference=reference)
        self.set_intent_status(reference, "canceled")

    def charge_off_session(
        self,
        *,
        customer_id: str,
        payment_method_id: str,
        amount: int,
        metadata: dict[str, str],
        idempotency_key: str | None = None,
        currency: str | None = None,
    ) -> OffSessionCharge:
        self._record(
            "charge_off_session",
            customer_id=customer_id,
            payment_method_id=payment_method_id,
            amount=amount,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
        intent = self._new_intent("pi", self.off_session_status, metadata, idempotency_key)
        return OffSessionCharge(reference=intent.reference, status=intent.status)

    def refund(
        self,
        reference: str,
        *,
        metadata: dict[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> str:
        self._record("refund", reference=reference, idempotency_key=idempotency_key)
        return f"re_fake{uuid.uuid4().hex[:16]}"

    def list_saved_methods(self, customer_id: str) -> list[str]:
        self._record("list_saved_methods", customer_id=customer_id)
        return list(self.saved_methods.get(customer_id, []))

    def verify_event(self, payload: bytes, signature: str, secret: str) -> dict[str, Any]:
        """Accepts any payload signed with the configured fake secret."""
        self._record("verify_event")
        if signature != f"fake-signature:{secret}" or secret != self.webhook_secret:
            raise WebhookVerificationError("Invalid webhook signature")
        try:
            return json.loads(payload.decode("utf-8"))
        except ValueError as exc:
            raise WebhookVerificationError("Malformed webhook payload") from exc
