"""External provider clients and the factories that pick real or fake implementations."""

from typing import Union

from ..core.config import Settings
from .graph_meetings_client import (
    FakeMeetingClient,
    GraphMeetingsClient,
    MeetingDetails,
    MeetingProviderError,
)
from .stripe_client import (
    FakeStripeClient,
    GatewayIntent,
    OffSessionCharge,
    PaymentGatewayError,
    StripeClient,
    WebhookVerificationError,
)

PaymentGateway = Union[StripeClient, FakeStripeClient]
MeetingClient = Union[GraphMeetingsClient, FakeMeetingClient]


def build_payment_gateway(settings: Settings) -> PaymentGateway:
    if settings.payment_provider == "fake":
        return FakeStripeClient(
            currency=settings.stripe_currency,
            webhook_secret=settings.stripe_webhook_secret.get_secret_value(),
        )
    return StripeClient(api_key=settings.stripe_secret_key, currency=settings.stripe_currency)


def build_meeting_client(settings: Settings) -> MeetingClient:
    if settings.meeting_provider == "fake":
        return FakeMeetingClient()
    return GraphMeetingsClient(
        tenant_id=settings.graph_tenant_id,
        client_id=settings.graph_client_id,
        client_secret=settings.graph_client_secret,
        organizer_user_id=settings.graph_organizer_user_id,
        timeout=settings.graph_timeout_seconds,
    )


__all__ = [
    "FakeMeetingClient",
    "FakeStripeClient",
    "GatewayIntent",
    "GraphMeetingsClient",
    "MeetingClient",
    "MeetingDetails",
    "MeetingProviderError",
    "OffSessionCharge",
    "PaymentGateway",
    "PaymentGatewayError",
    "StripeClient",
    "WebhookVerificationError",
    "build_meeting_client",
    "build_payment_gateway",
]
