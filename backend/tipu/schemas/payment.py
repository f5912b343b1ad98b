"""Payment request and response schemas."""

from datetime import datetime
from typing import List, Optional

from pydantic import Field

from ..core.enums import PaymentAuthType
from ._strict_base import StrictModel, StrictRequestModel


class AuthorizePaymentRequest(StrictRequestModel):
    booking_id: str = Field(..., description="Accepted booking to pay for")


class AuthorizePaymentResponse(StrictModel):
    booking_id: str
    payment_auth_type: PaymentAuthType
    client_secret: Optional[str] = Field(
        None, description="Secret the client uses to complete the intent"
    )
    reference: str = Field(..., description="Stripe payment or setup intent id")
    expires_at: datetime
    payment_scheduled_for: Optional[datetime] = None


class ConfirmPaymentRequest(StrictRequestModel):
    payment_intent_id: str = Field(..., min_length=3, max_length=255)


class ConfirmPaymentResponse(StrictModel):
    booking_id: str
    status: str
    is_paid: bool
    already_confirmed: bool
    meeting_link: Optional[str] = None
    meeting_error: Optional[str] = None


class WebhookResponse(StrictModel):
    status: str = Field(..., description="processed | duplicate | ignored")
    event_type: str


class PaymentHistoryEntry(StrictModel):
    booking_id: str
    student_id: str
    tutor_id: str
    subject: str
    level: str
    amount: int = Field(..., description="Price in minor currency units")
    paid_at: datetime
    status: str
    refunded: bool = False
    refunded_at: Optional[datetime] = None


class PaymentHistoryResponse(StrictModel):
    payments: List[PaymentHistoryEntry]
