# backend/tipu/models/payment.py
"""Payment-side persistence: billing customers and processed payment event markers."""

from __future__ import annotations

from datetime import datetime

import sqlalchemy as sa
from sqlalchemy import ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column
import ulid

from ..core.enums import MarkerStatus
from ..database import Base
from .types import UTCDateTime, utc_now


class BillingCustomer(Base):
    """Stripe customer owned by a payer (adult student or guardian)."""

    __tablename__ = "billing_customers"

    __table_args__ = (
        sa.UniqueConstraint("user_id", name="uq_billing_customers_user_id"),
        sa.UniqueConstraint("stripe_customer_id", name="uq_billing_customers_stripe_customer_id"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    user_id: Mapped[str] = mapped_column(String(26), ForeignKey("users.id"), nullable=False)
    stripe_customer_id: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)

    def __repr__(self) -> str:
        return f"<BillingCustomer user={self.user_id} customer={self.stripe_customer_id}>"


class ProcessedPaymentEvent(Base):
    """
    Idempotency marker for a payment-succeeded event.

    Written and committed before confirmation runs. A redelivered event finds
    the marker and produces no side effects; ``status`` records whether the
    confirmation that followed actually completed.
    """

    __tablename__ = "processed_payment_events"

    __table_args__ = (
        sa.UniqueConstraint("payment_reference", name="uq_processed_payment_events_reference"),
        sa.Index("ix_processed_payment_events_status", "status", "created_at"),
        sa.Index("ix_processed_payment_events_expires_at", "expires_at"),
    )

    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    payment_reference: Mapped[str] = mapped_column(String(255), nullable=False)
    booking_id: Mapped[str | None] = mapped_column(String(26), nullable=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=MarkerStatus.PENDING.value
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<ProcessedPaymentEvent {self.event_id}: ref={self.payment_reference}, "
            f"status={self.status}>"
        )
