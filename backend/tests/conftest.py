# backend/tests/conftest.py
"""
Shared fixtures.

Every test gets a fresh in-memory SQLite database, the fake Stripe and
Microsoft Graph clients, and a controllable clock. No test talks to a real
provider.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Iterator, List, Optional

from pydantic import SecretStr
import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from tipu.core.config import Settings
from tipu.core.enums import BookingStatus, PaymentAuthType, RoleName
from tipu.database import Base, build_session_factory
from tipu.integrations import FakeMeetingClient, FakeStripeClient
from tipu.models.booking import Booking
from tipu.models.payment import BillingCustomer
from tipu.models.user import User
from tipu.services.dependencies import ServiceBundle, build_services

NOW = datetime(2025, 3, 3, 12, 0, tzinfo=timezone.utc)
ADULT_DOB = date(1995, 5, 1)
MINOR_DOB = date(2012, 6, 15)
WEBHOOK_SECRET = "whsec_fake"
JWT_SECRET = "test-secret-key"


class FrozenClock:
    """Callable clock that only moves when a test moves it."""

    def __init__(self, now: datetime) -> None:
        self.current = now

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


@pytest.fixture
def engine() -> Iterator[Engine]:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine: Engine) -> Iterator[Session]:
    session = build_session_factory(engine)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        environment="test",
        database_url="sqlite://",
        payment_provider="fake",
        meeting_provider="fake",
        stripe_webhook_secret=SecretStr(WEBHOOK_SECRET),
        secret_key=SecretStr(JWT_SECRET),
        meeting_max_attempts=3,
        meeting_retry_base_delay_seconds=1.0,
    )


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(NOW)


@pytest.fixture
def gateway() -> FakeStripeClient:
    return FakeStripeClient(webhook_secret=WEBHOOK_SECRET)


@pytest.fixture
def meeting_client() -> FakeMeetingClient:
    return FakeMeetingClient()


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def services(
    db: Session,
    settings: Settings,
    gateway: FakeStripeClient,
    meeting_client: FakeMeetingClient,
    clock: FrozenClock,
    sleeps: List[float],
) -> ServiceBundle:
    return build_services(db, settings, gateway, meeting_client, clock=clock, sleep=sleeps.append)


# ── Users ───────────────────────────────────────────────────────────────


@pytest.fixture
def make_user(db: Session) -> Callable[..., User]:
    counter = {"n": 0}

    def _make(
        role: RoleName,
        *,
        date_of_birth: Optional[date] = None,
        parent: Optional[User] = None,
        name: Optional[str] = None,
    ) -> User:
        counter["n"] += 1
        label = name or f"{role.value}{counter['n']}"
        user = User(
            email=f"{label}@example.com",
            display_name=label.title(),
            role=role.value,
            date_of_birth=date_of_birth,
            parent=parent,
        )
        db.add(user)
        db.commit()
        return user

    return _make


@pytest.fixture
def tutor(make_user: Callable[..., User]) -> User:
    return make_user(RoleName.TUTOR, date_of_birth=date(1985, 1, 20), name="tutor")


@pytest.fixture
def other_tutor(make_user: Callable[..., User]) -> User:
    return make_user(RoleName.TUTOR, date_of_birth=date(1980, 7, 2), name="othertutor")


@pytest.fixture
def adult_student(make_user: Callable[..., User]) -> User:
    return make_user(RoleName.STUDENT, date_of_birth=ADULT_DOB, name="adult")


@pytest.fixture
def parent(make_user: Callable[..., User]) -> User:
    return make_user(RoleName.PARENT, date_of_birth=date(1978, 9, 9), name="parent")


@pytest.fixture
def minor_student(make_user: Callable[..., User], parent: User) -> User:
    return make_user(RoleName.STUDENT, date_of_birth=MINOR_DOB, parent=parent, name="minor")


@pytest.fixture
def unlinked_minor(make_user: Callable[..., User]) -> User:
    return make_user(RoleName.STUDENT, date_of_birth=MINOR_DOB, name="unlinked")


@pytest.fixture
def admin(make_user: Callable[..., User]) -> User:
    return make_user(RoleName.ADMIN, name="admin")


# ── Bookings ────────────────────────────────────────────────────────────


@pytest.fixture
def make_booking(db: Session, clock: FrozenClock) -> Callable[..., Booking]:
    """Insert a booking directly, bypassing the state machine."""

    def _make(
        student: User,
        tutor: User,
        *,
        hours_ahead: float = 72,
        status: BookingStatus = BookingStatus.PENDING,
        **overrides: Any,
    ) -> Booking:
        values: dict[str, Any] = {
            "student_id": student.id,
            "tutor_id": tutor.id,
            "subject": "Maths",
            "level": "GCSE",
            "scheduled_at": clock() + timedelta(hours=hours_ahead),
            "duration_minutes": 60,
            "price": 4500,
            "status": status.value,
        }
        values.update(overrides)
        booking = Booking(**values)
        db.add(booking)
        db.commit()
        return booking

    return _make


@pytest.fixture
def make_paid_booking(
    make_booking: Callable[..., Booking],
) -> Callable[..., Booking]:
    def _make(student: User, tutor: User, **overrides: Any) -> Booking:
        values: dict[str, Any] = {
            "status": BookingStatus.CONFIRMED,
            "is_paid": True,
            "payment_intent_id": "pi_paid123",
            "payment_auth_type": PaymentAuthType.IMMEDIATE_AUTH.value,
            "payment_captured_at": NOW,
        }
        values.update(overrides)
        return make_booking(student, tutor, **values)

    return _make


@pytest.fixture
def billing_customer(db: Session) -> Callable[[User], BillingCustomer]:
    def _make(user: User) -> BillingCustomer:
        customer = BillingCustomer(user_id=user.id, stripe_customer_id=f"cus_fake{user.id[-12:]}")
        db.add(customer)
        db.commit()
        return customer

    return _make
