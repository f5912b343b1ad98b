"""
Route test fixtures.

Routes build their services with the wall clock, so booking fixtures here are
anchored to the real current time instead of the frozen ``NOW``.
"""

from __future__ import annotations

from typing import Callable, Dict, Iterator

from fastapi.testclient import TestClient
import jwt
import pytest
from sqlalchemy.orm import Session

from tests.conftest import JWT_SECRET, FrozenClock
from tipu.api.dependencies import get_app_settings, get_db, get_meeting_client, get_payment_gateway
from tipu.core.config import Settings
from tipu.integrations import FakeMeetingClient, FakeStripeClient
from tipu.main import create_app
from tipu.models.types import utc_now
from tipu.models.user import User


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(utc_now())


@pytest.fixture
def client(
    db: Session,
    settings: Settings,
    gateway: FakeStripeClient,
    meeting_client: FakeMeetingClient,
) -> Iterator[TestClient]:
    app = create_app()

    def _get_db() -> Iterator[Session]:
        yield db

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_app_settings] = lambda: settings
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_meeting_client] = lambda: meeting_client

    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers() -> Callable[[User], Dict[str, str]]:
    def _headers(user: User) -> Dict[str, str]:
        token = jwt.encode({"sub": user.id}, JWT_SECRET, algorithm="HS256")
        return {"Authorization": f"Bearer {token}"}

    return _headers
