from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from shop_relay.db.migrations.create_tables import create_tables
from shop_relay.services.relay_client import RelayClient


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_tables(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def notifier():
    mock = MagicMock()
    mock.send_verification_code = AsyncMock(return_value=True)
    mock.send_new_account_credentials = AsyncMock(return_value=True)
    return mock


def _no_network(request: httpx.Request) -> httpx.Response:
    raise AssertionError(f"unexpected request to {request.url}")


def _make_relay(handler=_no_network, **kwargs) -> RelayClient:
    options = {
        "admin_base_url": "https://relay.test/admin",
        "api_base_url": "https://relay.test/api",
        "admin_token": "admin-token",
        "sso_token": "sso-token",
        "registration_settle_seconds": 0,
    }
    options.update(kwargs)
    return RelayClient(transport=httpx.MockTransport(handler), **options)


@pytest.fixture
def make_relay():
    """RelayClient whose HTTP traffic goes to an in-process handler. Without one, any request fails the test."""
    return _make_relay
