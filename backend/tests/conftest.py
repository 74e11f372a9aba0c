"""Pytest configuration and fixtures for testing."""

import base64
import json
import os
from decimal import Decimal
from typing import AsyncGenerator, Mapping

# Settings are read at import time; point them at throwaway values first
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENVIRONMENT", "test")

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from paygate.config import Settings
from paygate.core.errors import ProviderError, WebhookSignatureError
from paygate.core.realtime import ConnectionRegistry
from paygate.core.security import generate_session_token, hash_session_token
from paygate.database import Base, build_session_factory
from paygate.main import create_app
from paygate.models.delivery import Delivery, DeliveryStatus
from paygate.models.user import User
from paygate.providers.base import ChargeHandle, EventOutcome, PaymentProvider, ProviderEvent

TEST_ENC_KEY = base64.b64encode(bytes(range(32))).decode()
TEST_HMAC_KEY = base64.b64encode(bytes(range(64, 128))).decode()
TEST_REALTIME_SECRET = "realtime-test-secret-with-at-least-32-bytes"


class FakeProvider(PaymentProvider):
    """In-memory provider; webhooks are JSON bodies signed by a fixed header."""

    name = "fake"
    currency = "usd"

    def __init__(self):
        self.charges = []
        self.fail_next = False

    async def create_charge(self, transaction_id, amount_minor, metadata):
        if self.fail_next:
            self.fail_next = False
            raise ProviderError("Card declined")
        self.charges.append({"transaction_id": transaction_id, "amount_minor": amount_minor, **metadata})
        return ChargeHandle(provider_ref=f"ref_{transaction_id}", client_handle=f"secret_{transaction_id}")

    def parse_webhook(self, body: bytes, headers: Mapping[str, str]) -> ProviderEvent:
        if headers.get("x-fake-signature") != "valid":
            raise WebhookSignatureError("Invalid webhook signature")
        data = json.loads(body)
        return ProviderEvent(
            outcome=EventOutcome(data["outcome"]),
            provider=self.name,
            event_id=data.get("id", "evt_test"),
            event_type=data.get("type", "charge"),
            transaction_id=data.get("transactionId"),
            provider_ref=data.get("providerRef"),
            amount_minor=data.get("amountMinor"),
            failure_reason=data.get("reason"),
        )


def succeeded(transaction_id: str, amount_minor=None, provider_ref=None) -> ProviderEvent:
    return ProviderEvent(
        outcome=EventOutcome.SUCCEEDED,
        provider="fake",
        event_id=f"evt_{transaction_id}",
        event_type="charge.succeeded",
        transaction_id=transaction_id,
        provider_ref=provider_ref,
        amount_minor=amount_minor,
    )


def failed(transaction_id: str, reason: str = "card_declined") -> ProviderEvent:
    return ProviderEvent(
        outcome=EventOutcome.FAILED,
        provider="fake",
        event_id=f"evt_fail_{transaction_id}",
        event_type="charge.failed",
        transaction_id=transaction_id,
        failure_reason=reason,
    )


class RecordingChannel:
    """Realtime channel that keeps what it was sent."""

    def __init__(self):
        self.messages = []
        self.closed = None

    async def send(self, message):
        self.messages.append(message)

    async def close(self, code, reason):
        self.closed = (code, reason)

    def events(self):
        return [m["event"] for m in self.messages]

    def last(self, event):
        return [m for m in self.messages if m["event"] == event][-1]["data"]


def make_settings(database_url: str, **overrides) -> Settings:
    values = dict(
        DATABASE_URL=database_url,
        ENVIRONMENT="test",
        LOG_LEVEL="DEBUG",
        PAYMENT_ENC_KEY=TEST_ENC_KEY,
        PAYMENT_HMAC_KEY=TEST_HMAC_KEY,
        REALTIME_TOKEN_SECRET=TEST_REALTIME_SECRET,
        DEFAULT_PAYMENT_PROVIDER="fake",
        ENABLED_PAYMENT_PROVIDERS=["fake"],
        ENABLE_RATE_LIMIT=False,
        ENABLE_MANUAL_CONFIRM=True,
        PENDING_TRANSACTION_TTL_SECONDS=0,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'paygate.db'}"


@pytest.fixture
def settings(database_url) -> Settings:
    return make_settings(database_url)


@pytest.fixture
async def session_factory(database_url) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """
    Fresh file-backed database per test.

    NullPool gives every session its own connection so concurrent
    settlements really contend; the busy timeout serializes writers.
    """
    engine = create_async_engine(database_url, poolclass=NullPool, connect_args={"timeout": 30})
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield build_session_factory(engine)

    await engine.dispose()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def registry() -> ConnectionRegistry:
    return ConnectionRegistry()


@pytest.fixture
def app(settings, session_factory, provider, registry):
    return create_app(
        settings=settings,
        session_factory=session_factory,
        providers={"fake": provider},
        registry=registry
    )


@pytest.fixture
def engine(app):
    """The settlement engine wired into the app."""
    return app.state.engine


@pytest.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


async def create_user(session_factory, balance="0.00", email=None) -> tuple[User, str]:
    """Insert a user; returns the user and its plaintext session token."""
    token = generate_session_token()
    async with session_factory() as session:
        user = User(
            email=email or f"{token[5:17]}@example.com",
            full_name="Test User",
            session_token_hash=hash_session_token(token),
            balance=Decimal(balance),
        )
        session.add(user)
        await session.commit()
    return user, token


async def create_delivery(session_factory, user_id, price="25.00", status=DeliveryStatus.CONFIRMED, paid=False) -> Delivery:
    async with session_factory() as session:
        delivery = Delivery(user_id=user_id, price=Decimal(price), status=status, paid=paid)
        session.add(delivery)
        await session.commit()
    return delivery


async def reload_user(session_factory, user_id) -> User:
    async with session_factory() as session:
        return await session.get(User, user_id)


async def reload_delivery(session_factory, delivery_id) -> Delivery:
    async with session_factory() as session:
        return await session.get(Delivery, delivery_id)


@pytest.fixture
async def user(session_factory) -> tuple[User, str]:
    """A user with an empty balance; returns (user, session token)."""
    return await create_user(session_factory)


def auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}
