"""Shared pytest fixtures: in-memory database, recorded fan-out, fake payment provider."""
import hashlib
import hmac
import json
import os
import time
from datetime import timedelta

# Must be set before tableside.settings is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("SECRET_KEY", "test-secret-key")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from tableside.db import get_session
from tableside.fanout import Fanout, get_fanout
from tableside.main import app
from tableside.models import MenuItem, Role, Table, User
from tableside.payment_provider import (
    PaymentProvider,
    PaymentProviderError,
    ProviderCheckout,
    ProviderOutcome,
    get_payment_provider,
)
from tableside.security import Identity, create_access_token, get_password_hash

STAFF_PASSWORD = "correct-horse"
# bcrypt is slow on purpose; hash once per run
STAFF_PASSWORD_HASH = get_password_hash(STAFF_PASSWORD)


class RecordingPublisher:
    """Stands in for Redis; keeps every (room, message) published."""

    def __init__(self):
        self.messages: list[tuple[str, dict]] = []

    def publish(self, room: str, message: str) -> int:
        self.messages.append((room, json.loads(message)))
        return 1

    def rooms_for(self, event: str) -> list[str]:
        return [room for room, message in self.messages if message["event"] == event]

    def events_in(self, room: str) -> list[str]:
        return [message["event"] for r, message in self.messages if r == room]

    def clear(self) -> None:
        self.messages.clear()


class FakePaymentProvider(PaymentProvider):
    name = "fake"

    VALID_SIGNATURE = "valid-signature"

    def __init__(self):
        self.fail = False
        self.outcomes: dict[str, bool | None] = {}
        self.initiated: list[tuple[int, int]] = []
        # Runs inside initiate, standing in for the provider round trip
        self.on_initiate = None

    def initiate(self, order_id, amount_cents, customer_info):
        if self.on_initiate:
            self.on_initiate()
        if self.fail:
            raise PaymentProviderError("Request timed out")
        self.initiated.append((order_id, amount_cents))
        transaction_id = f"cs_test_{len(self.initiated)}"
        return ProviderCheckout(f"https://pay.example.com/{transaction_id}", transaction_id)

    def verify_signature(self, payload, signature):
        return signature == self.VALID_SIGNATURE

    def parse_event(self, payload):
        event = json.loads(payload)
        if "transaction_id" not in event:
            return None
        return ProviderOutcome(event["transaction_id"], event["success"])

    def fetch_outcome(self, transaction_id):
        return self.outcomes.get(transaction_id)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def fanout(publisher) -> Fanout:
    return Fanout(publisher)


@pytest.fixture
def provider() -> FakePaymentProvider:
    return FakePaymentProvider()


@pytest.fixture
def table(session) -> Table:
    table = Table(table_number="7", qr_code="table-7", capacity=4)
    session.add(table)
    session.commit()
    session.refresh(table)
    return table


@pytest.fixture
def other_table(session) -> Table:
    table = Table(table_number="8", qr_code="table-8", capacity=2)
    session.add(table)
    session.commit()
    session.refresh(table)
    return table


@pytest.fixture
def menu(session) -> dict[str, MenuItem]:
    items = {
        "burger": MenuItem(name="Burger", price_cents=1000, category="main", description="Beef patty"),
        "fries": MenuItem(name="Fries", price_cents=500, category="side"),
        "soup": MenuItem(name="Soup", price_cents=700, category="starter", is_available=False),
    }
    for item in items.values():
        session.add(item)
    session.commit()
    for item in items.values():
        session.refresh(item)
    return items


@pytest.fixture
def staff(session) -> dict[Role, User]:
    users = {}
    for role in (Role.admin, Role.kitchen, Role.runner):
        user = User(
            email=f"{role.value}@tableside.test",
            full_name=role.value.title(),
            role=role,
            hashed_password=STAFF_PASSWORD_HASH,
        )
        session.add(user)
        users[role] = user
    session.commit()
    for user in users.values():
        session.refresh(user)
    return users


def customer(session_id: str = "session-a") -> Identity:
    return Identity(role=Role.customer, session_id=session_id)


def staff_identity(role: Role) -> Identity:
    return Identity(role=role, user_id=1)


def auth_headers(user: User) -> dict:
    token = create_access_token({"sub": str(user.id)}, timedelta(minutes=30))
    return {"Authorization": f"Bearer {token}"}


def session_headers(session_id: str) -> dict:
    return {"X-Session-Id": session_id}


def stripe_signature(payload: bytes, secret: str, timestamp: int | None = None) -> str:
    """Build a Stripe-Signature header the way Stripe signs webhook bodies."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode()}".encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


@pytest.fixture
def client(engine, fanout, provider):
    def override_get_session():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_fanout] = lambda: fanout
    app.dependency_overrides[get_payment_provider] = lambda: provider
    # No context manager: the lifespan would create tables on the configured database
    yield TestClient(app)
    app.dependency_overrides.clear()
