# tests/conftest.py

import json
import os
from datetime import datetime, timedelta, timezone

# Configure the app for an in-memory database before anything imports settings.
os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["EVENT_STATUS_SCHEDULER_ENABLED"] = "false"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from booking_engine.api.dependencies import (
    get_db,
    get_sslcommerz_gateway,
    get_stripe_gateway,
)
from booking_engine.application.payment_service import PaymentService
from booking_engine.domain.event_lifecycle import EventStatus
from booking_engine.domain.exceptions import PaymentProviderError
from booking_engine.domain.state_machine import BookingStatus, PaymentStatus
from booking_engine.infrastructure.db.models import Base, Booking, Event


FIXED_NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeStripeGateway:
    """In-memory stand-in for StripeGateway; objects mimic Stripe's JSON."""

    def __init__(self):
        self.intents: dict[str, dict] = {}
        self.sessions: dict[str, dict] = {}
        self.fail_with: Exception | None = None

    def create_payment_intent(self, amount_cents, currency, metadata):
        if self.fail_with:
            raise self.fail_with
        intent_id = f"pi_test_{len(self.intents) + 1}"
        self.intents[intent_id] = {
            "id": intent_id,
            "object": "payment_intent",
            "client_secret": f"{intent_id}_secret_abc",
            "status": "requires_payment_method",
            "amount": amount_cents,
            "currency": currency,
            "metadata": dict(metadata),
        }
        return dict(self.intents[intent_id])

    def create_checkout_session(self, line_items, success_url, cancel_url, metadata):
        if self.fail_with:
            raise self.fail_with
        session_id = f"cs_test_{len(self.sessions) + 1}"
        self.sessions[session_id] = {
            "id": session_id,
            "object": "checkout.session",
            "url": f"https://checkout.stripe.test/pay/{session_id}",
            "status": "open",
            "payment_status": "unpaid",
            "payment_intent": None,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "line_items": line_items,
            "metadata": dict(metadata),
        }
        return dict(self.sessions[session_id])

    def retrieve_payment_intent(self, intent_id):
        if intent_id not in self.intents:
            raise PaymentProviderError("stripe", f"No such payment_intent: {intent_id}")
        return dict(self.intents[intent_id])

    def retrieve_checkout_session(self, session_id):
        if session_id not in self.sessions:
            raise PaymentProviderError("stripe", f"No such checkout session: {session_id}")
        return dict(self.sessions[session_id])

    def verify_webhook(self, payload, signature):
        if signature != "valid-signature":
            raise ValueError("Invalid webhook signature")
        return json.loads(payload)

    def settle_intent(self, intent_id, status="succeeded"):
        self.intents[intent_id]["status"] = status
        return dict(self.intents[intent_id])

    def pay_session(self, session_id):
        self.sessions[session_id].update(
            status="complete",
            payment_status="paid",
            payment_intent=f"pi_for_{session_id}",
        )
        return dict(self.sessions[session_id])


class FakeSSLCommerzGateway:
    def __init__(self):
        self.calls: list[dict] = []
        self.fail_with: Exception | None = None
        self.validations: dict[str, dict] = {}

    def payment_init(self, payload):
        self.calls.append(payload)
        if self.fail_with:
            raise self.fail_with
        return {
            "status": "SUCCESS",
            "sessionkey": f"SESSION-{len(self.calls)}",
            "GatewayPageURL": f"https://sandbox.sslcommerz.test/pay/{payload['transaction_id']}",
        }

    def approve(self, transaction_id, amount=None):
        """Records a captured payment and returns the val_id the gateway would post back."""
        payload = next(call for call in self.calls if call["transaction_id"] == transaction_id)
        val_id = f"VAL-{len(self.validations) + 1}"
        self.validations[val_id] = {
            "status": "VALID",
            "tran_id": transaction_id,
            "val_id": val_id,
            "amount": amount or payload["amount"],
            "currency": payload.get("currency", "BDT").upper(),
        }
        return val_id

    def validate_transaction(self, val_id):
        if self.fail_with:
            raise self.fail_with
        return dict(self.validations.get(val_id, {"status": "INVALID_TRANSACTION"}))


class TickingClock:
    """Advances one millisecond per reading so transaction ids never collide."""

    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        self.current += timedelta(milliseconds=1)
        return self.current


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
    )


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def now():
    return FIXED_NOW


@pytest.fixture
def stripe_gateway():
    return FakeStripeGateway()


@pytest.fixture
def sslcommerz_gateway():
    return FakeSSLCommerzGateway()


@pytest.fixture
def payment_service(db, stripe_gateway, sslcommerz_gateway, now):
    return PaymentService(
        db,
        stripe_gateway=stripe_gateway,
        sslcommerz_gateway=sslcommerz_gateway,
        clock=TickingClock(now),
    )


@pytest.fixture
def make_event(db, now):
    def _make(**overrides) -> Event:
        values = {
            "host_id": "host-1",
            "title": "Rooftop Jazz Night",
            "date": now + timedelta(days=1),
            "fee_cents": 5000,
            "currency": "usd",
            "min_participants": 1,
            "max_participants": 10,
            "current_participants": 0,
            "status": EventStatus.ONGOING,
        }
        values.update(overrides)
        event = Event(**values)
        db.add(event)
        db.commit()
        return event

    return _make


@pytest.fixture
def make_booking(db):
    def _make(event: Event, user_id: str = "user-1") -> Booking:
        booking = Booking(
            user_id=user_id,
            event_id=event.id,
            status=BookingStatus.PENDING,
            payment_status=PaymentStatus.PENDING,
        )
        db.add(booking)
        db.commit()
        return booking

    return _make


@pytest.fixture
def client(session_factory, stripe_gateway, sslcommerz_gateway):
    from booking_engine.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_stripe_gateway] = lambda: stripe_gateway
    app.dependency_overrides[get_sslcommerz_gateway] = lambda: sslcommerz_gateway

    # No context manager: startup hooks (DB wait, scheduler) stay off in tests.
    yield TestClient(app, raise_server_exceptions=False)

    app.dependency_overrides.clear()
