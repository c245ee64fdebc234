# tests/unit/test_stripe_gateway.py

import hashlib
import hmac
import json
import time

import pytest
import stripe

from booking_engine.domain.exceptions import PaymentProviderError
from booking_engine.infrastructure.payments.stripe_gateway import StripeGateway, _to_plain


WEBHOOK_SECRET = "whsec_test_secret"


def sign(payload: bytes, secret: str = WEBHOOK_SECRET) -> str:
    timestamp = int(time.time())
    signed = f"{timestamp}.{payload.decode()}".encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


@pytest.fixture
def gateway():
    return StripeGateway(secret_key="sk_test_123", webhook_secret=WEBHOOK_SECRET)


@pytest.fixture
def payload():
    event = {
        "id": "evt_1",
        "object": "event",
        "type": "payment_intent.succeeded",
        "data": {"object": {"id": "pi_1", "status": "succeeded", "metadata": {"transactionId": "STRIPE-1-abc"}}},
    }
    return json.dumps(event).encode()


def test_valid_signature_returns_event(gateway, payload):
    event = gateway.verify_webhook(payload, sign(payload))

    assert event["type"] == "payment_intent.succeeded"
    assert event["data"]["object"]["metadata"]["transactionId"] == "STRIPE-1-abc"


def test_forged_signature_is_rejected(gateway, payload):
    with pytest.raises(ValueError):
        gateway.verify_webhook(payload, sign(payload, secret="whsec_someone_else"))


def test_missing_signature_is_rejected(gateway, payload):
    with pytest.raises(ValueError):
        gateway.verify_webhook(payload, None)


def test_unconfigured_webhook_secret(payload):
    gateway = StripeGateway(secret_key="sk_test_123")

    with pytest.raises(PaymentProviderError):
        gateway.verify_webhook(payload, sign(payload))


def test_missing_api_key_fails_before_calling_stripe():
    gateway = StripeGateway(secret_key=None)

    with pytest.raises(PaymentProviderError, match="STRIPE_SECRET_KEY"):
        gateway.create_payment_intent(5000, "usd", {"transactionId": "STRIPE-1-abc"})


def test_stripe_objects_become_plain_dicts():
    intent = stripe.PaymentIntent.construct_from(
        {"id": "pi_1", "status": "succeeded", "metadata": {"transactionId": "STRIPE-1-abc"}},
        "sk_test_123",
    )

    plain = _to_plain(intent)

    assert type(plain) is dict
    assert type(plain["metadata"]) is dict
    assert plain["metadata"]["transactionId"] == "STRIPE-1-abc"
