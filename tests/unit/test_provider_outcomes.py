# tests/unit/test_provider_outcomes.py

import pytest

from booking_engine.application.provider_outcomes import (
    OutcomeResult,
    parse_checkout_session,
    parse_gateway_callback,
    parse_gateway_validation,
    parse_payment_intent,
    parse_stripe_event,
)
from booking_engine.domain.exceptions import BadRequestError


def checkout_session(**overrides):
    session = {
        "id": "cs_test_1",
        "object": "checkout.session",
        "status": "complete",
        "payment_status": "paid",
        "payment_intent": "pi_test_1",
        "metadata": {"transactionId": "STRIPE-CHECKOUT-1700000000000-abc123", "bookingId": "b-1"},
    }
    session.update(overrides)
    return session


def payment_intent(**overrides):
    intent = {
        "id": "pi_test_1",
        "object": "payment_intent",
        "status": "succeeded",
        "amount": 5000,
        "metadata": {"transactionId": "STRIPE-1700000000000-abc123"},
    }
    intent.update(overrides)
    return intent


# ---------------------
# STRIPE CHECKOUT
# ---------------------

def test_paid_checkout_session_succeeds():
    outcome = parse_checkout_session(checkout_session())

    assert outcome.result is OutcomeResult.SUCCEEDED
    assert outcome.transaction_id == "STRIPE-CHECKOUT-1700000000000-abc123"
    assert outcome.provider_reference == "cs_test_1"


def test_unpaid_checkout_session_is_still_pending():
    outcome = parse_checkout_session(checkout_session(payment_status="unpaid"))

    assert outcome.result is OutcomeResult.PENDING


def test_session_without_a_charge_does_not_confirm():
    outcome = parse_checkout_session(checkout_session(payment_status="no_payment_required"))

    assert outcome.result is OutcomeResult.PENDING


def test_expired_checkout_session_fails():
    outcome = parse_checkout_session(
        checkout_session(status="expired", payment_status="unpaid"),
        event_type="checkout.session.expired",
    )

    assert outcome.result is OutcomeResult.FAILED


def test_checkout_session_without_transaction_id_is_rejected():
    with pytest.raises(BadRequestError):
        parse_checkout_session(checkout_session(metadata={}))

    with pytest.raises(BadRequestError):
        parse_checkout_session(checkout_session(metadata=None))


def test_checkout_session_without_payment_status_is_rejected():
    session = checkout_session()
    del session["payment_status"]

    with pytest.raises(BadRequestError):
        parse_checkout_session(session)


# ---------------------
# STRIPE PAYMENT INTENT
# ---------------------

def test_succeeded_intent():
    outcome = parse_payment_intent(payment_intent())

    assert outcome.result is OutcomeResult.SUCCEEDED
    assert outcome.provider_reference == "pi_test_1"


def test_processing_intent_is_pending():
    assert parse_payment_intent(payment_intent(status="processing")).result is OutcomeResult.PENDING


def test_declined_intent_stays_open_for_retry():
    event = {
        "id": "evt_decline",
        "type": "payment_intent.payment_failed",
        "data": {"object": payment_intent(status="requires_payment_method")},
    }

    assert parse_stripe_event(event).result is OutcomeResult.PENDING


def test_canceled_intent_is_failed():
    event = {
        "id": "evt_cancel",
        "type": "payment_intent.canceled",
        "data": {"object": payment_intent(status="canceled")},
    }

    assert parse_stripe_event(event).result is OutcomeResult.FAILED


# ---------------------
# WEBHOOK EVENTS
# ---------------------

def test_webhook_dispatches_on_event_type():
    event = {
        "id": "evt_1",
        "type": "checkout.session.completed",
        "data": {"object": checkout_session()},
    }

    outcome = parse_stripe_event(event)

    assert outcome.result is OutcomeResult.SUCCEEDED
    assert outcome.raw["id"] == "cs_test_1"


def test_unhandled_event_type_is_ignored():
    event = {
        "id": "evt_2",
        "type": "customer.created",
        "data": {"object": {"id": "cus_1"}},
    }

    assert parse_stripe_event(event) is None


def test_malformed_webhook_is_rejected():
    with pytest.raises(BadRequestError):
        parse_stripe_event({"type": "checkout.session.completed"})

    with pytest.raises(BadRequestError):
        parse_stripe_event("not a dict")


# ---------------------
# SSLCOMMERZ CALLBACKS
# ---------------------

def test_success_callback_reports_amount_in_cents():
    outcome = parse_gateway_callback(
        {"tran_id": "TXN-1700000000000-abc123", "amount": "50.00", "val_id": "VAL-1"},
        "success",
    )

    assert outcome.result is OutcomeResult.SUCCEEDED
    assert outcome.reported_amount_cents == 5000
    assert outcome.provider_reference == "VAL-1"


@pytest.mark.parametrize("status_tag", ["fail", "cancel"])
def test_fail_and_cancel_callbacks_fail(status_tag):
    outcome = parse_gateway_callback({"tran_id": "TXN-1"}, status_tag)

    assert outcome.result is OutcomeResult.FAILED
    assert outcome.reported_amount_cents is None


def test_callback_without_tran_id_is_rejected():
    with pytest.raises(BadRequestError):
        parse_gateway_callback({"amount": "50.00"}, "success")

    with pytest.raises(BadRequestError):
        parse_gateway_callback({"tran_id": ""}, "success")


def test_unknown_callback_status_is_rejected():
    with pytest.raises(BadRequestError):
        parse_gateway_callback({"tran_id": "TXN-1"}, "refund")


@pytest.mark.parametrize("amount", ["abc", "NaN"])
def test_unparseable_amount_is_rejected(amount):
    with pytest.raises(BadRequestError):
        parse_gateway_callback({"tran_id": "TXN-1", "amount": amount, "val_id": "VAL-1"}, "success")


def test_success_callback_without_val_id_is_rejected():
    with pytest.raises(BadRequestError, match="val_id"):
        parse_gateway_callback({"tran_id": "TXN-1", "amount": "50.00"}, "success")


# ---------------------
# SSLCOMMERZ VALIDATION
# ---------------------

def validation(**overrides):
    record = {
        "status": "VALID",
        "tran_id": "TXN-1700000000000-abc123",
        "val_id": "VAL-1",
        "amount": "50.00",
        "currency": "BDT",
    }
    record.update(overrides)
    return record


@pytest.mark.parametrize("status", ["VALID", "VALIDATED"])
def test_validated_record_succeeds_with_its_own_amount(status):
    outcome = parse_gateway_validation(validation(status=status), "TXN-1700000000000-abc123")

    assert outcome.result is OutcomeResult.SUCCEEDED
    assert outcome.reported_amount_cents == 5000
    assert outcome.provider_reference == "VAL-1"


def test_invalid_validation_status_is_rejected():
    with pytest.raises(BadRequestError, match="INVALID_TRANSACTION"):
        parse_gateway_validation(
            {"status": "INVALID_TRANSACTION"},
            "TXN-1700000000000-abc123",
        )


def test_validation_for_another_transaction_is_rejected():
    with pytest.raises(BadRequestError):
        parse_gateway_validation(validation(tran_id="TXN-other"), "TXN-1700000000000-abc123")


def test_validation_without_amount_is_rejected():
    record = validation()
    del record["amount"]

    with pytest.raises(BadRequestError):
        parse_gateway_validation(record, "TXN-1700000000000-abc123")
