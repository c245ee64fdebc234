"""
Typed contracts for payment-provider payloads.

Every callback, webhook or lookup result is validated into a fixed
shape and reduced to a ``ProviderOutcome`` before it touches the
database. Anything that does not fit raises ``BadRequestError``.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from booking_engine.domain.exceptions import BadRequestError


class OutcomeResult(str, Enum):
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    # Provider has not settled yet (e.g. async bank debit); nothing to apply.
    PENDING = "PENDING"


@dataclass(frozen=True)
class ProviderOutcome:
    transaction_id: str
    result: OutcomeResult
    provider_reference: str | None = None
    reported_amount_cents: int | None = None
    raw: dict = field(default_factory=dict)


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore")


class StripeMetadata(_Payload):
    transactionId: str | None = None
    bookingId: str | None = None


class CheckoutSessionPayload(_Payload):
    id: str
    status: str | None = None
    payment_status: str
    payment_intent: str | None = None
    metadata: StripeMetadata | None = None


class PaymentIntentPayload(_Payload):
    id: str
    status: str
    metadata: StripeMetadata | None = None


class StripeEventData(_Payload):
    object: dict[str, Any]


class StripeEventPayload(_Payload):
    id: str
    type: str
    data: StripeEventData


class GatewayCallbackPayload(_Payload):
    tran_id: str = Field(min_length=1)
    amount: str | None = None
    val_id: str | None = None


class GatewayValidationPayload(_Payload):
    status: str
    tran_id: str | None = None
    val_id: str | None = None
    amount: str | None = None


CHECKOUT_SUCCESS_EVENTS = {
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
}
CHECKOUT_FAILURE_EVENTS = {
    "checkout.session.expired",
    "checkout.session.async_payment_failed",
}
INTENT_SUCCESS_EVENTS = {"payment_intent.succeeded"}
INTENT_FAILURE_EVENTS = {
    "payment_intent.payment_failed",
    "payment_intent.canceled",
}
HANDLED_STRIPE_EVENTS = (
    CHECKOUT_SUCCESS_EVENTS
    | CHECKOUT_FAILURE_EVENTS
    | INTENT_SUCCESS_EVENTS
    | INTENT_FAILURE_EVENTS
)

GATEWAY_STATUS_TAGS = {
    "success": OutcomeResult.SUCCEEDED,
    "fail": OutcomeResult.FAILED,
    "cancel": OutcomeResult.FAILED,
}
GATEWAY_VALID_STATUSES = {"VALID", "VALIDATED"}


def _validate(model: type[_Payload], raw: Any, what: str):
    if not isinstance(raw, dict):
        raise BadRequestError(f"Unrecognised {what} payload")
    try:
        return model.model_validate(raw)
    except ValidationError as exc:
        raise BadRequestError(f"Invalid {what} payload: {exc.error_count()} error(s)") from exc


def _require_transaction_id(metadata: StripeMetadata | None, what: str) -> str:
    if metadata is None or not metadata.transactionId:
        raise BadRequestError(f"Invalid {what} metadata: transactionId missing")
    return metadata.transactionId


def parse_checkout_session(raw: dict, event_type: str | None = None) -> ProviderOutcome:
    session = _validate(CheckoutSessionPayload, raw, "checkout session")
    transaction_id = _require_transaction_id(session.metadata, "checkout session")

    if session.payment_status == "paid":
        result = OutcomeResult.SUCCEEDED
    elif event_type in CHECKOUT_FAILURE_EVENTS or session.status == "expired":
        result = OutcomeResult.FAILED
    else:
        result = OutcomeResult.PENDING

    return ProviderOutcome(
        transaction_id=transaction_id,
        result=result,
        provider_reference=session.id,
        raw=raw,
    )


def parse_payment_intent(raw: dict) -> ProviderOutcome:
    """
    Only `succeeded` and `canceled` are final. A declined card puts the
    intent back in `requires_payment_method` and the customer may retry
    on the same intent, so `payment_failed` events stay PENDING.
    """
    intent = _validate(PaymentIntentPayload, raw, "payment intent")
    transaction_id = _require_transaction_id(intent.metadata, "payment intent")

    if intent.status == "succeeded":
        result = OutcomeResult.SUCCEEDED
    elif intent.status == "canceled":
        result = OutcomeResult.FAILED
    else:
        result = OutcomeResult.PENDING

    return ProviderOutcome(
        transaction_id=transaction_id,
        result=result,
        provider_reference=intent.id,
        raw=raw,
    )


def parse_stripe_event(raw: dict) -> ProviderOutcome | None:
    """
    Returns None for event types this service does not act on.
    """
    event = _validate(StripeEventPayload, raw, "webhook event")
    if event.type not in HANDLED_STRIPE_EVENTS:
        return None

    if event.type.startswith("checkout.session."):
        return parse_checkout_session(event.data.object, event_type=event.type)
    return parse_payment_intent(event.data.object)


def _amount_to_cents(amount: str) -> int:
    try:
        value = Decimal(amount)
    except InvalidOperation as exc:
        raise BadRequestError(f"Invalid amount: {amount!r}") from exc
    if not value.is_finite():
        raise BadRequestError(f"Invalid amount: {amount!r}")
    return int((value * 100).to_integral_value())


def parse_gateway_callback(raw: dict, status_tag: str) -> ProviderOutcome:
    if status_tag not in GATEWAY_STATUS_TAGS:
        raise BadRequestError(f"Unknown callback status: {status_tag}")

    callback = _validate(GatewayCallbackPayload, raw, "gateway callback")
    if GATEWAY_STATUS_TAGS[status_tag] is OutcomeResult.SUCCEEDED and not callback.val_id:
        raise BadRequestError("Invalid gateway callback: val_id missing")
    reported = _amount_to_cents(callback.amount) if callback.amount is not None else None

    return ProviderOutcome(
        transaction_id=callback.tran_id,
        result=GATEWAY_STATUS_TAGS[status_tag],
        provider_reference=callback.val_id,
        reported_amount_cents=reported,
        raw=raw,
    )


def parse_gateway_validation(raw: dict, transaction_id: str) -> ProviderOutcome:
    """
    Builds a success outcome from the gateway's own record of the
    payment. The browser-posted callback only tells us which record to
    look up; amount and status come from here.
    """
    validation = _validate(GatewayValidationPayload, raw, "gateway validation")
    if validation.status not in GATEWAY_VALID_STATUSES:
        raise BadRequestError(
            f"Gateway did not validate transaction {transaction_id}: {validation.status}"
        )
    if validation.tran_id != transaction_id:
        raise BadRequestError(f"Gateway validation does not belong to transaction {transaction_id}")
    if validation.amount is None:
        raise BadRequestError("Invalid gateway validation payload: amount missing")

    return ProviderOutcome(
        transaction_id=transaction_id,
        result=OutcomeResult.SUCCEEDED,
        provider_reference=validation.val_id,
        reported_amount_cents=_amount_to_cents(validation.amount),
        raw=raw,
    )
