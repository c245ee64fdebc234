# booking_engine/infrastructure/payments/stripe_gateway.py

import json
import logging

import stripe

from booking_engine.domain.exceptions import PaymentProviderError


logger = logging.getLogger(__name__)

PROVIDER = "stripe"


def _to_plain(obj) -> dict:
    # StripeObject renders itself as JSON; round-trip to get plain dicts.
    return json.loads(str(obj))


class StripeGateway:
    """
    Thin adapter over the Stripe API.
    Returns plain dicts so callers never depend on StripeObject.
    """

    def __init__(
        self,
        secret_key: str | None,
        webhook_secret: str | None = None,
        timeout_seconds: float = 10.0,
        max_network_retries: int = 2,
    ):
        self._secret_key = secret_key
        self._webhook_secret = webhook_secret
        # Library-level retries use exponential backoff on network errors and 5xx/409.
        stripe.max_network_retries = max_network_retries
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout_seconds)

    def _api_key(self) -> str:
        if not self._secret_key:
            raise PaymentProviderError(PROVIDER, "Stripe secret key missing (STRIPE_SECRET_KEY)")
        return self._secret_key

    def create_payment_intent(self, amount_cents: int, currency: str, metadata: dict) -> dict:
        try:
            intent = stripe.PaymentIntent.create(
                amount=amount_cents,
                currency=currency,
                metadata=metadata,
                automatic_payment_methods={"enabled": True},
                api_key=self._api_key(),
            )
        except stripe.StripeError as exc:
            logger.warning("Stripe payment intent creation failed: %s", exc)
            raise PaymentProviderError(PROVIDER, str(exc)) from exc
        return _to_plain(intent)

    def create_checkout_session(
        self,
        line_items: list[dict],
        success_url: str,
        cancel_url: str,
        metadata: dict,
    ) -> dict:
        try:
            session = stripe.checkout.Session.create(
                mode="payment",
                line_items=line_items,
                success_url=success_url,
                cancel_url=cancel_url,
                metadata=metadata,
                payment_intent_data={"metadata": metadata},
                api_key=self._api_key(),
            )
        except stripe.StripeError as exc:
            logger.warning("Stripe checkout session creation failed: %s", exc)
            raise PaymentProviderError(PROVIDER, str(exc)) from exc
        return _to_plain(session)

    def retrieve_payment_intent(self, intent_id: str) -> dict:
        try:
            intent = stripe.PaymentIntent.retrieve(intent_id, api_key=self._api_key())
        except stripe.StripeError as exc:
            raise PaymentProviderError(PROVIDER, str(exc)) from exc
        return _to_plain(intent)

    def retrieve_checkout_session(self, session_id: str) -> dict:
        try:
            session = stripe.checkout.Session.retrieve(session_id, api_key=self._api_key())
        except stripe.StripeError as exc:
            raise PaymentProviderError(PROVIDER, str(exc)) from exc
        return _to_plain(session)

    def verify_webhook(self, payload: bytes, signature: str | None) -> dict:
        """
        Checks the Stripe-Signature header and returns the decoded event body.
        Raises ValueError for a bad payload or signature.
        """
        if not self._webhook_secret:
            raise PaymentProviderError(PROVIDER, "Webhook secret not configured")
        if not signature:
            raise ValueError("Missing Stripe-Signature header")
        try:
            stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        except stripe.SignatureVerificationError as exc:
            raise ValueError("Invalid webhook signature") from exc
        return json.loads(payload)
