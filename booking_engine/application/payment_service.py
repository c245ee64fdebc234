from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Callable
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from booking_engine.application.provider_outcomes import (
    OutcomeResult,
    ProviderOutcome,
    parse_checkout_session,
    parse_gateway_callback,
    parse_gateway_validation,
    parse_payment_intent,
    parse_stripe_event,
)
from booking_engine.application.settlement import PaymentSettlement
from booking_engine.domain.exceptions import (
    BadGatewayError,
    BadRequestError,
    ConflictError,
    NotFoundError,
    PaymentProviderError,
)
from booking_engine.domain.state_machine import (
    BookingStatus,
    PaymentMethod,
    PaymentStateMachine,
    PaymentStatus,
)
from booking_engine.domain.transaction_ids import TransactionPrefix, generate_transaction_id
from booking_engine.infrastructure.db.models import Booking, Event, Payment
from booking_engine.infrastructure.payments.sslcommerz_gateway import SSLCommerzGateway
from booking_engine.infrastructure.payments.stripe_gateway import StripeGateway
from booking_engine.infrastructure.repositories.booking_repository import BookingRepository
from booking_engine.infrastructure.repositories.event_repository import EventRepository
from booking_engine.infrastructure.repositories.payment_repository import PaymentRepository


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PaymentFlow(str, Enum):
    SSLCOMMERZ = "SSLCOMMERZ"
    STRIPE_INTENT = "STRIPE_INTENT"
    STRIPE_CHECKOUT = "STRIPE_CHECKOUT"

    @property
    def prefix(self) -> TransactionPrefix:
        return {
            PaymentFlow.SSLCOMMERZ: TransactionPrefix.GATEWAY,
            PaymentFlow.STRIPE_INTENT: TransactionPrefix.STRIPE_INTENT,
            PaymentFlow.STRIPE_CHECKOUT: TransactionPrefix.STRIPE_CHECKOUT,
        }[self]

    @property
    def method(self) -> PaymentMethod:
        if self is PaymentFlow.SSLCOMMERZ:
            return PaymentMethod.SSLCOMMERZ
        return PaymentMethod.STRIPE


class ReconciliationOutcome(str, Enum):
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    ALREADY_RECONCILED = "ALREADY_RECONCILED"
    PENDING = "PENDING"


@dataclass
class CustomerInfo:
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    address: str | None = None


@dataclass
class InitiationResult:
    transaction_id: str
    payment_id: str
    provider_handle: str | None
    client_secret: str | None = None
    redirect_url: str | None = None


@dataclass
class ReconciliationResult:
    outcome: ReconciliationOutcome
    payment: Payment
    booking: Booking


def _append_query(url: str, params: dict, raw_suffix: str = "") -> str:
    parts = urlparse(url)
    query = dict(parse_qsl(parts.query))
    query.update({k: v for k, v in params.items() if v is not None})
    new_query = urlencode(query)
    # Stripe substitutes {CHECKOUT_SESSION_ID} only when the braces are not escaped.
    if raw_suffix:
        new_query = f"{new_query}&{raw_suffix}" if new_query else raw_suffix
    return urlunparse(parts._replace(query=new_query))


class PaymentService:
    """
    Payment reconciliation engine.

    ``initiate`` records a PENDING payment under a fresh transaction id and
    opens a provider session. The ``reconcile_*`` entry points resolve a
    provider handle or callback into a ``ProviderOutcome`` and hand it to
    ``reconcile``, which settles payment and booking in one transaction.
    """

    def __init__(
        self,
        db: Session,
        stripe_gateway: StripeGateway | None = None,
        sslcommerz_gateway: SSLCommerzGateway | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.db = db
        self.stripe_gateway = stripe_gateway
        self.sslcommerz_gateway = sslcommerz_gateway
        self.clock = clock
        self.booking_repository = BookingRepository(db)
        self.event_repository = EventRepository(db)
        self.payment_repository = PaymentRepository(db)
        self.settlement = PaymentSettlement(db)

    # ------------------------------------------------------------------
    # Initiation
    # ------------------------------------------------------------------

    def initiate(
        self,
        booking_id: str,
        flow: PaymentFlow,
        customer: CustomerInfo | None = None,
        success_url: str | None = None,
        cancel_url: str | None = None,
        product_name: str | None = None,
    ) -> InitiationResult:
        customer = customer or CustomerInfo()

        booking = self.booking_repository.get_by_id(booking_id, for_update=True)
        if not booking:
            raise NotFoundError("Booking not found!")
        if booking.payment_status == PaymentStatus.COMPLETED:
            raise ConflictError("Payment already completed!")
        if booking.status == BookingStatus.CANCELLED:
            raise ConflictError("Booking is cancelled")

        event = self.event_repository.get_by_id(booking.event_id, for_update=True)
        if event.fee_cents == 0:
            raise ConflictError("Event is free; no payment required")
        # Every booking with a payment in flight may still confirm, so it holds a seat.
        held = self.payment_repository.count_bookings_with_open_payments(
            event.id,
            exclude_booking_id=booking.id,
        )
        if event.current_participants + held >= event.max_participants:
            raise ConflictError("Event is full")
        if flow is PaymentFlow.STRIPE_CHECKOUT and (not success_url or not cancel_url):
            raise BadRequestError("success_url and cancel_url are required for checkout")

        transaction_id = generate_transaction_id(flow.prefix, booking.id, self.clock())
        payment = self.payment_repository.create_payment(
            booking_id=booking.id,
            transaction_id=transaction_id,
            amount_cents=event.fee_cents,
            currency=event.currency,
            payment_method=flow.method,
        )
        try:
            # The PENDING row exists before the provider ever sees the transaction id.
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise ConflictError("Duplicate transaction id, please retry") from exc

        logger.info(
            "Payment %s created for booking %s via %s",
            transaction_id,
            booking.id,
            flow.value,
        )

        try:
            result = self._open_provider_session(
                flow=flow,
                payment=payment,
                booking=booking,
                event=event,
                customer=customer,
                success_url=success_url,
                cancel_url=cancel_url,
                product_name=product_name,
            )
        except Exception as exc:
            self._mark_initiation_failed(payment, exc)
            if isinstance(exc, PaymentProviderError):
                raise BadGatewayError("Payment provider unavailable, please retry") from exc
            raise

        payment.provider_reference = result.provider_handle
        self.db.commit()
        return result

    def _open_provider_session(
        self,
        *,
        flow: PaymentFlow,
        payment: Payment,
        booking: Booking,
        event: Event,
        customer: CustomerInfo,
        success_url: str | None,
        cancel_url: str | None,
        product_name: str | None,
    ) -> InitiationResult:
        metadata = {
            "bookingId": booking.id,
            "transactionId": payment.transaction_id,
        }
        if customer.email:
            metadata["customerEmail"] = customer.email

        if flow is PaymentFlow.SSLCOMMERZ:
            gateway = self._require(self.sslcommerz_gateway, "sslcommerz")
            session = gateway.payment_init(
                {
                    "amount": f"{Decimal(payment.amount_cents) / 100:.2f}",
                    "currency": payment.currency,
                    "transaction_id": payment.transaction_id,
                    "name": customer.name,
                    "email": customer.email,
                    "phone_number": customer.phone,
                    "address": customer.address,
                    "product_name": product_name or event.title,
                }
            )
            return InitiationResult(
                transaction_id=payment.transaction_id,
                payment_id=payment.id,
                provider_handle=session.get("sessionkey"),
                redirect_url=session["GatewayPageURL"],
            )

        gateway = self._require(self.stripe_gateway, "stripe")

        if flow is PaymentFlow.STRIPE_INTENT:
            intent = gateway.create_payment_intent(
                payment.amount_cents,
                payment.currency,
                metadata,
            )
            if not intent.get("id"):
                raise PaymentProviderError("stripe", "Payment intent response without id")
            return InitiationResult(
                transaction_id=payment.transaction_id,
                payment_id=payment.id,
                provider_handle=intent["id"],
                client_secret=intent.get("client_secret"),
            )

        line_items = [
            {
                "price_data": {
                    "currency": payment.currency,
                    "product_data": {"name": product_name or event.title},
                    "unit_amount": payment.amount_cents,
                },
                "quantity": 1,
            }
        ]
        session = gateway.create_checkout_session(
            line_items,
            _append_query(
                success_url,
                {"transaction_id": payment.transaction_id},
                raw_suffix="session_id={CHECKOUT_SESSION_ID}",
            ),
            _append_query(cancel_url, {"transaction_id": payment.transaction_id}),
            metadata,
        )
        if not session.get("id"):
            raise PaymentProviderError("stripe", "Checkout session response without id")
        return InitiationResult(
            transaction_id=payment.transaction_id,
            payment_id=payment.id,
            provider_handle=session["id"],
            redirect_url=session.get("url"),
        )

    @staticmethod
    def _require(gateway, name: str):
        if gateway is None:
            raise PaymentProviderError(name, "Gateway not configured")
        return gateway

    def _mark_initiation_failed(self, payment: Payment, exc: Exception) -> None:
        self.db.rollback()
        payment.status = PaymentStatus.FAILED
        payment.gateway_response = {"error": str(exc), "stage": "initiate"}
        self.db.commit()
        logger.warning(
            "Payment %s marked FAILED: provider call failed during initiation: %s",
            payment.transaction_id,
            exc,
        )

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def reconcile(self, outcome: ProviderOutcome) -> ReconciliationResult:
        """
        Settle a provider-reported outcome. Safe to call repeatedly:
        a payment already in a terminal state is returned untouched.
        """
        payment = self.payment_repository.get_by_transaction_id(
            outcome.transaction_id,
            for_update=True,
        )
        if not payment:
            raise NotFoundError("Payment not found!")

        booking = self.booking_repository.get_by_id(payment.booking_id, for_update=True)

        if PaymentStateMachine.is_terminal(payment.status):
            logger.info(
                "Payment %s already %s; skipping duplicate callback",
                payment.transaction_id,
                payment.status.value,
            )
            self.db.rollback()
            return ReconciliationResult(ReconciliationOutcome.ALREADY_RECONCILED, payment, booking)

        if outcome.result is OutcomeResult.PENDING:
            logger.info("Payment %s not settled by provider yet", payment.transaction_id)
            self.db.rollback()
            return ReconciliationResult(ReconciliationOutcome.PENDING, payment, booking)

        if (
            outcome.reported_amount_cents is not None
            and outcome.reported_amount_cents != payment.amount_cents
        ):
            logger.warning(
                "Amount mismatch for payment %s: reported %s, expected %s",
                payment.transaction_id,
                outcome.reported_amount_cents,
                payment.amount_cents,
            )
            self.db.rollback()
            raise BadRequestError("Callback amount does not match the payment")

        if outcome.provider_reference and not payment.provider_reference:
            payment.provider_reference = outcome.provider_reference

        target = (
            PaymentStatus.COMPLETED
            if outcome.result is OutcomeResult.SUCCEEDED
            else PaymentStatus.FAILED
        )
        try:
            PaymentStateMachine.validate_transition(payment.status, target)
            # Backends that ignore FOR UPDATE still get exactly one winner here.
            if not self.payment_repository.claim_pending(payment.id, target):
                self.db.rollback()
                logger.info(
                    "Payment %s settled concurrently; skipping duplicate callback",
                    payment.transaction_id,
                )
                return ReconciliationResult(ReconciliationOutcome.ALREADY_RECONCILED, payment, booking)

            if target is PaymentStatus.COMPLETED:
                self.settlement.complete(payment, booking, self.clock(), outcome.raw)
                result = ReconciliationOutcome.COMPLETED
            else:
                self.settlement.fail(payment, booking, outcome.raw)
                result = ReconciliationOutcome.FAILED
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            "Payment %s reconciled as %s (booking %s is %s)",
            payment.transaction_id,
            result.value,
            booking.id,
            booking.status.value,
        )
        return ReconciliationResult(result, payment, booking)

    def reconcile_stripe_event(self, event: dict) -> ReconciliationResult | None:
        """Webhook entry point. Unhandled event types return None."""
        outcome = parse_stripe_event(event)
        if outcome is None:
            logger.info("Ignoring Stripe event type %s", event.get("type"))
            return None
        return self.reconcile(outcome)

    def reconcile_checkout_session(self, session_id: str) -> ReconciliationResult:
        gateway = self._gateway_or_502(self.stripe_gateway, "stripe")
        try:
            session = gateway.retrieve_checkout_session(session_id)
        except PaymentProviderError as exc:
            raise BadGatewayError("Could not retrieve checkout session") from exc
        return self.reconcile(parse_checkout_session(session))

    def reconcile_payment_intent(self, intent_id: str) -> ReconciliationResult:
        gateway = self._gateway_or_502(self.stripe_gateway, "stripe")
        try:
            intent = gateway.retrieve_payment_intent(intent_id)
        except PaymentProviderError as exc:
            raise BadGatewayError("Could not retrieve payment intent") from exc
        return self.reconcile(parse_payment_intent(intent))

    def reconcile_gateway_callback(self, params: dict, status_tag: str) -> ReconciliationResult:
        """
        The callback is posted by the customer's browser, so a success is
        only settled after the gateway confirms the `val_id` itself.
        """
        outcome = parse_gateway_callback(params, status_tag)
        if outcome.result is not OutcomeResult.SUCCEEDED:
            return self.reconcile(outcome)

        gateway = self._gateway_or_502(self.sslcommerz_gateway, "sslcommerz")
        try:
            validation = gateway.validate_transaction(outcome.provider_reference)
        except PaymentProviderError as exc:
            raise BadGatewayError("Could not validate gateway transaction") from exc

        validated = parse_gateway_validation(validation, outcome.transaction_id)
        if (
            outcome.reported_amount_cents is not None
            and outcome.reported_amount_cents != validated.reported_amount_cents
        ):
            logger.warning(
                "Callback amount for %s disagrees with the gateway record",
                outcome.transaction_id,
            )
        return self.reconcile(validated)

    @staticmethod
    def _gateway_or_502(gateway, name: str):
        if gateway is None:
            raise BadGatewayError(f"{name} gateway not configured")
        return gateway
