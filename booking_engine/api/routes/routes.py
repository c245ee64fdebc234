import logging

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from booking_engine.api.dependencies import (
    get_db,
    get_payment_service,
    get_stripe_gateway,
)
from booking_engine.api.schemas.schemas import (
    BookingCreate,
    BookingResponse,
    EventCreate,
    EventResponse,
    PaymentInitiateRequest,
    PaymentInitiateResponse,
    PaymentListResponse,
    PaymentListSortBy,
    PaymentResponse,
    PaymentStatusUpdate,
    RecomputeResponse,
    ReconciliationResponse,
    SortOrder,
    StatusChangeResponse,
)
from booking_engine.application.booking_service import BookingService
from booking_engine.application.event_status_service import EventStatusService
from booking_engine.application.payment_admin_service import PaymentAdminService
from booking_engine.application.payment_service import (
    CustomerInfo,
    PaymentService,
    ReconciliationResult,
)
from booking_engine.domain.exceptions import (
    BadGatewayError,
    BadRequestError,
    PaymentProviderError,
)
from booking_engine.domain.state_machine import PaymentStatus
from booking_engine.infrastructure.payments.stripe_gateway import StripeGateway


router = APIRouter()
logger = logging.getLogger(__name__)


def _reconciliation_response(result: ReconciliationResult | None) -> ReconciliationResponse:
    if result is None:
        return ReconciliationResponse(message="Event ignored")

    messages = {
        "COMPLETED": "Payment successful!",
        "FAILED": "Payment failed!",
        "ALREADY_RECONCILED": "Payment already processed",
        "PENDING": "Payment not settled yet",
    }
    return ReconciliationResponse(
        message=messages[result.outcome.value],
        outcome=result.outcome,
        transaction_id=result.payment.transaction_id,
        payment_status=result.payment.status,
        booking=BookingResponse.model_validate(result.booking),
    )


@router.get("/health")
def health():
    return {"message": "Event Booking Payment Engine is running"}


# -----------------------------
# Events & bookings
# -----------------------------
@router.post("/events", response_model=EventResponse, status_code=status.HTTP_201_CREATED)
def create_event(request: EventCreate, db: Session = Depends(get_db)):
    event = BookingService(db).create_event(
        host_id=request.host_id,
        title=request.title,
        date=request.date,
        fee_cents=request.fee_cents,
        currency=request.currency,
        min_participants=request.min_participants,
        max_participants=request.max_participants,
    )
    return EventResponse.model_validate(event)


@router.get("/events/{event_id}", response_model=EventResponse)
def get_event(event_id: str, db: Session = Depends(get_db)):
    return EventResponse.model_validate(BookingService(db).get_event(event_id))


@router.post(
    "/events/{event_id}/bookings",
    response_model=BookingResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_booking(event_id: str, request: BookingCreate, db: Session = Depends(get_db)):
    booking = BookingService(db).create_booking(user_id=request.user_id, event_id=event_id)
    return BookingResponse.model_validate(booking)


@router.get("/bookings/{booking_id}", response_model=BookingResponse)
def get_booking(booking_id: str, db: Session = Depends(get_db)):
    return BookingResponse.model_validate(BookingService(db).get_booking(booking_id))


# -----------------------------
# Payments
# -----------------------------
@router.post(
    "/payments",
    response_model=PaymentInitiateResponse,
    status_code=status.HTTP_201_CREATED,
)
def initiate_payment(
    request: PaymentInitiateRequest,
    service: PaymentService = Depends(get_payment_service),
):
    result = service.initiate(
        booking_id=request.booking_id,
        flow=request.flow,
        customer=CustomerInfo(
            name=request.customer_name,
            email=request.customer_email,
            phone=request.customer_phone,
            address=request.customer_address,
        ),
        success_url=request.success_url,
        cancel_url=request.cancel_url,
        product_name=request.product_name,
    )
    return PaymentInitiateResponse(
        transaction_id=result.transaction_id,
        payment_id=result.payment_id,
        provider_handle=result.provider_handle,
        client_secret=result.client_secret,
        payment_url=result.redirect_url,
    )


@router.get("/payments", response_model=PaymentListResponse)
def list_payments(
    event_id: str | None = None,
    user_id: str | None = None,
    payment_status: PaymentStatus | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1),
    sort_by: PaymentListSortBy = "created_at",
    sort_order: SortOrder = "desc",
    db: Session = Depends(get_db),
):
    result = PaymentAdminService(db).list_payments(
        event_id=event_id,
        user_id=user_id,
        status=payment_status,
        page=page,
        limit=limit,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return PaymentListResponse(
        meta=result["meta"],
        data=[PaymentResponse.model_validate(item) for item in result["data"]],
    )


@router.get("/payments/{payment_id}", response_model=PaymentResponse)
def get_payment(payment_id: str, db: Session = Depends(get_db)):
    return PaymentResponse.model_validate(PaymentAdminService(db).get_payment(payment_id))


@router.patch("/payments/{payment_id}/status", response_model=PaymentResponse)
def update_payment_status(
    payment_id: str,
    request: PaymentStatusUpdate,
    db: Session = Depends(get_db),
):
    payment = PaymentAdminService(db).update_payment_status(payment_id, request.payment_status)
    return PaymentResponse.model_validate(payment)


@router.delete("/payments/{payment_id}", response_model=PaymentResponse)
def delete_payment(payment_id: str, db: Session = Depends(get_db)):
    payment = PaymentAdminService(db).delete_payment(payment_id)
    return PaymentResponse.model_validate(payment)


# -----------------------------
# Provider callbacks
# -----------------------------
@router.post("/payments/stripe/webhook", response_model=ReconciliationResponse)
async def stripe_webhook(
    request: Request,
    gateway: StripeGateway = Depends(get_stripe_gateway),
    service: PaymentService = Depends(get_payment_service),
):
    payload = await request.body()
    signature = request.headers.get("Stripe-Signature")

    try:
        event = gateway.verify_webhook(payload, signature)
    except ValueError as exc:
        logger.warning("Rejected Stripe webhook: %s", exc)
        raise BadRequestError("Invalid webhook signature") from exc
    except PaymentProviderError as exc:
        raise BadGatewayError(str(exc)) from exc

    result = await run_in_threadpool(service.reconcile_stripe_event, event)
    return _reconciliation_response(result)


@router.get("/payments/stripe/checkout/success", response_model=ReconciliationResponse)
def stripe_checkout_success(
    session_id: str,
    service: PaymentService = Depends(get_payment_service),
):
    return _reconciliation_response(service.reconcile_checkout_session(session_id))


@router.get(
    "/payments/stripe/intents/{intent_id}/reconcile",
    response_model=ReconciliationResponse,
)
def stripe_intent_reconcile(
    intent_id: str,
    service: PaymentService = Depends(get_payment_service),
):
    return _reconciliation_response(service.reconcile_payment_intent(intent_id))


@router.api_route(
    "/payments/sslcommerz/{status_tag}",
    methods=["GET", "POST"],
    response_model=ReconciliationResponse,
)
async def sslcommerz_callback(
    status_tag: str,
    request: Request,
    service: PaymentService = Depends(get_payment_service),
):
    # SSLCommerz posts form data; redirects from tests/tools may use the query string.
    params = dict(request.query_params)
    if request.method == "POST":
        form = await request.form()
        params.update({key: str(value) for key, value in form.items()})

    result = await run_in_threadpool(service.reconcile_gateway_callback, params, status_tag)
    return _reconciliation_response(result)


# -----------------------------
# Event lifecycle
# -----------------------------
@router.post("/admin/events/recompute-status", response_model=RecomputeResponse)
def recompute_event_statuses(db: Session = Depends(get_db)):
    summary = EventStatusService(db).recompute_event_statuses()
    return RecomputeResponse(
        scanned=summary.scanned,
        changes=[
            StatusChangeResponse(
                event_id=change.event_id,
                old_status=change.old_status,
                new_status=change.new_status,
            )
            for change in summary.changes
        ],
        failed=summary.failed,
    )
