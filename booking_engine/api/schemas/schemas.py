from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from booking_engine.application.payment_service import PaymentFlow, ReconciliationOutcome
from booking_engine.config import settings
from booking_engine.domain.event_lifecycle import EventStatus
from booking_engine.domain.state_machine import (
    BookingStatus,
    PaymentMethod,
    PaymentStatus,
)


class EventCreate(BaseModel):
    host_id: str
    title: str
    date: datetime
    fee_cents: int = Field(ge=0)
    currency: str = settings.DEFAULT_CURRENCY
    min_participants: int = Field(default=0, ge=0)
    max_participants: int = Field(gt=0)


class EventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    host_id: str
    title: str
    date: datetime
    fee_cents: int
    currency: str
    min_participants: int
    max_participants: int
    current_participants: int
    status: EventStatus


class BookingCreate(BaseModel):
    user_id: str


class BookingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    event_id: str
    status: BookingStatus
    payment_status: PaymentStatus


class PaymentInitiateRequest(BaseModel):
    booking_id: str
    flow: PaymentFlow = PaymentFlow.SSLCOMMERZ
    customer_name: str | None = None
    customer_email: str | None = None
    customer_phone: str | None = None
    customer_address: str | None = None
    product_name: str | None = None
    success_url: str | None = None
    cancel_url: str | None = None


class PaymentInitiateResponse(BaseModel):
    transaction_id: str
    payment_id: str
    provider_handle: str | None = None
    client_secret: str | None = None
    payment_url: str | None = None


class PaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    booking_id: str
    transaction_id: str
    provider_reference: str | None = None
    amount_cents: int
    currency: str
    status: PaymentStatus
    payment_method: PaymentMethod
    paid_at: datetime | None = None
    created_at: datetime | None = None


class PaymentListMeta(BaseModel):
    page: int
    limit: int
    total: int


class PaymentListResponse(BaseModel):
    meta: PaymentListMeta
    data: list[PaymentResponse]


class PaymentStatusUpdate(BaseModel):
    payment_status: PaymentStatus


class ReconciliationResponse(BaseModel):
    message: str
    outcome: ReconciliationOutcome | None = None
    transaction_id: str | None = None
    payment_status: PaymentStatus | None = None
    booking: BookingResponse | None = None


class StatusChangeResponse(BaseModel):
    event_id: str
    old_status: EventStatus
    new_status: EventStatus


class RecomputeResponse(BaseModel):
    scanned: int
    changes: list[StatusChangeResponse]
    failed: list[str]


PaymentListSortBy = Literal["created_at", "amount_cents", "paid_at"]
SortOrder = Literal["asc", "desc"]
