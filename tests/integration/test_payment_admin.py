# tests/integration/test_payment_admin.py

from datetime import timedelta

import pytest

from booking_engine.application.payment_admin_service import MAX_PAGE_SIZE, PaymentAdminService
from booking_engine.application.payment_service import PaymentFlow
from booking_engine.domain.exceptions import ConflictError, NotFoundError
from booking_engine.domain.state_machine import BookingStatus, PaymentStatus
from booking_engine.infrastructure.db.models import Booking, Event, Payment
from booking_engine.infrastructure.repositories.booking_repository import BookingRepository
from booking_engine.infrastructure.repositories.payment_repository import PaymentRepository


@pytest.fixture
def admin(db, now):
    return PaymentAdminService(db, clock=lambda: now)


def reload(db, model, pk):
    db.expire_all()
    return db.get(model, pk)


def confirmed_payment(payment_service, make_event, make_booking, **event_overrides):
    event = make_event(**event_overrides)
    booking = make_booking(event)
    initiated = payment_service.initiate(booking.id, PaymentFlow.SSLCOMMERZ)
    val_id = payment_service.sslcommerz_gateway.approve(initiated.transaction_id)
    payment_service.reconcile_gateway_callback({"tran_id": initiated.transaction_id, "val_id": val_id}, "success")
    return event, booking, initiated


# ---------------------
# LISTING
# ---------------------

def test_list_filters_and_paginates(admin, payment_service, make_event, make_booking, db):
    jazz = make_event(title="Rooftop Jazz Night")
    marathon = make_event(title="City Marathon Training Camp", fee_cents=4000)
    for user_id in ("user-1", "user-2", "user-3"):
        payment_service.initiate(make_booking(jazz, user_id=user_id).id, PaymentFlow.SSLCOMMERZ)
    payment_service.initiate(make_booking(marathon, user_id="user-1").id, PaymentFlow.SSLCOMMERZ)

    page = admin.list_payments(event_id=jazz.id, page=1, limit=2)

    assert page["meta"] == {"page": 1, "limit": 2, "total": 3}
    assert len(page["data"]) == 2

    last_page = admin.list_payments(event_id=jazz.id, page=2, limit=2)
    assert len(last_page["data"]) == 1

    by_user = admin.list_payments(user_id="user-1")
    assert by_user["meta"]["total"] == 2


def test_list_filters_by_status_and_sorts(admin, payment_service, make_event, make_booking):
    event, _, initiated = confirmed_payment(payment_service, make_event, make_booking)
    payment_service.initiate(make_booking(event, user_id="user-2").id, PaymentFlow.SSLCOMMERZ)

    completed = admin.list_payments(status=PaymentStatus.COMPLETED)
    assert [p.transaction_id for p in completed["data"]] == [initiated.transaction_id]

    ascending = admin.list_payments(sort_by="amount_cents", sort_order="asc")
    assert ascending["meta"]["total"] == 2


def test_page_size_is_capped(admin):
    result = admin.list_payments(page=0, limit=10_000)

    assert result["meta"] == {"page": 1, "limit": MAX_PAGE_SIZE, "total": 0}


def test_get_unknown_payment(admin):
    with pytest.raises(NotFoundError):
        admin.get_payment("missing")


# ---------------------
# MANUAL OVERRIDES
# ---------------------

def test_manual_completion_confirms_booking(admin, payment_service, make_event, make_booking, db):
    event = make_event(current_participants=2)
    booking = make_booking(event)
    initiated = payment_service.initiate(booking.id, PaymentFlow.SSLCOMMERZ)

    payment = admin.update_payment_status(initiated.payment_id, PaymentStatus.COMPLETED)
    db.commit()

    assert payment.status == PaymentStatus.COMPLETED
    assert payment.paid_at is not None
    assert reload(db, Booking, booking.id).status == BookingStatus.CONFIRMED
    assert db.get(Event, event.id).current_participants == 3


def test_refund_cancels_booking_and_releases_seat(admin, payment_service, make_event, make_booking, db):
    event, booking, initiated = confirmed_payment(
        payment_service, make_event, make_booking, current_participants=4
    )

    admin.update_payment_status(initiated.payment_id, PaymentStatus.REFUNDED)
    db.commit()

    booking = reload(db, Booking, booking.id)
    assert booking.status == BookingStatus.CANCELLED
    assert booking.payment_status == PaymentStatus.REFUNDED
    assert db.get(Payment, initiated.payment_id).status == PaymentStatus.REFUNDED
    assert db.get(Event, event.id).current_participants == 4


def test_refund_closes_other_open_attempts(admin, payment_service, make_event, make_booking, sslcommerz_gateway, db):
    event = make_event()
    booking = make_booking(event)
    open_attempt = payment_service.initiate(booking.id, PaymentFlow.SSLCOMMERZ)
    paid = payment_service.initiate(booking.id, PaymentFlow.SSLCOMMERZ)
    payment_service.reconcile_gateway_callback(
        {"tran_id": paid.transaction_id, "val_id": sslcommerz_gateway.approve(paid.transaction_id)},
        "success",
    )

    admin.update_payment_status(paid.payment_id, PaymentStatus.REFUNDED)
    db.commit()

    assert reload(db, Payment, open_attempt.payment_id).status == PaymentStatus.FAILED


def test_refund_locks_open_attempts_before_the_booking(admin, payment_service, make_event, make_booking, monkeypatch):
    event, booking, initiated = confirmed_payment(payment_service, make_event, make_booking)
    payment_service.initiate(booking.id, PaymentFlow.SSLCOMMERZ)
    locks = []
    list_pending = PaymentRepository.list_pending_for_booking
    get_booking = BookingRepository.get_by_id

    def record_payments(self, booking_id, for_update=False):
        locks.append(("payments", for_update))
        return list_pending(self, booking_id, for_update=for_update)

    def record_booking(self, booking_id, for_update=False):
        locks.append(("booking", for_update))
        return get_booking(self, booking_id, for_update=for_update)

    monkeypatch.setattr(PaymentRepository, "list_pending_for_booking", record_payments)
    monkeypatch.setattr(BookingRepository, "get_by_id", record_booking)

    admin.update_payment_status(initiated.payment_id, PaymentStatus.REFUNDED)

    # Same order as reconciliation: payment rows first, then the booking.
    assert locks == [("payments", True), ("booking", True)]


def test_illegal_override_is_a_conflict(admin, payment_service, make_event, make_booking):
    booking = make_booking(make_event())
    initiated = payment_service.initiate(booking.id, PaymentFlow.SSLCOMMERZ)
    admin.update_payment_status(initiated.payment_id, PaymentStatus.FAILED)

    with pytest.raises(ConflictError):
        admin.update_payment_status(initiated.payment_id, PaymentStatus.COMPLETED)


def test_same_status_override_is_a_no_op(admin, payment_service, make_event, make_booking):
    booking = make_booking(make_event())
    initiated = payment_service.initiate(booking.id, PaymentFlow.SSLCOMMERZ)

    payment = admin.update_payment_status(initiated.payment_id, PaymentStatus.PENDING)

    assert payment.status == PaymentStatus.PENDING


# ---------------------
# DELETION
# ---------------------

def test_cannot_delete_payment_backing_a_confirmed_booking(admin, payment_service, make_event, make_booking):
    _, _, initiated = confirmed_payment(payment_service, make_event, make_booking)

    with pytest.raises(ConflictError):
        admin.delete_payment(initiated.payment_id)


def test_delete_abandoned_attempt(admin, payment_service, make_event, make_booking, db, now):
    booking = make_booking(make_event(date=now + timedelta(days=2)))
    initiated = payment_service.initiate(booking.id, PaymentFlow.SSLCOMMERZ)

    admin.delete_payment(initiated.payment_id)
    db.commit()

    assert reload(db, Payment, initiated.payment_id) is None
    assert db.get(Booking, booking.id) is not None
