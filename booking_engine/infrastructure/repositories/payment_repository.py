# booking_engine/infrastructure/repositories/payment_repository.py

from sqlalchemy.orm import Session, joinedload
from sqlalchemy import func, select, update

from booking_engine.domain.state_machine import (
    BookingStatus,
    PaymentMethod,
    PaymentStatus,
)
from booking_engine.infrastructure.db.models import Booking, Payment


SORTABLE_COLUMNS = {
    "created_at": Payment.created_at,
    "amount_cents": Payment.amount_cents,
    "paid_at": Payment.paid_at,
}


class PaymentRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, payment_id: str, for_update: bool = False) -> Payment | None:
        stmt = select(Payment).where(Payment.id == payment_id)
        if for_update:
            stmt = stmt.with_for_update()
        return self.db.execute(stmt).scalar_one_or_none()

    def get_by_transaction_id(
        self,
        transaction_id: str,
        for_update: bool = False,
    ) -> Payment | None:
        """
        SELECT ... FOR UPDATE when for_update is set.
        Serializes concurrent reconciliation of the same transaction.
        """

        stmt = select(Payment).where(Payment.transaction_id == transaction_id)
        if for_update:
            stmt = stmt.with_for_update()
        return self.db.execute(stmt).scalar_one_or_none()

    def list_pending_for_booking(self, booking_id: str, for_update: bool = False) -> list[Payment]:
        stmt = (
            select(Payment)
            .where(Payment.booking_id == booking_id)
            .where(Payment.status == PaymentStatus.PENDING)
            .order_by(Payment.id)
        )
        if for_update:
            stmt = stmt.with_for_update()
        return list(self.db.execute(stmt).scalars().all())

    def count_bookings_with_open_payments(
        self,
        event_id: str,
        exclude_booking_id: str | None = None,
    ) -> int:
        """
        Unconfirmed bookings of the event that have a payment in flight.
        Each one may still be confirmed, so each holds a seat.
        """
        stmt = (
            select(func.count(func.distinct(Payment.booking_id)))
            .join(Booking, Booking.id == Payment.booking_id)
            .where(Booking.event_id == event_id)
            .where(Booking.status == BookingStatus.PENDING)
            .where(Payment.status == PaymentStatus.PENDING)
        )
        if exclude_booking_id is not None:
            stmt = stmt.where(Payment.booking_id != exclude_booking_id)
        return self.db.execute(stmt).scalar_one()

    def claim_pending(self, payment_id: str, new_status: PaymentStatus) -> bool:
        """
        Moves a PENDING payment to new_status in a single UPDATE.
        Returns False if another writer settled it first.
        """
        stmt = (
            update(Payment)
            .where(Payment.id == payment_id)
            .where(Payment.status == PaymentStatus.PENDING)
            .values(status=new_status)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1

    def create_payment(
        self,
        booking_id: str,
        transaction_id: str,
        amount_cents: int,
        currency: str,
        payment_method: PaymentMethod,
        status: PaymentStatus = PaymentStatus.PENDING,
    ) -> Payment:

        payment = Payment(
            booking_id=booking_id,
            transaction_id=transaction_id,
            amount_cents=amount_cents,
            currency=currency,
            payment_method=payment_method,
            status=status,
        )
        self.db.add(payment)
        return payment

    def list_payments(
        self,
        *,
        event_id: str | None = None,
        user_id: str | None = None,
        status: PaymentStatus | None = None,
        page: int = 1,
        limit: int = 10,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> tuple[list[Payment], int]:

        stmt = select(Payment).join(Booking, Payment.booking_id == Booking.id)
        if event_id:
            stmt = stmt.where(Booking.event_id == event_id)
        if user_id:
            stmt = stmt.where(Booking.user_id == user_id)
        if status:
            stmt = stmt.where(Payment.status == status)

        total = self.db.execute(
            select(func.count()).select_from(stmt.subquery())
        ).scalar_one()

        column = SORTABLE_COLUMNS.get(sort_by, Payment.created_at)
        ordering = column.asc() if sort_order == "asc" else column.desc()
        stmt = (
            stmt.options(joinedload(Payment.booking))
            .order_by(ordering, Payment.id)
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all()), total

    def delete(self, payment: Payment) -> None:
        self.db.delete(payment)
