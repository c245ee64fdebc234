# booking_engine/infrastructure/repositories/booking_repository.py

from sqlalchemy.orm import Session
from sqlalchemy import select

from booking_engine.infrastructure.db.models import Booking
from booking_engine.domain.state_machine import BookingStatus, PaymentStatus


class BookingRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(
        self,
        booking_id: str,
        for_update: bool = False,
    ) -> Booking | None:

        stmt = select(Booking).where(Booking.id == booking_id)
        if for_update:
            stmt = stmt.with_for_update()
        return self.db.execute(stmt).scalar_one_or_none()

    def get_active_for_user(
        self,
        user_id: str,
        event_id: str,
    ) -> Booking | None:

        stmt = (
            select(Booking)
            .where(Booking.user_id == user_id)
            .where(Booking.event_id == event_id)
            .where(Booking.status != BookingStatus.CANCELLED)
        )
        return self.db.execute(stmt).scalars().first()

    def create_booking(
        self,
        user_id: str,
        event_id: str,
    ) -> Booking:

        booking = Booking(
            user_id=user_id,
            event_id=event_id,
            status=BookingStatus.PENDING,
            payment_status=PaymentStatus.PENDING,
        )

        self.db.add(booking)
        return booking

    def update_status(
        self,
        booking: Booking,
        new_status: BookingStatus,
        payment_status: PaymentStatus,
    ) -> None:

        booking.status = new_status
        booking.payment_status = payment_status
