from datetime import datetime, timezone
from typing import Callable
import logging

from sqlalchemy.orm import Session

from booking_engine.application.settlement import PaymentSettlement
from booking_engine.domain.event_lifecycle import compute_event_status, is_bookable, as_utc
from booking_engine.domain.exceptions import BadRequestError, ConflictError, NotFoundError
from booking_engine.domain.state_machine import PaymentMethod
from booking_engine.domain.transaction_ids import TransactionPrefix, generate_transaction_id
from booking_engine.infrastructure.db.models import Booking, Event
from booking_engine.infrastructure.repositories.booking_repository import BookingRepository
from booking_engine.infrastructure.repositories.event_repository import EventRepository
from booking_engine.infrastructure.repositories.payment_repository import PaymentRepository


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class BookingService:
    """Application service for hosting events and enrolling users."""

    def __init__(self, db: Session, clock: Callable[[], datetime] = _utc_now):
        self.db = db
        self.clock = clock
        self.booking_repository = BookingRepository(db)
        self.event_repository = EventRepository(db)
        self.payment_repository = PaymentRepository(db)
        self.settlement = PaymentSettlement(db)

    def create_event(
        self,
        host_id: str,
        title: str,
        date: datetime,
        fee_cents: int,
        max_participants: int,
        min_participants: int = 0,
        currency: str = "usd",
    ) -> Event:
        if min_participants > max_participants:
            raise BadRequestError("min_participants cannot exceed max_participants")

        status = compute_event_status(
            now=self.clock(),
            date=date,
            fee_cents=fee_cents,
            current_participants=0,
            min_participants=min_participants,
            max_participants=max_participants,
        )
        event = self.event_repository.add(
            Event(
                host_id=host_id,
                title=title,
                date=as_utc(date),
                fee_cents=fee_cents,
                currency=currency.lower(),
                min_participants=min_participants,
                max_participants=max_participants,
                current_participants=0,
                status=status,
            )
        )
        self.db.flush()
        logger.info("Event %s created by host %s with status %s", event.id, host_id, status.value)
        return event

    def get_event(self, event_id: str) -> Event:
        event = self.event_repository.get_by_id(event_id)
        if not event:
            raise NotFoundError("Event not found")
        return event

    def get_booking(self, booking_id: str) -> Booking:
        booking = self.booking_repository.get_by_id(booking_id)
        if not booking:
            raise NotFoundError("Booking not found")
        return booking

    def create_booking(self, user_id: str, event_id: str) -> Booking:
        event = self.event_repository.get_by_id(event_id, for_update=True)
        if not event:
            raise NotFoundError("Event not found")

        now = self.clock()
        if (
            not is_bookable(event.status)
            or as_utc(event.date) < now
            or event.current_participants >= event.max_participants
        ):
            raise ConflictError(f"Event is not open for booking (status {event.status.value})")

        if self.booking_repository.get_active_for_user(user_id, event_id):
            raise ConflictError("User already has a booking for this event")

        booking = self.booking_repository.create_booking(user_id=user_id, event_id=event_id)
        self.db.flush()

        if event.fee_cents == 0:
            # Free events settle immediately through a zero-amount payment record.
            payment = self.payment_repository.create_payment(
                booking_id=booking.id,
                transaction_id=generate_transaction_id(TransactionPrefix.FREE, booking.id, now),
                amount_cents=0,
                currency=event.currency,
                payment_method=PaymentMethod.FREE,
            )
            self.settlement.complete(payment, booking, now)
            self.db.flush()
            logger.info("Free booking %s confirmed for event %s", booking.id, event_id)
        else:
            logger.info("Booking %s created for event %s awaiting payment", booking.id, event_id)

        return booking
