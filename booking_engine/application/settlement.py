from datetime import datetime
import logging
from typing import Sequence

from sqlalchemy.orm import Session

from booking_engine.domain.exceptions import ConflictError
from booking_engine.domain.state_machine import (
    BookingStateMachine,
    BookingStatus,
    PaymentStatus,
)
from booking_engine.infrastructure.db.models import Booking, Payment
from booking_engine.infrastructure.repositories.booking_repository import BookingRepository
from booking_engine.infrastructure.repositories.event_repository import EventRepository


logger = logging.getLogger(__name__)


class PaymentSettlement:
    """
    Applies a payment status change to the payment, its booking and the
    event's participant count inside the caller's transaction.
    Callers validate the payment transition and commit.
    """

    def __init__(self, db: Session):
        self.db = db
        self.booking_repository = BookingRepository(db)
        self.event_repository = EventRepository(db)

    def complete(
        self,
        payment: Payment,
        booking: Booking,
        now: datetime,
        gateway_response: dict | None = None,
    ) -> None:
        payment.status = PaymentStatus.COMPLETED
        payment.paid_at = now
        if gateway_response is not None:
            payment.gateway_response = gateway_response
        self._confirm_booking(booking, payment)

    def fail(
        self,
        payment: Payment,
        booking: Booking,
        gateway_response: dict | None = None,
    ) -> None:
        payment.status = PaymentStatus.FAILED
        if gateway_response is not None:
            payment.gateway_response = gateway_response

        # A late failure from an abandoned attempt must not clobber a paid booking.
        if booking.status == BookingStatus.PENDING and booking.payment_status != PaymentStatus.COMPLETED:
            booking.payment_status = PaymentStatus.FAILED

    def refund(
        self,
        payment: Payment,
        booking: Booking,
        open_attempts: Sequence[Payment] = (),
    ) -> None:
        """
        open_attempts are the booking's other PENDING payments. The caller
        locks them before the booking, in the same order reconciliation
        takes its locks.
        """
        payment.status = PaymentStatus.REFUNDED

        if booking.status != BookingStatus.CONFIRMED:
            return

        BookingStateMachine.validate_transition(booking.status, BookingStatus.CANCELLED)
        self.booking_repository.update_status(
            booking,
            BookingStatus.CANCELLED,
            PaymentStatus.REFUNDED,
        )
        event = self.event_repository.get_by_id(booking.event_id, for_update=True)
        if event:
            self.event_repository.adjust_participants(event, -1)

        # Open attempts on a cancelled booking can no longer confirm it.
        for other in open_attempts:
            if other.id == payment.id or other.status != PaymentStatus.PENDING:
                continue
            other.status = PaymentStatus.FAILED
            logger.info(
                "Closed pending payment %s after refund of booking %s",
                other.transaction_id,
                booking.id,
            )

    def _confirm_booking(self, booking: Booking, payment: Payment) -> None:
        if booking.status == BookingStatus.CONFIRMED:
            logger.warning(
                "Booking %s already confirmed; payment %s completed as a duplicate and needs an operator refund",
                booking.id,
                payment.transaction_id,
            )
            return

        if not BookingStateMachine.can_transition(booking.status, BookingStatus.CONFIRMED):
            raise ConflictError(
                f"Booking {booking.id} is {booking.status.value} and cannot be confirmed"
            )

        self.booking_repository.update_status(
            booking,
            BookingStatus.CONFIRMED,
            PaymentStatus.COMPLETED,
        )

        event = self.event_repository.get_by_id(booking.event_id, for_update=True)
        if event is None:
            return
        self.event_repository.adjust_participants(event, 1)
        if event.current_participants > event.max_participants:
            logger.warning(
                "Event %s is over capacity (%s/%s) after confirming booking %s",
                event.id,
                event.current_participants,
                event.max_participants,
                booking.id,
            )
