"""Administrative payment operations: listing, lookup, manual overrides."""

from datetime import datetime, timezone
from typing import Callable
import logging

from sqlalchemy.orm import Session

from booking_engine.application.settlement import PaymentSettlement
from booking_engine.domain.exceptions import ConflictError, NotFoundError
from booking_engine.domain.state_machine import (
    BookingStatus,
    ManualPaymentStateMachine,
    PaymentStatus,
)
from booking_engine.infrastructure.db.models import Payment
from booking_engine.infrastructure.repositories.booking_repository import BookingRepository
from booking_engine.infrastructure.repositories.payment_repository import PaymentRepository


logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PaymentAdminService:
    def __init__(self, db: Session, clock: Callable[[], datetime] = _utc_now):
        self.db = db
        self.clock = clock
        self.payment_repository = PaymentRepository(db)
        self.booking_repository = BookingRepository(db)
        self.settlement = PaymentSettlement(db)

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
    ) -> dict:
        page = max(1, page)
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        payments, total = self.payment_repository.list_payments(
            event_id=event_id,
            user_id=user_id,
            status=status,
            page=page,
            limit=limit,
            sort_by=sort_by,
            sort_order=sort_order,
        )
        return {
            "meta": {"page": page, "limit": limit, "total": total},
            "data": payments,
        }

    def get_payment(self, payment_id: str) -> Payment:
        payment = self.payment_repository.get_by_id(payment_id)
        if not payment:
            raise NotFoundError("Payment not found!")
        return payment

    def update_payment_status(self, payment_id: str, new_status: PaymentStatus) -> Payment:
        """
        Operator override. Keeps the booking consistent with the payment
        the same way automatic reconciliation does.
        """
        payment = self.payment_repository.get_by_id(payment_id, for_update=True)
        if not payment:
            raise NotFoundError("Payment not found!")

        if payment.status == new_status:
            return payment

        ManualPaymentStateMachine.validate_transition(payment.status, new_status)
        open_attempts = []
        if new_status == PaymentStatus.REFUNDED:
            # Payments before booking, the order reconciliation locks in.
            open_attempts = self.payment_repository.list_pending_for_booking(
                payment.booking_id,
                for_update=True,
            )
        booking = self.booking_repository.get_by_id(payment.booking_id, for_update=True)

        if new_status == PaymentStatus.COMPLETED:
            self.settlement.complete(payment, booking, self.clock())
        elif new_status == PaymentStatus.FAILED:
            self.settlement.fail(payment, booking)
        elif new_status == PaymentStatus.REFUNDED:
            self.settlement.refund(payment, booking, open_attempts)

        self.db.flush()
        logger.info(
            "Payment %s manually set to %s (booking %s is %s)",
            payment.transaction_id,
            new_status.value,
            booking.id,
            booking.status.value,
        )
        return payment

    def delete_payment(self, payment_id: str) -> Payment:
        payment = self.payment_repository.get_by_id(payment_id, for_update=True)
        if not payment:
            raise NotFoundError("Payment not found!")

        booking = self.booking_repository.get_by_id(payment.booking_id)
        if payment.status == PaymentStatus.COMPLETED and booking and booking.status == BookingStatus.CONFIRMED:
            raise ConflictError("Cannot delete a completed payment of a confirmed booking")

        self.payment_repository.delete(payment)
        self.db.flush()
        logger.info("Payment %s deleted", payment.transaction_id)
        return payment
