# booking_engine/domain/state_machine.py

from enum import Enum
from typing import Dict, Set, Type

from booking_engine.domain.exceptions import InvalidStateTransitionError


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class BookingStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"


class PaymentMethod(str, Enum):
    STRIPE = "STRIPE"
    SSLCOMMERZ = "SSLCOMMERZ"
    FREE = "FREE"


class _StateMachine:
    """
    Table-driven lifecycle controller.
    Subclasses declare the status enum and the legal transitions.
    """

    status_type: Type[Enum]
    _ALLOWED_TRANSITIONS: Dict[Enum, Set[Enum]] = {}

    @classmethod
    def can_transition(cls, from_status, to_status) -> bool:
        """
        Returns True if transition is allowed.
        """
        cls._ensure_valid_status(from_status)
        cls._ensure_valid_status(to_status)

        return to_status in cls._ALLOWED_TRANSITIONS.get(from_status, set())

    @classmethod
    def validate_transition(cls, from_status, to_status) -> None:
        """
        Raises InvalidStateTransitionError if transition is illegal.
        """
        if not cls.can_transition(from_status, to_status):
            raise InvalidStateTransitionError(
                from_state=from_status.value,
                to_state=to_status.value,
            )

    @classmethod
    def is_terminal(cls, status) -> bool:
        """
        Returns True if the state is terminal (no further transitions allowed).
        """
        cls._ensure_valid_status(status)
        return len(cls._ALLOWED_TRANSITIONS.get(status, set())) == 0

    @classmethod
    def get_allowed_transitions(cls, status) -> Set[Enum]:
        cls._ensure_valid_status(status)
        return cls._ALLOWED_TRANSITIONS.get(status, set())

    @classmethod
    def _ensure_valid_status(cls, status) -> None:
        if not isinstance(status, cls.status_type):
            raise TypeError(
                f"Expected {cls.status_type.__name__}, got {type(status)}"
            )


class PaymentStateMachine(_StateMachine):
    """
    Transitions applied automatically by reconciliation.
    COMPLETED and FAILED are terminal for automation; REFUNDED is only
    reachable through an operator override.
    """

    status_type = PaymentStatus
    _ALLOWED_TRANSITIONS: Dict[PaymentStatus, Set[PaymentStatus]] = {
        PaymentStatus.PENDING: {
            PaymentStatus.COMPLETED,
            PaymentStatus.FAILED,
        },
        PaymentStatus.COMPLETED: set(),
        PaymentStatus.FAILED: set(),
        PaymentStatus.REFUNDED: set(),
    }


class ManualPaymentStateMachine(_StateMachine):
    """Transitions an administrator may apply by hand."""

    status_type = PaymentStatus
    _ALLOWED_TRANSITIONS: Dict[PaymentStatus, Set[PaymentStatus]] = {
        PaymentStatus.PENDING: {
            PaymentStatus.COMPLETED,
            PaymentStatus.FAILED,
        },
        PaymentStatus.COMPLETED: {
            PaymentStatus.REFUNDED,
        },
        PaymentStatus.FAILED: set(),
        PaymentStatus.REFUNDED: set(),
    }


class BookingStateMachine(_StateMachine):
    """
    Booking lifecycle. CONFIRMED is only left through a refund.
    """

    status_type = BookingStatus
    _ALLOWED_TRANSITIONS: Dict[BookingStatus, Set[BookingStatus]] = {
        BookingStatus.PENDING: {
            BookingStatus.CONFIRMED,
            BookingStatus.CANCELLED,
        },
        BookingStatus.CONFIRMED: {
            BookingStatus.CANCELLED,
        },
        BookingStatus.CANCELLED: set(),
    }
