

class BookingEngineError(Exception):
    """
    Base exception for all domain-level errors
    inside the Event Booking Payment Engine.
    """


class NotFoundError(BookingEngineError):
    """Raised when a booking, payment or event reference does not resolve."""


class ConflictError(BookingEngineError):
    """Raised when an action is invalid given the current state."""


class BadRequestError(BookingEngineError):
    """Raised for malformed or incomplete input, including provider payloads."""


class BadGatewayError(BookingEngineError):
    """Raised when a payment provider could not be reached or refused a call."""


class InvalidStateTransitionError(ConflictError):
    """
    Raised when an illegal status transition is attempted.
    """

    def __init__(self, from_state: str, to_state: str):
        self.from_state = from_state
        self.to_state = to_state

        message = (
            f"Illegal state transition attempted: "
            f"{from_state} -> {to_state}"
        )
        super().__init__(message)


class PaymentProviderError(Exception):
    """Raised by gateway adapters when a provider call fails."""

    def __init__(self, provider: str, message: str):
        self.provider = provider
        super().__init__(f"{provider}: {message}")
