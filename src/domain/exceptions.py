class TicketingError(Exception):
    """
    Base exception for all domain-level errors
    inside the ticketing engine.
    """


class ValidationError(TicketingError):
    """Raised when a booking request is malformed or incomplete."""


class NotFoundError(TicketingError):
    """Raised when a referenced event, booking, ticket or transaction is missing."""


class InvalidStateTransitionError(TicketingError):
    """
    Raised when an illegal state transition is attempted.
    """

    def __init__(self, from_state: str, to_state: str):
        self.from_state = from_state
        self.to_state = to_state

        message = (
            f"Illegal state transition attempted: "
            f"{from_state} -> {to_state}"
        )
        super().__init__(message)


class InsufficientInventoryError(TicketingError):
    """Raised when one or more tiers cannot cover the requested quantity."""

    def __init__(self, violations: list[str]):
        self.violations = list(violations)
        super().__init__(", ".join(self.violations) or "Insufficient inventory")


class AuthorizationError(TicketingError):
    """Raised when the caller lacks rights over a booking or event."""


class ConflictError(TicketingError):
    """Raised when an operation collides with the current state of a record."""


class GatewayError(TicketingError):
    """Raised when the external payment gateway call fails."""


class GatewayTimeoutError(GatewayError):
    """Raised when the gateway did not answer in time; the outcome is unknown."""


class UnknownReferenceError(TicketingError):
    """Raised when no payment transaction exists for a reference."""

    def __init__(self, reference: str):
        self.reference = reference
        super().__init__(f"No transaction found for reference {reference}")


class WebhookSignatureError(TicketingError):
    """Raised when a webhook signature does not match the shared secret."""
