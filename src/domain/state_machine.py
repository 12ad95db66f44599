# src/domain/state_machine.py

from enum import Enum
from typing import ClassVar, Dict, Set

from src.domain.exceptions import InvalidStateTransitionError


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class PaymentStatus(str, Enum):
    FREE = "free"
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUND_REQUESTED = "refund-requested"
    REFUNDED = "refunded"


class TicketStatus(str, Enum):
    CONFIRMED = "confirmed"
    USED = "used"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class TicketRefundStatus(str, Enum):
    NONE = "none"
    REQUESTED = "requested"
    INELIGIBLE = "ineligible"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class RefundStatus(str, Enum):
    NONE = "none"
    REQUESTED = "requested"
    PROCESSING = "processing"
    COMPLETED = "completed"
    DENIED = "denied"


class EventStatus(str, Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    CANCELLED = "cancelled"


class StateMachine:
    """
    Central lifecycle controller for one status enum.
    Subclasses define the legal state transitions.
    """

    status_type: ClassVar[type[Enum]]
    _ALLOWED_TRANSITIONS: ClassVar[Dict[Enum, Set[Enum]]] = {}

    @classmethod
    def can_transition(cls, from_status: Enum, to_status: Enum) -> bool:
        """
        Returns True if transition is allowed.
        """
        cls._ensure_valid_status(from_status)
        cls._ensure_valid_status(to_status)

        return to_status in cls._ALLOWED_TRANSITIONS.get(from_status, set())

    @classmethod
    def validate_transition(cls, from_status: Enum, to_status: Enum) -> None:
        """
        Raises InvalidStateTransitionError if transition is illegal.
        """
        if not cls.can_transition(from_status, to_status):
            raise InvalidStateTransitionError(
                from_state=from_status.value,
                to_state=to_status.value,
            )

    @classmethod
    def is_terminal(cls, status: Enum) -> bool:
        """
        Returns True if the state is terminal (no further transitions allowed).
        """
        cls._ensure_valid_status(status)
        return len(cls._ALLOWED_TRANSITIONS.get(status, set())) == 0

    @classmethod
    def get_allowed_transitions(cls, status: Enum) -> Set[Enum]:
        cls._ensure_valid_status(status)
        return cls._ALLOWED_TRANSITIONS.get(status, set())

    @classmethod
    def _ensure_valid_status(cls, status: Enum) -> None:
        if not isinstance(status, cls.status_type):
            raise TypeError(
                f"Expected {cls.status_type.__name__}, got {type(status)}"
            )


class BookingStateMachine(StateMachine):
    status_type = BookingStatus
    _ALLOWED_TRANSITIONS = {
        BookingStatus.PENDING: {
            BookingStatus.CONFIRMED,
            BookingStatus.EXPIRED,
        },
        BookingStatus.CONFIRMED: {
            BookingStatus.CANCELLED,
        },
        BookingStatus.CANCELLED: set(),
        # A payment settling after the sweep still confirms the order.
        BookingStatus.EXPIRED: {
            BookingStatus.CONFIRMED,
        },
    }


class TicketStateMachine(StateMachine):
    status_type = TicketStatus
    _ALLOWED_TRANSITIONS = {
        TicketStatus.CONFIRMED: {
            TicketStatus.USED,
            TicketStatus.CANCELLED,
            TicketStatus.EXPIRED,
        },
        TicketStatus.USED: set(),
        TicketStatus.CANCELLED: set(),
        TicketStatus.EXPIRED: set(),
    }


class TransactionStateMachine(StateMachine):
    """
    Only the reconciler moves a transaction out of PENDING.
    COMPLETED -> REFUNDED happens when the gateway reports a processed refund.
    """

    status_type = TransactionStatus
    _ALLOWED_TRANSITIONS = {
        TransactionStatus.PENDING: {
            TransactionStatus.COMPLETED,
            TransactionStatus.FAILED,
        },
        TransactionStatus.COMPLETED: {
            TransactionStatus.REFUNDED,
        },
        TransactionStatus.FAILED: set(),
        TransactionStatus.REFUNDED: set(),
    }


class RefundStateMachine(StateMachine):
    status_type = RefundStatus
    _ALLOWED_TRANSITIONS = {
        RefundStatus.NONE: {
            RefundStatus.REQUESTED,
        },
        RefundStatus.REQUESTED: {
            RefundStatus.PROCESSING,
            RefundStatus.DENIED,
        },
        RefundStatus.PROCESSING: {
            RefundStatus.COMPLETED,
            RefundStatus.REQUESTED,
        },
        RefundStatus.COMPLETED: set(),
        RefundStatus.DENIED: set(),
    }
