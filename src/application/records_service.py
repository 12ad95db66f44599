"""Read side for payment transactions and issued tickets."""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Generic, TypeVar

from sqlalchemy.orm import sessionmaker

from src.application.unit_of_work import UnitOfWork
from src.domain.access import Caller, ensure_organizer_or_admin
from src.domain.exceptions import AuthorizationError, NotFoundError, ValidationError
from src.domain.state_machine import TicketStatus, TransactionStatus
from src.infrastructure.db.models import PaymentTransaction, Ticket

logger = logging.getLogger(__name__)

T = TypeVar("T")
E = TypeVar("E", bound=Enum)

MAX_PAGE_SIZE = 100


@dataclass
class RecordPage(Generic[T]):
    items: list[T]
    total: int
    page: int
    page_size: int
    # Ticket counts per status, filled only for attendee lists.
    stats: dict[str, int] = field(default_factory=dict)

    @property
    def total_pages(self) -> int:
        return -(-self.total // self.page_size)


def _status_filter(enum_cls: type[E], raw: str | None) -> E | None:
    # "all" and blank mean no filter.
    if raw is None or raw == "" or raw == "all":
        return None
    try:
        return enum_cls(raw)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(f"Unknown status {raw!r}; expected one of: all, {allowed}")


def _paging(page: int, page_size: int) -> tuple[int, int]:
    page = max(1, page)
    page_size = max(1, min(page_size, MAX_PAGE_SIZE))
    return page, page_size


class RecordsService:

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def list_my_transactions(
        self,
        caller: Caller,
        status: str | None = None,
        page: int = 1,
        page_size: int = 10,
    ) -> RecordPage[PaymentTransaction]:
        wanted = _status_filter(TransactionStatus, status)
        page, page_size = _paging(page, page_size)

        with UnitOfWork(self._session_factory) as uow:
            items, total = uow.transactions.list_page(
                offset=(page - 1) * page_size,
                limit=page_size,
                user_id=caller.user_id,
                status=wanted,
            )

        return RecordPage(items=items, total=total, page=page, page_size=page_size)

    def get_transaction(self, caller: Caller, transaction_id: str) -> PaymentTransaction:
        with UnitOfWork(self._session_factory) as uow:
            transaction = uow.transactions.get_by_id(transaction_id)
            if not transaction:
                raise NotFoundError("Transaction not found")

            if caller.user_id != transaction.user_id and not caller.is_superadmin:
                event = uow.inventory.get_event(transaction.event_id)
                if caller.user_id != event.organizer_id:
                    raise AuthorizationError("Not authorized to view this transaction")

        return transaction

    def list_event_transactions(
        self,
        caller: Caller,
        event_id: str,
        status: str | None = None,
        page: int = 1,
        page_size: int = 10,
    ) -> RecordPage[PaymentTransaction]:
        wanted = _status_filter(TransactionStatus, status)
        page, page_size = _paging(page, page_size)

        with UnitOfWork(self._session_factory) as uow:
            event = uow.inventory.get_event(event_id)
            ensure_organizer_or_admin(caller, event.organizer_id, "view transactions for this event")
            items, total = uow.transactions.list_page(
                offset=(page - 1) * page_size,
                limit=page_size,
                event_id=event_id,
                status=wanted,
            )

        return RecordPage(items=items, total=total, page=page, page_size=page_size)

    def list_event_tickets(
        self,
        caller: Caller,
        event_id: str,
        status: str | None = None,
        tier: str | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> RecordPage[Ticket]:
        """The organizer's attendee list, with per-status counts for the whole event."""
        wanted = _status_filter(TicketStatus, status)
        page, page_size = _paging(page, page_size)
        if tier == "all":
            tier = None

        with UnitOfWork(self._session_factory) as uow:
            event = uow.inventory.get_event(event_id)
            ensure_organizer_or_admin(caller, event.organizer_id, "view tickets for this event")
            items, total = uow.tickets.list_for_event(
                event_id,
                offset=(page - 1) * page_size,
                limit=page_size,
                status=wanted,
                tier=tier or None,
            )
            counts = uow.tickets.count_by_status(event_id)

        stats = {member.value: counts.get(member, 0) for member in TicketStatus}
        stats["total"] = sum(counts.values())
        return RecordPage(items=items, total=total, page=page, page_size=page_size, stats=stats)

    def get_ticket(self, caller: Caller, ticket_id: str) -> Ticket:
        with UnitOfWork(self._session_factory) as uow:
            ticket = uow.tickets.get_by_id(ticket_id)
            if ticket is not None and caller.user_id != ticket.user_id and not caller.is_superadmin:
                event = uow.inventory.get_event(ticket.event_id)
                if caller.user_id != event.organizer_id:
                    # Reported exactly like a missing ticket.
                    logger.info("Ticket lookup denied. ticket_id=%s user_id=%s", ticket_id, caller.user_id)
                    ticket = None

        if ticket is None:
            raise NotFoundError("Ticket not found or access denied")
        return ticket
