"""Unit of Work: one session, one commit point per workflow."""

from sqlalchemy.orm import Session, sessionmaker

from src.infrastructure.repositories.booking_repository import BookingRepository
from src.infrastructure.repositories.inventory_repository import InventoryRepository
from src.infrastructure.repositories.outbox_repository import OutboxRepository
from src.infrastructure.repositories.ticket_repository import TicketRepository
from src.infrastructure.repositories.transaction_repository import TransactionRepository


class UnitOfWork:
    """
    Every write a workflow makes goes through the repositories hanging
    off this object. Nothing is durable until ``commit()``.

    Leaving the block on an exception rolls back. Leaving it normally
    only closes the session: rows loaded or refreshed inside the block
    stay readable as detached objects, and anything left uncommitted is
    discarded when the connection goes back to the pool.
    """

    session: Session
    inventory: InventoryRepository
    bookings: BookingRepository
    tickets: TicketRepository
    transactions: TransactionRepository
    outbox: OutboxRepository

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def __enter__(self) -> "UnitOfWork":
        self.session = self._session_factory()
        self.inventory = InventoryRepository(self.session)
        self.bookings = BookingRepository(self.session)
        self.tickets = TicketRepository(self.session)
        self.transactions = TransactionRepository(self.session)
        self.outbox = OutboxRepository(self.session)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        try:
            if exc_type is not None:
                # rollback() expires loaded rows, so only on the failure path.
                self.rollback()
        finally:
            self.session.close()

    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()
