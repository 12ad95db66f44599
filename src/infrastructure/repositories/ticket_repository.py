# src/infrastructure/repositories/ticket_repository.py

from datetime import datetime
from typing import Sequence

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from src.domain.state_machine import TicketRefundStatus, TicketStatus
from src.infrastructure.db.models import Ticket


class TicketRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, ticket_id: str) -> Ticket | None:
        return self.db.execute(
            select(Ticket).where(Ticket.id == ticket_id)
        ).scalar_one_or_none()

    def refresh(self, ticket: Ticket) -> Ticket:
        self.db.refresh(ticket)
        return ticket

    def list_for_booking(self, booking_id: str) -> list[Ticket]:
        stmt = (
            select(Ticket)
            .where(Ticket.booking_id == booking_id)
            .order_by(Ticket.ticket_number)
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_for_bookings(self, booking_ids: Sequence[str]) -> list[Ticket]:
        if not booking_ids:
            return []
        stmt = select(Ticket).where(Ticket.booking_id.in_(list(booking_ids)))
        return list(self.db.execute(stmt).scalars().all())

    def list_legacy_for_user(self, user_id: str) -> list[Ticket]:
        stmt = (
            select(Ticket)
            .where(Ticket.user_id == user_id)
            .where(Ticket.booking_id.is_(None))
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_for_event(
        self,
        event_id: str,
        offset: int,
        limit: int,
        status: TicketStatus | None = None,
        tier: str | None = None,
    ) -> tuple[list[Ticket], int]:
        stmt = select(Ticket).where(Ticket.event_id == event_id)
        if status is not None:
            stmt = stmt.where(Ticket.status == status)
        if tier is not None:
            stmt = stmt.where(Ticket.tier == tier)

        total = self.db.execute(
            select(func.count()).select_from(stmt.subquery())
        ).scalar_one()
        items = self.db.execute(
            stmt.order_by(Ticket.created_at.desc(), Ticket.ticket_number)
            .offset(offset)
            .limit(limit)
        ).scalars().all()
        return list(items), total

    def count_by_status(self, event_id: str) -> dict[TicketStatus, int]:
        stmt = (
            select(Ticket.status, func.count())
            .where(Ticket.event_id == event_id)
            .group_by(Ticket.status)
        )
        return {status: count for status, count in self.db.execute(stmt).all()}

    def add_all(self, tickets: Sequence[Ticket]) -> None:
        self.db.add_all(list(tickets))
        self.db.flush()

    def check_in(
        self,
        ticket_id: str,
        event_id: str,
        checked_in_by: str,
        checked_in_at: datetime,
        latitude: float | None = None,
        longitude: float | None = None,
        address: str | None = None,
    ) -> bool:
        """
        confirmed -> used, only if nobody (check-in or cancellation)
        changed the ticket first.
        """
        stmt = (
            update(Ticket)
            .where(Ticket.id == ticket_id)
            .where(Ticket.event_id == event_id)
            .where(Ticket.status == TicketStatus.CONFIRMED)
            .values(
                status=TicketStatus.USED,
                refund_status=TicketRefundStatus.INELIGIBLE,
                checked_in_by=checked_in_by,
                checked_in_at=checked_in_at,
                check_in_latitude=latitude,
                check_in_longitude=longitude,
                check_in_address=address,
            )
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1

    def cancel_for_booking(self, booking_id: str) -> int:
        stmt = (
            update(Ticket)
            .where(Ticket.booking_id == booking_id)
            .where(Ticket.status == TicketStatus.CONFIRMED)
            .values(
                status=TicketStatus.CANCELLED,
                refund_status=TicketRefundStatus.REQUESTED,
            )
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount

    def expire_for_events(self, event_ids: Sequence[str]) -> int:
        if not event_ids:
            return 0
        stmt = (
            update(Ticket)
            .where(Ticket.event_id.in_(list(event_ids)))
            .where(Ticket.status == TicketStatus.CONFIRMED)
            .values(status=TicketStatus.EXPIRED)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount
