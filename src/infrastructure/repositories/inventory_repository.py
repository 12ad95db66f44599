# src/infrastructure/repositories/inventory_repository.py

import logging
from datetime import datetime
from typing import Sequence

from sqlalchemy import case, select, update
from sqlalchemy.orm import Session

from src.domain.availability import LEGACY_TIER_NAME, TierInventory
from src.domain.exceptions import InsufficientInventoryError, NotFoundError
from src.domain.state_machine import EventStatus
from src.domain.validation import TicketRequest
from src.infrastructure.db.models import Event, TicketTier

logger = logging.getLogger(__name__)


def _floored(column, amount: int):
    return case((column - amount < 0, 0), else_=column - amount)


class InventoryRepository:
    """
    Event stock and counters. Every mutation is a relative delta
    applied by one conditional UPDATE; nothing here reads a count
    and writes it back.
    """

    def __init__(self, db: Session):
        self.db = db

    def get_event(self, event_id: str) -> Event:
        event = self.db.execute(
            select(Event).where(Event.id == event_id)
        ).scalar_one_or_none()

        if not event:
            raise NotFoundError("Event not found")

        return event

    def list_tiers(self, event_id: str) -> list[TicketTier]:
        stmt = (
            select(TicketTier)
            .where(TicketTier.event_id == event_id)
            .order_by(TicketTier.price, TicketTier.name)
        )
        return list(self.db.execute(stmt).scalars().all())

    def load_inventory(self, event: Event) -> dict[str, TierInventory]:
        tiers = self.list_tiers(event.id)

        if not tiers:
            return {
                LEGACY_TIER_NAME: TierInventory(
                    name=LEGACY_TIER_NAME,
                    price=event.price,
                    capacity=event.total_tickets,
                    remaining=event.available_tickets,
                    legacy=True,
                )
            }

        return {
            tier.name: TierInventory(
                name=tier.name,
                price=tier.price,
                capacity=tier.capacity,
                remaining=tier.remaining,
            )
            for tier in tiers
        }

    def list_events(self, organizer_id: str | None = None, published_only: bool = True) -> list[Event]:
        stmt = select(Event).order_by(Event.starts_at)
        if organizer_id:
            stmt = stmt.where(Event.organizer_id == organizer_id)
        if published_only:
            stmt = stmt.where(Event.status == EventStatus.PUBLISHED)
        return list(self.db.execute(stmt).scalars().all())

    def list_events_started_before(self, moment: datetime) -> list[Event]:
        stmt = select(Event).where(Event.starts_at < moment)
        return list(self.db.execute(stmt).scalars().all())

    def add_event(self, event: Event, tiers: Sequence[TicketTier]) -> Event:
        self.db.add(event)
        self.db.flush()
        for tier in tiers:
            tier.event_id = event.id
            self.db.add(tier)
        self.db.flush()
        return event

    def has_tiers(self, event_id: str) -> bool:
        stmt = select(TicketTier.id).where(TicketTier.event_id == event_id).limit(1)
        return self.db.execute(stmt).first() is not None

    def reserve(self, event_id: str, items: Sequence[TicketRequest]) -> None:
        """
        Conditional decrement per tier. When any tier is short, the
        tiers already taken are handed back before raising, so the
        caller's transaction is left as it was.
        """
        tiered = self.has_tiers(event_id)
        violations: list[str] = []
        taken: list[TicketRequest] = []

        for item in items:
            if tiered:
                stmt = (
                    update(TicketTier)
                    .where(TicketTier.event_id == event_id)
                    .where(TicketTier.name == item.tier)
                    .where(TicketTier.remaining >= item.quantity)
                    .values(remaining=TicketTier.remaining - item.quantity)
                    .execution_options(synchronize_session=False)
                )
            else:
                stmt = (
                    update(Event)
                    .where(Event.id == event_id)
                    .where(Event.available_tickets >= item.quantity)
                    .values(available_tickets=Event.available_tickets - item.quantity)
                    .execution_options(synchronize_session=False)
                )

            if self.db.execute(stmt).rowcount == 1:
                taken.append(item)
            else:
                violations.append(self._shortfall_message(event_id, item, tiered))

        if violations:
            if taken:
                self.release(event_id, taken)
            raise InsufficientInventoryError(violations)

        logger.info(
            "Reserved inventory. event_id=%s items=%s",
            event_id,
            [(item.tier, item.quantity) for item in items],
        )

    def release(self, event_id: str, items: Sequence[TicketRequest]) -> None:
        tiered = self.has_tiers(event_id)

        for item in items:
            if item.quantity <= 0:
                continue
            if tiered:
                stmt = (
                    update(TicketTier)
                    .where(TicketTier.event_id == event_id)
                    .where(TicketTier.name == item.tier)
                    .where(TicketTier.remaining + item.quantity <= TicketTier.capacity)
                    .values(remaining=TicketTier.remaining + item.quantity)
                    .execution_options(synchronize_session=False)
                )
            else:
                stmt = (
                    update(Event)
                    .where(Event.id == event_id)
                    .where(Event.available_tickets + item.quantity <= Event.total_tickets)
                    .values(available_tickets=Event.available_tickets + item.quantity)
                    .execution_options(synchronize_session=False)
                )

            if self.db.execute(stmt).rowcount != 1:
                logger.error(
                    "Release skipped, it would exceed capacity. event_id=%s tier=%s quantity=%s",
                    event_id,
                    item.tier,
                    item.quantity,
                )

        logger.info(
            "Released inventory. event_id=%s items=%s",
            event_id,
            [(item.tier, item.quantity) for item in items],
        )

    def add_sale(self, event_id: str, attendees: int, revenue: int) -> None:
        self.db.execute(
            update(Event)
            .where(Event.id == event_id)
            .values(
                total_attendees=Event.total_attendees + attendees,
                total_bookings=Event.total_bookings + 1,
                total_revenue=Event.total_revenue + revenue,
            )
            .execution_options(synchronize_session=False)
        )

    def remove_sale(self, event_id: str, attendees: int, revenue: int) -> None:
        self.db.execute(
            update(Event)
            .where(Event.id == event_id)
            .values(
                total_attendees=_floored(Event.total_attendees, attendees),
                total_bookings=_floored(Event.total_bookings, 1),
                total_revenue=_floored(Event.total_revenue, revenue),
            )
            .execution_options(synchronize_session=False)
        )

    def _shortfall_message(
        self,
        event_id: str,
        item: TicketRequest,
        tiered: bool,
    ) -> str:
        if not tiered:
            remaining = self.db.execute(
                select(Event.available_tickets).where(Event.id == event_id)
            ).scalar_one_or_none()
            return f"Only {remaining or 0} ticket(s) available"

        remaining = self.db.execute(
            select(TicketTier.remaining)
            .where(TicketTier.event_id == event_id)
            .where(TicketTier.name == item.tier)
        ).scalar_one_or_none()
        if remaining is None:
            return f'Ticket type "{item.tier}" not found'
        return f"Only {remaining} {item.tier} ticket(s) available"
