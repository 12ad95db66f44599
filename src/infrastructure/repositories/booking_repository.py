# src/infrastructure/repositories/booking_repository.py

from datetime import datetime

from sqlalchemy.orm import Session
from sqlalchemy import select, update

from src.infrastructure.db.models import Booking
from src.domain.state_machine import BookingStateMachine, BookingStatus


class BookingRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(
        self,
        booking_id: str,
    ) -> Booking | None:

        stmt = select(Booking).where(Booking.id == booking_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def refresh(self, booking: Booking) -> Booking:
        self.db.refresh(booking)
        return booking

    def find_confirmed_for_buyer(
        self,
        buyer_id: str,
        event_id: str,
    ) -> Booking | None:

        stmt = (
            select(Booking)
            .where(Booking.buyer_id == buyer_id)
            .where(Booking.event_id == event_id)
            .where(Booking.status == BookingStatus.CONFIRMED)
            .limit(1)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def list_for_buyer(self, buyer_id: str) -> list[Booking]:
        stmt = (
            select(Booking)
            .where(Booking.buyer_id == buyer_id)
            .order_by(Booking.created_at.desc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_stale_pending(self, created_before: datetime, limit: int) -> list[Booking]:
        stmt = (
            select(Booking)
            .where(Booking.status == BookingStatus.PENDING)
            .where(Booking.created_at < created_before)
            .order_by(Booking.created_at)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def add(self, booking: Booking) -> Booking:
        self.db.add(booking)
        self.db.flush()
        return booking

    def transition(
        self,
        booking_id: str,
        from_status: BookingStatus,
        to_status: BookingStatus,
        **values,
    ) -> bool:
        """
        Compare-and-swap on status. Returns False when another writer
        moved the booking first.
        """
        BookingStateMachine.validate_transition(from_status, to_status)

        stmt = (
            update(Booking)
            .where(Booking.id == booking_id)
            .where(Booking.status == from_status)
            .values(status=to_status, **values)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1

    def update_fields(self, booking_id: str, **values) -> None:
        self.db.execute(
            update(Booking)
            .where(Booking.id == booking_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    def take_hold(self, booking_id: str) -> bool:
        return self._swap_hold(booking_id, held=False, to=True)

    def drop_hold(self, booking_id: str) -> bool:
        return self._swap_hold(booking_id, held=True, to=False)

    def _swap_hold(self, booking_id: str, held: bool, to: bool) -> bool:
        stmt = (
            update(Booking)
            .where(Booking.id == booking_id)
            .where(Booking.inventory_held.is_(held))
            .values(inventory_held=to)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1
