import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.orm import sessionmaker

from src.application.unit_of_work import UnitOfWork
from src.config import Settings
from src.domain.clock import event_has_passed, utc_now
from src.domain.pricing import requests_from_lines
from src.domain.state_machine import BookingStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SweepReport:
    expired_bookings: int
    expired_tickets: int


class ExpiryService:
    """
    Periodic clean-up. Abandoned checkouts give their reservation back;
    tickets for events that are over stop being valid. Payment
    transactions are left alone: only the reconciler settles them.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        settings: Settings,
        clock: Callable[[], datetime] = utc_now,
        batch_size: int = 200,
    ):
        self._session_factory = session_factory
        self._settings = settings
        self._clock = clock
        self._batch_size = batch_size

    def run(self) -> SweepReport:
        return SweepReport(
            expired_bookings=self.expire_pending_bookings(),
            expired_tickets=self.expire_tickets(),
        )

    def expire_pending_bookings(self) -> int:
        now = self._clock()
        cutoff = now - timedelta(minutes=self._settings.pending_booking_ttl_minutes)

        with UnitOfWork(self._session_factory) as uow:
            stale = uow.bookings.list_stale_pending(cutoff, self._batch_size)
            candidates = [(b.id, b.event_id, list(b.ticket_details)) for b in stale]

        expired = 0
        for booking_id, event_id, lines in candidates:
            with UnitOfWork(self._session_factory) as uow:
                if not uow.bookings.transition(
                    booking_id,
                    BookingStatus.PENDING,
                    BookingStatus.EXPIRED,
                    updated_at=now,
                ):
                    continue
                if uow.bookings.drop_hold(booking_id):
                    uow.inventory.release(event_id, requests_from_lines(lines))
                uow.commit()
            expired += 1
            logger.info("Expired pending booking. booking_id=%s", booking_id)

        if expired:
            logger.info("Pending booking sweep done. expired=%s", expired)
        return expired

    def expire_tickets(self) -> int:
        now = self._clock()

        with UnitOfWork(self._session_factory) as uow:
            started = uow.inventory.list_events_started_before(now)
            finished = [
                event.id
                for event in started
                if event_has_passed(event.starts_at, event.ends_at, now)
            ]
            count = uow.tickets.expire_for_events(finished)
            uow.commit()

        if count:
            logger.info("Expired tickets for finished events. tickets=%s events=%s", count, len(finished))
        return count
