import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from sqlalchemy.orm import sessionmaker

from src.application.notifications import Notification, NotificationDispatcher
from src.application.unit_of_work import UnitOfWork
from src.domain.access import Caller, ensure_organizer_or_admin
from src.domain.clock import event_has_passed, utc_now
from src.domain.exceptions import ConflictError, NotFoundError
from src.domain.state_machine import TicketStatus
from src.infrastructure.db.models import Ticket

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckInLocation:
    latitude: float | None = None
    longitude: float | None = None
    address: str | None = None


class CheckInService:

    def __init__(
        self,
        session_factory: sessionmaker,
        dispatcher: NotificationDispatcher,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._session_factory = session_factory
        self._dispatcher = dispatcher
        self._clock = clock

    def check_in(
        self,
        caller: Caller,
        event_id: str,
        ticket_id: str,
        location: CheckInLocation | None = None,
    ) -> Ticket:
        """
        confirmed -> used. A second scan of the same ticket fails
        loudly rather than passing quietly.
        """
        location = location or CheckInLocation()
        now = self._clock()

        with UnitOfWork(self._session_factory) as uow:
            event = uow.inventory.get_event(event_id)
            ensure_organizer_or_admin(caller, event.organizer_id, "check in tickets for this event")

            ticket = uow.tickets.get_by_id(ticket_id)
            if not ticket:
                raise NotFoundError("Ticket not found")
            if ticket.event_id != event.id:
                raise ConflictError("Ticket does not belong to this event")
            if event_has_passed(event.starts_at, event.ends_at, now):
                raise ConflictError("Event has already ended")
            if ticket.status is not TicketStatus.CONFIRMED:
                raise ConflictError(f"Ticket is {ticket.status.value}, cannot check in")

            if not uow.tickets.check_in(
                ticket.id,
                event.id,
                checked_in_by=caller.user_id,
                checked_in_at=now,
                latitude=location.latitude,
                longitude=location.longitude,
                address=location.address,
            ):
                # Lost the race to another scan or a cancellation.
                raise ConflictError("Ticket was already checked in or cancelled")

            uow.commit()
            uow.tickets.refresh(ticket)

        logger.info(
            "Ticket checked in. ticket_id=%s event_id=%s by=%s",
            ticket.id,
            event_id,
            caller.user_id,
        )
        self._dispatcher.dispatch(
            Notification(
                event_type="ticket.checked_in",
                aggregate_type="ticket",
                aggregate_id=ticket.id,
                dedupe_key=f"ticket.checked_in:{ticket.id}",
                payload={
                    "ticket_number": ticket.ticket_number,
                    "event_id": event_id,
                    "user_id": ticket.user_id,
                    "checked_in_by": caller.user_id,
                },
            )
        )
        return ticket
