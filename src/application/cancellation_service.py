import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from sqlalchemy.orm import sessionmaker

from src.application.notifications import Notification, NotificationDispatcher
from src.application.unit_of_work import UnitOfWork
from src.config import Settings
from src.domain.access import Caller, ensure_buyer_or_admin
from src.domain.clock import utc_now
from src.domain.exceptions import ConflictError, NotFoundError
from src.domain.refund_policy import (
    calculate_refund_amount,
    ensure_cancellable,
    refund_percent,
)
from src.domain.state_machine import (
    BookingStatus,
    PaymentStatus,
    RefundStatus,
    TicketStatus,
    TransactionStatus,
)
from src.domain.validation import TicketRequest
from src.infrastructure.db.models import Booking, Event

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CancellationResult:
    booking: Booking
    cancelled_tickets: int
    skipped_tickets: int
    refund_percent: int
    refund_amount: int


class CancellationService:

    def __init__(
        self,
        session_factory: sessionmaker,
        dispatcher: NotificationDispatcher,
        settings: Settings,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._session_factory = session_factory
        self._dispatcher = dispatcher
        self._settings = settings
        self._ladder = settings.parsed_refund_ladder()
        self._clock = clock

    def cancel_booking(
        self,
        caller: Caller,
        booking_id: str,
        reason: str | None = None,
    ) -> CancellationResult:
        now = self._clock()

        with UnitOfWork(self._session_factory) as uow:
            booking = uow.bookings.get_by_id(booking_id)
            if not booking:
                raise NotFoundError("Booking not found")

            ensure_buyer_or_admin(caller, booking.buyer_id, "cancel")

            if booking.status is not BookingStatus.CONFIRMED:
                raise ConflictError(f"Cannot cancel a {booking.status.value} booking")

            event = uow.inventory.get_event(booking.event_id)
            hours_left = ensure_cancellable(
                event.starts_at,
                now,
                self._settings.cancellation_cutoff_hours,
            )

            # Tickets that left "confirmed" (checked in) are neither cancelled nor refunded.
            tickets = uow.tickets.list_for_booking(booking.id)
            refundable = [t for t in tickets if t.status is TicketStatus.CONFIRMED]
            if tickets and not refundable:
                raise ConflictError("Every ticket on this booking has already been used")

            if not uow.bookings.transition(
                booking.id,
                BookingStatus.CONFIRMED,
                BookingStatus.CANCELLED,
                cancelled_at=now,
                cancellation_reason=(reason or "Cancelled by user")[:255],
                updated_at=now,
            ):
                raise ConflictError("Booking was changed by another request")

            cancelled = uow.tickets.cancel_for_booking(booking.id)
            if cancelled != len(refundable):
                # A check-in landed between our read and the cancel.
                raise ConflictError("A ticket on this booking was checked in during cancellation")

            refundable_subtotal = sum(ticket.price for ticket in refundable)
            percent = refund_percent(event.refund_policy, hours_left, self._ladder)
            refund_amount = self._refund_amount(booking, refundable_subtotal, event, hours_left)

            released = Counter(ticket.tier for ticket in refundable)
            if uow.bookings.drop_hold(booking.id) and released:
                uow.inventory.release(
                    booking.event_id,
                    [TicketRequest(tier=tier, quantity=qty) for tier, qty in released.items()],
                )
            uow.inventory.remove_sale(booking.event_id, cancelled, refund_amount)

            transaction = uow.transactions.find_completed_for_booking(booking.id)
            if (
                transaction is not None
                and transaction.status is TransactionStatus.COMPLETED
                and refund_amount > 0
            ):
                uow.transactions.transition_refund(
                    transaction.id,
                    RefundStatus.NONE,
                    RefundStatus.REQUESTED,
                    refund_amount=refund_amount,
                    refund_reason=(reason or "Booking cancelled")[:255],
                    updated_at=now,
                )

            values = {"refund_amount": refund_amount, "updated_at": now}
            if refund_amount > 0:
                values["payment_status"] = PaymentStatus.REFUND_REQUESTED
            uow.bookings.update_fields(booking.id, **values)

            uow.commit()
            uow.bookings.refresh(booking)

        logger.info(
            "Booking cancelled. booking_id=%s tickets=%s skipped=%s refund=%s",
            booking.id,
            cancelled,
            len(tickets) - cancelled,
            refund_amount,
        )
        self._dispatcher.dispatch(
            Notification(
                event_type="booking.cancelled",
                aggregate_type="booking",
                aggregate_id=booking.id,
                dedupe_key=f"booking.cancelled:{booking.id}",
                payload={
                    "buyer_id": booking.buyer_id,
                    "buyer_email": booking.buyer_email,
                    "event_id": booking.event_id,
                    "refund_amount": refund_amount,
                    "refund_percent": percent,
                },
            )
        )

        return CancellationResult(
            booking=booking,
            cancelled_tickets=cancelled,
            skipped_tickets=len(tickets) - cancelled,
            refund_percent=percent,
            refund_amount=refund_amount,
        )

    def _refund_amount(
        self,
        booking: Booking,
        refundable_subtotal: int,
        event: Event,
        hours_left: float,
    ) -> int:
        if booking.payment_status is PaymentStatus.FREE or booking.subtotal <= 0:
            return 0
        # Used tickets are carved out of what was paid, fee included pro rata.
        base = booking.total_amount * refundable_subtotal // booking.subtotal
        return calculate_refund_amount(base, event.refund_policy, hours_left, self._ladder)
