"""
A buyer's purchases come from two places: bookings, and standalone
tickets sold before bookings existed. Each is wrapped in its own tagged
model and ``summarize`` is the one place that flattens them.
"""

from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field
from sqlalchemy.orm import sessionmaker

from src.application.unit_of_work import UnitOfWork
from src.domain.access import Caller
from src.domain.clock import as_utc
from src.infrastructure.db.models import Booking, Ticket


class BookingPurchase(BaseModel):
    kind: Literal["booking"] = "booking"
    booking_id: str
    order_number: str
    event_id: str
    event_title: str
    status: str
    payment_status: str
    total_tickets: int
    total_amount: int
    currency: str
    ticket_numbers: list[str]
    purchased_at: datetime


class LegacyTicketPurchase(BaseModel):
    kind: Literal["legacy_ticket"] = "legacy_ticket"
    ticket_id: str
    ticket_number: str
    event_id: str
    event_title: str
    status: str
    price: int
    currency: str
    purchased_at: datetime


Purchase = Annotated[
    Union[BookingPurchase, LegacyTicketPurchase],
    Field(discriminator="kind"),
]


class PurchaseSummary(BaseModel):
    kind: Literal["booking", "legacy_ticket"]
    id: str
    reference: str
    event_id: str
    event_title: str
    status: str
    quantity: int
    amount: int
    currency: str
    purchased_at: datetime


class PurchasePage(BaseModel):
    items: list[PurchaseSummary]
    total: int
    page: int
    page_size: int


def summarize(purchase: Purchase) -> PurchaseSummary:
    if isinstance(purchase, BookingPurchase):
        return PurchaseSummary(
            kind=purchase.kind,
            id=purchase.booking_id,
            reference=purchase.order_number,
            event_id=purchase.event_id,
            event_title=purchase.event_title,
            status=purchase.status,
            quantity=purchase.total_tickets,
            amount=purchase.total_amount,
            currency=purchase.currency,
            purchased_at=purchase.purchased_at,
        )
    return PurchaseSummary(
        kind=purchase.kind,
        id=purchase.ticket_id,
        reference=purchase.ticket_number,
        event_id=purchase.event_id,
        event_title=purchase.event_title,
        status=purchase.status,
        quantity=1,
        amount=purchase.price,
        currency=purchase.currency,
        purchased_at=purchase.purchased_at,
    )


def booking_purchase(booking: Booking, tickets: list[Ticket]) -> BookingPurchase:
    return BookingPurchase(
        booking_id=booking.id,
        order_number=booking.order_number,
        event_id=booking.event_id,
        event_title=booking.event_snapshot.get("title", ""),
        status=booking.status.value,
        payment_status=booking.payment_status.value,
        total_tickets=booking.total_tickets,
        total_amount=booking.total_amount,
        currency=booking.currency,
        ticket_numbers=sorted(ticket.ticket_number for ticket in tickets),
        purchased_at=as_utc(booking.created_at),
    )


def legacy_purchase(ticket: Ticket) -> LegacyTicketPurchase:
    return LegacyTicketPurchase(
        ticket_id=ticket.id,
        ticket_number=ticket.ticket_number,
        event_id=ticket.event_id,
        event_title=(ticket.event_snapshot or {}).get("title", ""),
        status=ticket.status.value,
        price=ticket.price,
        currency=ticket.currency,
        purchased_at=as_utc(ticket.created_at),
    )


class PurchaseHistoryService:

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def list_purchases(self, caller: Caller, page: int = 1, page_size: int = 20) -> PurchasePage:
        with UnitOfWork(self._session_factory) as uow:
            bookings = uow.bookings.list_for_buyer(caller.user_id)
            tickets = uow.tickets.list_for_bookings([booking.id for booking in bookings])
            legacy = uow.tickets.list_legacy_for_user(caller.user_id)

            by_booking: dict[str, list[Ticket]] = {}
            for ticket in tickets:
                by_booking.setdefault(ticket.booking_id, []).append(ticket)

            purchases: list[Purchase] = [
                booking_purchase(booking, by_booking.get(booking.id, []))
                for booking in bookings
            ]
            purchases.extend(legacy_purchase(ticket) for ticket in legacy)

        summaries = sorted(
            (summarize(purchase) for purchase in purchases),
            key=lambda summary: summary.purchased_at,
            reverse=True,
        )
        start = (page - 1) * page_size
        return PurchasePage(
            items=summaries[start:start + page_size],
            total=len(summaries),
            page=page,
            page_size=page_size,
        )
