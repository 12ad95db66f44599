import secrets
from datetime import datetime

from src.domain.state_machine import TicketRefundStatus, TicketStatus
from src.infrastructure.db.models import Booking, Event, Ticket

_NUMBER_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


def _random_code(length: int) -> str:
    return "".join(secrets.choice(_NUMBER_ALPHABET) for _ in range(length))


def new_ticket_number() -> str:
    return f"TKT-{_random_code(10)}"


def event_snapshot(event: Event) -> dict:
    """Frozen copy of the event details a ticket or booking was sold under."""
    return {
        "event_id": event.id,
        "title": event.title,
        "organizer_id": event.organizer_id,
        "starts_at": event.starts_at.isoformat(),
        "ends_at": event.ends_at.isoformat() if event.ends_at else None,
        "venue": event.venue,
        "city": event.city,
        "event_type": event.event_type,
        "category": event.category,
        "currency": event.currency,
    }


def issue_tickets(booking: Booking, issued_at: datetime) -> list[Ticket]:
    """One ticket per purchased unit, priced from the booking's lines."""
    tickets: list[Ticket] = []

    for line in booking.ticket_details:
        for _ in range(int(line["quantity"])):
            number = new_ticket_number()
            security_code = secrets.token_hex(4).upper()
            tickets.append(
                Ticket(
                    ticket_number=number,
                    qr_code=f"QR-{number}-{security_code}",
                    security_code=security_code,
                    booking_id=booking.id,
                    event_id=booking.event_id,
                    user_id=booking.buyer_id,
                    tier=line["tier"],
                    price=int(line["unit_price"]),
                    currency=booking.currency,
                    status=TicketStatus.CONFIRMED,
                    refund_status=TicketRefundStatus.NONE,
                    event_snapshot=dict(booking.event_snapshot),
                    created_at=issued_at,
                    updated_at=issued_at,
                )
            )

    return tickets
