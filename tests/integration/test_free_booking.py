from datetime import timedelta

import pytest

from src.domain.access import Caller
from src.domain.exceptions import (
    ConflictError,
    InsufficientInventoryError,
    NotFoundError,
    ValidationError,
)
from src.domain.state_machine import (
    BookingStatus,
    EventStatus,
    PaymentStatus,
    TicketRefundStatus,
    TicketStatus,
)
from src.domain.validation import TicketRequest
from conftest import BUYER, OTHER_BUYER


def test_free_booking_confirms_immediately(store, booking_service, gateway, publisher):
    event_id = store.create_event(tiers=(("Community", 0, 10),))

    result = booking_service.book_event(BUYER, event_id, [TicketRequest("Community", 2)])

    booking = store.booking(result.booking.id)
    assert booking.status is BookingStatus.CONFIRMED
    assert booking.payment_status is PaymentStatus.FREE
    assert booking.total_amount == 0
    assert booking.service_fee == 0
    assert not result.requires_payment

    tickets = store.tickets(booking.id)
    assert len(tickets) == 2
    assert len({ticket.ticket_number for ticket in tickets}) == 2
    for ticket in tickets:
        assert ticket.status is TicketStatus.CONFIRMED
        assert ticket.refund_status is TicketRefundStatus.NONE
        assert ticket.qr_code.startswith(f"QR-{ticket.ticket_number}-")
        assert ticket.event_snapshot["title"] == "Afrobeats Live"
        assert ticket.user_id == BUYER.user_id

    assert store.remaining(event_id, "Community") == 8
    assert store.transactions(booking.id) == []
    assert gateway.initialized == []
    assert publisher.event_types() == ["booking.confirmed"]

    event = store.event(event_id)
    assert event.total_attendees == 2
    assert event.total_bookings == 1
    assert event.total_revenue == 0


def test_second_confirmed_booking_for_same_event_is_rejected(store, booking_service):
    event_id = store.create_event(tiers=(("Community", 0, 10),))
    booking_service.book_event(BUYER, event_id, [TicketRequest("Community", 1)])

    with pytest.raises(ConflictError):
        booking_service.book_event(BUYER, event_id, [TicketRequest("Community", 1)])

    booking_service.book_event(OTHER_BUYER, event_id, [TicketRequest("Community", 1)])
    assert store.remaining(event_id, "Community") == 8


def test_shortfall_is_rejected_without_side_effects(store, booking_service, history_service):
    event_id = store.create_event(tiers=(("Community", 0, 3), ("Backstage", 0, 1)))

    with pytest.raises(InsufficientInventoryError) as exc_info:
        booking_service.book_event(
            BUYER,
            event_id,
            [TicketRequest("Community", 2), TicketRequest("Backstage", 2)],
        )

    assert exc_info.value.violations == [
        "Only 1 Backstage ticket(s) available for Afrobeats Live",
    ]
    assert store.remaining(event_id, "Community") == 3
    assert store.remaining(event_id, "Backstage") == 1
    assert history_service.list_purchases(BUYER).total == 0


def test_invalid_request_touches_nothing(store, booking_service):
    event_id = store.create_event(tiers=(("Community", 0, 3),))

    with pytest.raises(ValidationError):
        booking_service.book_event(BUYER, event_id, [TicketRequest("Community", 0)])

    with pytest.raises(ValidationError):
        booking_service.book_event(BUYER, event_id, [])

    assert store.remaining(event_id, "Community") == 3


def test_buyer_email_is_required(store, booking_service):
    event_id = store.create_event(tiers=(("Community", 0, 3),))

    with pytest.raises(ValidationError, match="email"):
        booking_service.book_event(
            Caller(user_id="no-email"),
            event_id,
            [TicketRequest("Community", 1)],
        )


def test_only_published_future_events_can_be_booked(store, booking_service):
    draft_id = store.create_event(status=EventStatus.DRAFT)
    past_id = store.create_event(starts_in=timedelta(hours=-2))

    with pytest.raises(ConflictError, match="not open"):
        booking_service.book_event(BUYER, draft_id, [TicketRequest("Regular", 1)])

    with pytest.raises(ConflictError, match="past events"):
        booking_service.book_event(BUYER, past_id, [TicketRequest("Regular", 1)])

    with pytest.raises(NotFoundError):
        booking_service.book_event(BUYER, "missing-event", [TicketRequest("Regular", 1)])


def test_legacy_single_price_event_sells_from_event_stock(store, booking_service):
    event_id = store.create_event(tiers=(), legacy_price=0, legacy_capacity=5)

    result = booking_service.book_event(BUYER, event_id, [TicketRequest("General", 2)])

    assert result.booking.status is BookingStatus.CONFIRMED
    assert len(result.tickets) == 2
    assert store.event(event_id).available_tickets == 3
