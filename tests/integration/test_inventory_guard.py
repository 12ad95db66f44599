import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from src.application.unit_of_work import UnitOfWork
from src.domain.availability import check_availability
from src.domain.exceptions import InsufficientInventoryError
from src.domain.validation import TicketRequest
from src.infrastructure.db.models import Booking
from src.domain.access import Caller
from conftest import BUYER


def test_only_one_buyer_gets_the_last_seat(store, booking_service):
    event_id = store.create_event(tiers=(("VIP", 25000, 1),))
    buyers = [
        Caller(user_id=f"buyer-{n}", email=f"buyer{n}@example.com")
        for n in range(5)
    ]

    outcomes = []
    for buyer in buyers:
        try:
            booking_service.book_event(buyer, event_id, [TicketRequest("VIP", 1)])
            outcomes.append("booked")
        except InsufficientInventoryError:
            outcomes.append("sold out")

    assert outcomes.count("booked") == 1
    assert outcomes.count("sold out") == 4
    assert store.remaining(event_id, "VIP") == 0


def test_parallel_buyers_cannot_oversell(store, booking_service):
    event_id = store.create_event(tiers=(("Community", 0, 1),))
    buyers = [
        Caller(user_id=f"rush-{n}", email=f"rush{n}@example.com")
        for n in range(5)
    ]
    start = threading.Barrier(len(buyers))

    def attempt(buyer):
        start.wait(timeout=10)
        try:
            booking_service.book_event(buyer, event_id, [TicketRequest("Community", 1)])
            return "booked"
        except InsufficientInventoryError:
            return "sold out"

    with ThreadPoolExecutor(max_workers=len(buyers)) as pool:
        outcomes = list(pool.map(attempt, buyers))

    assert outcomes.count("booked") == 1
    assert outcomes.count("sold out") == 4
    assert store.remaining(event_id, "Community") == 0
    with store.session_factory() as session:
        assert session.query(Booking).filter(Booking.event_id == event_id).count() == 1

def test_stale_availability_read_cannot_oversell(store, session_factory):
    event_id = store.create_event(tiers=(("VIP", 25000, 1),))
    request = [TicketRequest("VIP", 1)]

    with UnitOfWork(session_factory) as first, UnitOfWork(session_factory) as second:
        # Both see one seat left before either writes.
        for uow in (first, second):
            event = uow.inventory.get_event(event_id)
            check_availability(event.title, uow.inventory.load_inventory(event), request)

        first.inventory.reserve(event_id, request)
        first.commit()

        with pytest.raises(InsufficientInventoryError):
            second.inventory.reserve(event_id, request)

    assert store.remaining(event_id, "VIP") == 0


def test_partial_reservation_is_handed_back(store, session_factory):
    event_id = store.create_event(tiers=(("Regular", 5000, 5), ("VIP", 25000, 1)))

    with UnitOfWork(session_factory) as uow:
        with pytest.raises(InsufficientInventoryError) as exc_info:
            uow.inventory.reserve(
                event_id,
                [TicketRequest("Regular", 3), TicketRequest("VIP", 2)],
            )
        uow.commit()

    assert exc_info.value.violations == ["Only 1 VIP ticket(s) available"]
    assert store.remaining(event_id, "Regular") == 5
    assert store.remaining(event_id, "VIP") == 1


def test_release_never_exceeds_capacity(store, session_factory):
    event_id = store.create_event(tiers=(("Regular", 5000, 5),))

    with UnitOfWork(session_factory) as uow:
        uow.inventory.reserve(event_id, [TicketRequest("Regular", 2)])
        uow.inventory.release(event_id, [TicketRequest("Regular", 2)])
        uow.inventory.release(event_id, [TicketRequest("Regular", 2)])
        uow.commit()

    assert store.remaining(event_id, "Regular") == 5


def test_failed_booking_leaves_no_partial_rows(store, booking_service, session_factory):
    event_id = store.create_event(tiers=(("Regular", 0, 5), ("VIP", 0, 1)))
    booking_service.book_event(BUYER, event_id, [TicketRequest("VIP", 1)])

    with pytest.raises(InsufficientInventoryError):
        booking_service.book_event(
            Caller(user_id="late", email="late@example.com"),
            event_id,
            [TicketRequest("Regular", 2), TicketRequest("VIP", 1)],
        )

    with session_factory() as session:
        assert session.query(Booking).filter(Booking.buyer_id == "late").count() == 0
    assert store.remaining(event_id, "Regular") == 5
