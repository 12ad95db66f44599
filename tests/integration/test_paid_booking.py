import pytest

from src.domain.exceptions import (
    AuthorizationError,
    ConflictError,
    GatewayError,
    InsufficientInventoryError,
)
from src.domain.state_machine import (
    BookingStatus,
    PaymentStatus,
    TransactionStatus,
)
from src.domain.validation import TicketRequest
from conftest import BUYER, OTHER_BUYER, settle_and_verify, sign, charge_event


def test_paid_booking_reserves_and_initializes_payment(store, booking_service, gateway, publisher):
    event_id = store.create_event(tiers=(("Regular", 5000, 10),))

    result = booking_service.book_event(BUYER, event_id, [TicketRequest("Regular", 2)])

    assert result.requires_payment
    booking = store.booking(result.booking.id)
    assert booking.status is BookingStatus.PENDING
    assert booking.payment_status is PaymentStatus.PENDING
    assert booking.subtotal == 10000
    assert booking.service_fee == 300
    assert booking.total_amount == 10300
    assert booking.inventory_held
    assert booking.order_number.startswith("ORD-")

    transaction = store.transaction(result.transaction.reference)
    assert transaction.status is TransactionStatus.PENDING
    assert transaction.amount == 10300
    assert transaction.provider == "paystack"
    assert transaction.authorization_url == f"https://checkout.test/{transaction.reference}"
    assert result.authorization_url == transaction.authorization_url

    [call] = gateway.initialized
    assert call["amount"] == 10300
    assert call["email"] == BUYER.email
    assert call["currency"] == "NGN"
    assert call["callback_url"] == f"http://frontend.test/bookings/{booking.id}/payment/verify"
    assert call["metadata"]["booking_id"] == booking.id

    assert store.remaining(event_id, "Regular") == 8
    assert store.tickets(booking.id) == []
    assert publisher.event_types() == []


def test_gateway_failure_leaves_reservation_for_retry(store, booking_service, gateway, history_service):
    event_id = store.create_event(tiers=(("Regular", 5000, 10),))
    gateway.initialize_error = GatewayError("Payment gateway unreachable")

    with pytest.raises(GatewayError):
        booking_service.book_event(BUYER, event_id, [TicketRequest("Regular", 2)])

    [purchase] = history_service.list_purchases(BUYER).items
    booking = store.booking(purchase.id)
    assert booking.status is BookingStatus.PENDING
    assert booking.payment_status is PaymentStatus.PENDING
    assert store.remaining(event_id, "Regular") == 8

    [transaction] = store.transactions(booking.id)
    assert transaction.status is TransactionStatus.PENDING
    assert transaction.authorization_url is None


def test_pay_again_after_unacknowledged_initialize(store, booking_service, gateway, history_service):
    event_id = store.create_event(tiers=(("Regular", 5000, 10),))
    gateway.initialize_error = GatewayError("Payment gateway unreachable")
    with pytest.raises(GatewayError):
        booking_service.book_event(BUYER, event_id, [TicketRequest("Regular", 2)])
    gateway.initialize_error = None
    booking_id = history_service.list_purchases(BUYER).items[0].id
    [first] = store.transactions(booking_id)

    # The gateway still reports the first attempt as in flight.
    with pytest.raises(ConflictError, match="still being processed"):
        booking_service.pay_again(BUYER, booking_id)

    gateway.settle(first.reference, first.amount, success=False)
    result = booking_service.pay_again(BUYER, booking_id)

    assert result.transaction.reference != first.reference
    assert result.authorization_url == f"https://checkout.test/{result.transaction.reference}"
    assert store.transaction(first.reference).status is TransactionStatus.FAILED
    assert store.booking(booking_id).payment_status is PaymentStatus.PENDING
    assert store.booking(booking_id).inventory_held
    assert store.remaining(event_id, "Regular") == 8


def test_pay_again_reuses_pending_authorization(store, booking_service, gateway):
    event_id = store.create_event()
    result = booking_service.book_event(BUYER, event_id, [TicketRequest("Regular", 1)])

    again = booking_service.pay_again(BUYER, result.booking.id)

    assert again.transaction.reference == result.transaction.reference
    assert again.authorization_url == result.authorization_url
    assert len(gateway.initialized) == 1


def test_pay_again_is_for_the_buyer_and_unpaid_bookings_only(store, booking_service, gateway, reconciler):
    event_id = store.create_event()
    result = booking_service.book_event(BUYER, event_id, [TicketRequest("Regular", 1)])

    with pytest.raises(AuthorizationError):
        booking_service.pay_again(OTHER_BUYER, result.booking.id)

    settle_and_verify(gateway, reconciler, result)

    with pytest.raises(ConflictError):
        booking_service.pay_again(BUYER, result.booking.id)


def test_last_vip_seat_returns_to_stock_when_payment_fails(store, booking_service, reconciler):
    event_id = store.create_event(tiers=(("Regular", 5000, 10), ("VIP", 25000, 1)))

    booking_a = booking_service.book_event(BUYER, event_id, [TicketRequest("VIP", 1)])
    assert store.remaining(event_id, "VIP") == 0

    with pytest.raises(InsufficientInventoryError):
        booking_service.book_event(OTHER_BUYER, event_id, [TicketRequest("VIP", 1)])

    outcome = reconciler.handle_webhook(
        *sign(charge_event(booking_a.transaction.reference, booking_a.transaction.amount, success=False))
    )

    assert outcome == "processed"
    assert store.remaining(event_id, "VIP") == 1
    failed = store.booking(booking_a.booking.id)
    assert failed.status is BookingStatus.PENDING
    assert failed.payment_status is PaymentStatus.FAILED
    assert not failed.inventory_held

    booking_b = booking_service.book_event(OTHER_BUYER, event_id, [TicketRequest("VIP", 1)])

    assert booking_b.booking.status is BookingStatus.PENDING
    assert store.remaining(event_id, "VIP") == 0

    # A cannot retry now that B holds the seat, and nothing about A changes.
    with pytest.raises(InsufficientInventoryError):
        booking_service.pay_again(BUYER, booking_a.booking.id)
    assert len(store.transactions(booking_a.booking.id)) == 1
    assert store.booking(booking_a.booking.id).payment_status is PaymentStatus.FAILED


def test_pay_again_after_failed_payment_reserves_again(store, booking_service, gateway, reconciler, clock):
    event_id = store.create_event(tiers=(("VIP", 25000, 1),))
    first = booking_service.book_event(BUYER, event_id, [TicketRequest("VIP", 1)])
    settle_and_verify(gateway, reconciler, first, success=False)
    assert store.remaining(event_id, "VIP") == 1
    clock.advance(seconds=5)

    retry = booking_service.pay_again(BUYER, first.booking.id)

    assert store.remaining(event_id, "VIP") == 0
    assert [t.status for t in store.transactions(first.booking.id)] == [
        TransactionStatus.FAILED,
        TransactionStatus.PENDING,
    ]

    confirmed = settle_and_verify(gateway, reconciler, retry)

    assert confirmed.booking_status is BookingStatus.CONFIRMED
    assert confirmed.ticket_count == 1
    assert store.remaining(event_id, "VIP") == 0
