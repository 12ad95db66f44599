import pytest

from src.application.refund_service import RefundDecision
from src.domain.exceptions import (
    AuthorizationError,
    ConflictError,
    GatewayError,
    GatewayTimeoutError,
    NotFoundError,
)
from src.domain.state_machine import (
    PaymentStatus,
    RefundStatus,
    TransactionStatus,
)
from src.domain.validation import TicketRequest
from conftest import ADMIN, BUYER, ORGANIZER, settle_and_verify, sign


@pytest.fixture
def requested(store, booking_service, gateway, reconciler, cancellation_service):
    """A paid booking cancelled ten days out: 9270 waiting for review."""
    event_id = store.create_event(tiers=(("Regular", 5000, 10),))
    result = booking_service.book_event(BUYER, event_id, [TicketRequest("Regular", 2)])
    settle_and_verify(gateway, reconciler, result)
    cancellation_service.cancel_booking(BUYER, result.booking.id)
    return store.transaction(result.transaction.reference)


def _refund_processed(reference: str) -> dict:
    return {
        "event": "refund.processed",
        "data": {"transaction_reference": reference, "amount": 9270, "status": "processed"},
    }


def test_approval_sends_refund_to_gateway(requested, store, gateway, refund_service, publisher):
    transaction = refund_service.process_refund(ORGANIZER, requested.id, RefundDecision.APPROVE)

    assert transaction.refund_status is RefundStatus.PROCESSING
    assert transaction.status is TransactionStatus.COMPLETED
    assert gateway.refunds == [(requested.reference, 9270)]
    assert publisher.event_types()[-1] == "refund.approved"


def test_processed_refund_webhook_closes_the_refund(requested, store, refund_service, reconciler, publisher):
    refund_service.process_refund(ORGANIZER, requested.id, RefundDecision.APPROVE)

    outcome = reconciler.handle_webhook(*sign(_refund_processed(requested.reference)))

    assert outcome == "processed"
    transaction = store.transaction(requested.reference)
    assert transaction.status is TransactionStatus.REFUNDED
    assert transaction.refund_status is RefundStatus.COMPLETED
    assert store.booking(transaction.booking_id).payment_status is PaymentStatus.REFUNDED
    assert publisher.event_types()[-1] == "refund.processed"

    assert reconciler.handle_webhook(*sign(_refund_processed(requested.reference))) == "duplicate"


def test_rejection_never_reaches_the_gateway(requested, gateway, refund_service, publisher):
    transaction = refund_service.process_refund(
        ADMIN,
        requested.id,
        RefundDecision.REJECT,
        reason="Outside policy",
    )

    assert transaction.refund_status is RefundStatus.DENIED
    assert transaction.refund_reason == "Outside policy"
    assert gateway.refunds == []
    assert publisher.event_types()[-1] == "refund.rejected"

    with pytest.raises(ConflictError):
        refund_service.process_refund(ADMIN, requested.id, RefundDecision.APPROVE)


def test_gateway_failure_returns_request_to_the_queue(requested, store, gateway, refund_service):
    gateway.refund_error = GatewayError("Refund endpoint unavailable")

    with pytest.raises(GatewayError):
        refund_service.process_refund(ORGANIZER, requested.id, RefundDecision.APPROVE)

    assert store.transaction(requested.reference).refund_status is RefundStatus.REQUESTED

    gateway.refund_error = None
    transaction = refund_service.process_refund(ORGANIZER, requested.id, RefundDecision.APPROVE)
    assert transaction.refund_status is RefundStatus.PROCESSING


def test_timed_out_refund_is_never_sent_twice(requested, store, gateway, refund_service, reconciler):
    gateway.refund_error = GatewayTimeoutError("Refund call timed out")

    transaction = refund_service.process_refund(ORGANIZER, requested.id, RefundDecision.APPROVE)

    # Outcome unknown: the request must not go back to the review queue.
    assert transaction.refund_status is RefundStatus.PROCESSING
    assert store.transaction(requested.reference).refund_status is RefundStatus.PROCESSING

    gateway.refund_error = None
    with pytest.raises(ConflictError):
        refund_service.process_refund(ORGANIZER, requested.id, RefundDecision.APPROVE)
    assert gateway.refund_attempts == [(requested.reference, 9270)]

    assert reconciler.handle_webhook(*sign(_refund_processed(requested.reference))) == "processed"
    assert store.transaction(requested.reference).refund_status is RefundStatus.COMPLETED


def test_only_the_event_organizer_or_an_admin_decides(requested, refund_service):
    with pytest.raises(AuthorizationError):
        refund_service.process_refund(BUYER, requested.id, RefundDecision.APPROVE)


def test_nothing_to_process_without_a_request(store, booking_service, gateway, reconciler, refund_service):
    event_id = store.create_event()
    result = booking_service.book_event(BUYER, event_id, [TicketRequest("Regular", 1)])
    settle_and_verify(gateway, reconciler, result)
    transaction = store.transaction(result.transaction.reference)

    with pytest.raises(ConflictError, match="not requested"):
        refund_service.process_refund(ORGANIZER, transaction.id, RefundDecision.APPROVE)

    with pytest.raises(NotFoundError):
        refund_service.process_refund(ORGANIZER, "missing", RefundDecision.APPROVE)
