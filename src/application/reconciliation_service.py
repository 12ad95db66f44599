import hashlib
import json
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable

from sqlalchemy.orm import sessionmaker

from src.application.notifications import Notification, NotificationDispatcher
from src.application.ticket_issuer import issue_tickets
from src.application.unit_of_work import UnitOfWork
from src.domain.clock import utc_now
from src.domain.exceptions import (
    ConflictError,
    InsufficientInventoryError,
    UnknownReferenceError,
    ValidationError,
    WebhookSignatureError,
)
from src.domain.pricing import requests_from_lines
from src.domain.state_machine import (
    BookingStatus,
    PaymentStatus,
    RefundStatus,
    TransactionStatus,
)
from src.infrastructure.db.models import Booking, PaymentTransaction
from src.infrastructure.payments.gateway import (
    PaymentGateway,
    PaymentVerification,
    VerificationStatus,
    WebhookKind,
)

logger = logging.getLogger(__name__)

_SETTLED_BY = {
    VerificationStatus.SUCCESS: TransactionStatus.COMPLETED,
    VerificationStatus.FAILED: TransactionStatus.FAILED,
}


@dataclass(frozen=True)
class ReconciliationResult:
    reference: str
    transaction_status: TransactionStatus
    booking_id: str
    booking_status: BookingStatus
    payment_status: PaymentStatus
    ticket_count: int
    # True only for the call that wrote the terminal state.
    applied: bool
    conflict: bool = False
    message: str | None = None


class ReconciliationService:
    """
    Brings a transaction, its booking and its tickets in line with the
    gateway's outcome. Client verification and webhooks both end up in
    ``apply``; the pending -> terminal compare-and-swap on the
    transaction decides which trigger does the work, every other call
    just reports what is already stored.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        gateway: PaymentGateway,
        dispatcher: NotificationDispatcher,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._session_factory = session_factory
        self._gateway = gateway
        self._dispatcher = dispatcher
        self._clock = clock

    def verify(self, reference: str) -> ReconciliationResult:
        with UnitOfWork(self._session_factory) as uow:
            transaction = uow.transactions.get_by_reference(reference)
            if transaction is None:
                raise UnknownReferenceError(reference)
            if transaction.status is not TransactionStatus.PENDING:
                return self._result(uow, transaction, applied=False)

        # Outside any transaction: a timeout propagates and the row stays pending.
        verification = self._gateway.verify(reference)
        return self.apply(verification)

    def apply(self, verification: PaymentVerification) -> ReconciliationResult:
        reference = verification.reference
        notifications: list[Notification] = []

        with UnitOfWork(self._session_factory) as uow:
            transaction = uow.transactions.get_by_reference(reference)
            if transaction is None:
                raise UnknownReferenceError(reference)

            if transaction.status is not TransactionStatus.PENDING:
                conflict = self._conflict(transaction, verification)
                return self._result(
                    uow, transaction, applied=False, conflict=conflict is not None, message=conflict
                )

            if verification.status is VerificationStatus.PENDING:
                logger.info(
                    "Gateway has not settled payment yet. reference=%s message=%s",
                    reference,
                    verification.message,
                )
                return self._result(uow, transaction, applied=False, message=verification.message)

            verification = self._check_amount(transaction, verification)

            if verification.status is VerificationStatus.SUCCESS:
                won = self._settle_success(uow, transaction, verification, notifications)
            else:
                won = self._settle_failure(uow, transaction, verification, notifications)

            if not won:
                # The other trigger settled it between our read and our write.
                uow.rollback()
                notifications.clear()
                transaction = uow.transactions.get_by_reference(reference)
                conflict = self._conflict(transaction, verification)
                return self._result(
                    uow, transaction, applied=False, conflict=conflict is not None, message=conflict
                )

            uow.commit()
            result = self._result(uow, transaction, applied=True, message=verification.message)

        for notification in notifications:
            self._dispatcher.dispatch(notification)

        return result

    def handle_webhook(self, raw_body: bytes, signature: str | None) -> str:
        """
        Returns the audit outcome: processed, duplicate, conflict,
        unknown_reference or ignored.
        """
        if not self._gateway.verify_webhook_signature(raw_body, signature):
            logger.warning("Rejected webhook with invalid signature. provider=%s", self._gateway.provider)
            raise WebhookSignatureError("Invalid webhook signature")

        try:
            payload = json.loads(raw_body)
        except ValueError as exc:
            raise ValidationError("Webhook body is not valid JSON") from exc

        notification = self._gateway.parse_webhook(payload)
        payload_hash = hashlib.sha256(raw_body).hexdigest()
        reference = notification.reference

        if not reference or notification.kind is WebhookKind.OTHER:
            logger.info(
                "Ignoring webhook event. event_type=%s reference=%s",
                notification.event_type,
                reference,
            )
            if reference:
                self._audit(reference, notification.event_type, payload_hash, "ignored")
            return "ignored"

        try:
            if notification.kind is WebhookKind.REFUND_PROCESSED:
                outcome = self._settle_refund(reference)
            elif notification.verification is None:
                outcome = "ignored"
            else:
                result = self.apply(notification.verification)
                if result.applied:
                    outcome = "processed"
                elif result.conflict:
                    outcome = "conflict"
                else:
                    outcome = "duplicate"
        except UnknownReferenceError:
            # Acknowledged anyway so the gateway stops retrying.
            logger.warning("Webhook for unknown reference. reference=%s", reference)
            outcome = "unknown_reference"

        self._audit(reference, notification.event_type, payload_hash, outcome)
        logger.info(
            "Webhook handled. event_type=%s reference=%s outcome=%s",
            notification.event_type,
            reference,
            outcome,
        )
        return outcome

    def _settle_success(
        self,
        uow: UnitOfWork,
        transaction: PaymentTransaction,
        verification: PaymentVerification,
        notifications: list[Notification],
    ) -> bool:
        now = self._clock()
        if not uow.transactions.transition(
            transaction.reference,
            TransactionStatus.PENDING,
            TransactionStatus.COMPLETED,
            paid_at=now,
            channel=verification.channel,
            gateway_response=verification.gateway_response,
            updated_at=now,
        ):
            return False

        booking = uow.bookings.get_by_id(transaction.booking_id)

        if booking.status not in (BookingStatus.PENDING, BookingStatus.EXPIRED):
            self._orphan(
                uow,
                booking,
                transaction,
                f"Booking already {booking.status.value}",
                notifications,
            )
            return True

        if not booking.inventory_held:
            try:
                uow.inventory.reserve(booking.event_id, requests_from_lines(booking.ticket_details))
            except InsufficientInventoryError as exc:
                self._orphan(uow, booking, transaction, str(exc), notifications)
                return True
            uow.bookings.take_hold(booking.id)

        tickets = issue_tickets(booking, now)
        uow.tickets.add_all(tickets)

        if not uow.bookings.transition(
            booking.id,
            booking.status,
            BookingStatus.CONFIRMED,
            payment_status=PaymentStatus.COMPLETED,
            confirmed_at=now,
            updated_at=now,
        ):
            raise ConflictError("Booking changed while confirming payment")

        uow.inventory.add_sale(booking.event_id, booking.total_tickets, booking.total_amount)

        logger.info(
            "Payment completed. reference=%s booking_id=%s tickets=%s",
            transaction.reference,
            booking.id,
            len(tickets),
        )
        notifications.append(
            Notification(
                event_type="booking.confirmed",
                aggregate_type="booking",
                aggregate_id=booking.id,
                dedupe_key=f"booking.confirmed:{booking.id}",
                payload={
                    "order_number": booking.order_number,
                    "buyer_id": booking.buyer_id,
                    "buyer_email": booking.buyer_email,
                    "event_id": booking.event_id,
                    "reference": transaction.reference,
                    "total_amount": booking.total_amount,
                    "ticket_numbers": [ticket.ticket_number for ticket in tickets],
                },
            )
        )
        return True

    def _settle_failure(
        self,
        uow: UnitOfWork,
        transaction: PaymentTransaction,
        verification: PaymentVerification,
        notifications: list[Notification],
    ) -> bool:
        now = self._clock()
        reason = verification.message or "Payment failed"
        if not uow.transactions.transition(
            transaction.reference,
            TransactionStatus.PENDING,
            TransactionStatus.FAILED,
            failed_at=now,
            failure_reason=reason[:255],
            channel=verification.channel,
            gateway_response=verification.gateway_response,
            updated_at=now,
        ):
            return False

        booking = uow.bookings.get_by_id(transaction.booking_id)

        if booking.status in (BookingStatus.PENDING, BookingStatus.EXPIRED):
            uow.bookings.update_fields(
                booking.id,
                payment_status=PaymentStatus.FAILED,
                updated_at=now,
            )
            if uow.bookings.drop_hold(booking.id):
                uow.inventory.release(booking.event_id, requests_from_lines(booking.ticket_details))

        logger.info(
            "Payment failed. reference=%s booking_id=%s reason=%s",
            transaction.reference,
            booking.id,
            reason,
        )
        notifications.append(
            Notification(
                event_type="booking.payment_failed",
                aggregate_type="booking",
                aggregate_id=booking.id,
                dedupe_key=f"booking.payment_failed:{transaction.reference}",
                payload={
                    "buyer_id": booking.buyer_id,
                    "reference": transaction.reference,
                    "reason": reason,
                },
            )
        )
        return True

    def _orphan(
        self,
        uow: UnitOfWork,
        booking: Booking,
        transaction: PaymentTransaction,
        reason: str,
        notifications: list[Notification],
    ) -> None:
        """Money arrived for seats we can no longer give: keep it on record for refund."""
        now = self._clock()
        uow.transactions.transition_refund(
            transaction.id,
            RefundStatus.NONE,
            RefundStatus.REQUESTED,
            refund_amount=transaction.amount,
            refund_reason=reason[:255],
            updated_at=now,
        )
        if booking.status in (BookingStatus.PENDING, BookingStatus.EXPIRED):
            uow.bookings.update_fields(
                booking.id,
                payment_status=PaymentStatus.REFUND_REQUESTED,
                updated_at=now,
            )

        logger.warning(
            "Orphaned payment recorded for refund. reference=%s booking_id=%s reason=%s",
            transaction.reference,
            booking.id,
            reason,
        )
        notifications.append(
            Notification(
                event_type="booking.payment_orphaned",
                aggregate_type="booking",
                aggregate_id=booking.id,
                dedupe_key=f"booking.payment_orphaned:{transaction.reference}",
                payload={
                    "buyer_id": booking.buyer_id,
                    "reference": transaction.reference,
                    "amount": transaction.amount,
                    "reason": reason,
                },
            )
        )

    def _settle_refund(self, reference: str) -> str:
        now = self._clock()
        with UnitOfWork(self._session_factory) as uow:
            transaction = uow.transactions.get_by_reference(reference)
            if transaction is None:
                raise UnknownReferenceError(reference)

            if not uow.transactions.transition(
                reference,
                TransactionStatus.COMPLETED,
                TransactionStatus.REFUNDED,
                updated_at=now,
            ):
                return "duplicate"

            if transaction.refund_status is RefundStatus.PROCESSING:
                uow.transactions.transition_refund(
                    transaction.id,
                    RefundStatus.PROCESSING,
                    RefundStatus.COMPLETED,
                )
            else:
                logger.warning(
                    "Refund processed without a pending approval. reference=%s refund_status=%s",
                    reference,
                    transaction.refund_status.value,
                )

            uow.bookings.update_fields(
                transaction.booking_id,
                payment_status=PaymentStatus.REFUNDED,
                updated_at=now,
            )
            uow.commit()

        logger.info("Refund processed. reference=%s", reference)
        self._dispatcher.dispatch(
            Notification(
                event_type="refund.processed",
                aggregate_type="booking",
                aggregate_id=transaction.booking_id,
                dedupe_key=f"refund.processed:{reference}",
                payload={
                    "reference": reference,
                    "user_id": transaction.user_id,
                    "refund_amount": transaction.refund_amount,
                },
            )
        )
        return "processed"

    def _check_amount(
        self,
        transaction: PaymentTransaction,
        verification: PaymentVerification,
    ) -> PaymentVerification:
        if (
            verification.status is VerificationStatus.SUCCESS
            and verification.amount is not None
            and verification.amount != transaction.amount
        ):
            logger.warning(
                "Gateway amount mismatch. reference=%s expected=%s got=%s",
                transaction.reference,
                transaction.amount,
                verification.amount,
            )
            return replace(verification, status=VerificationStatus.FAILED, message="amount mismatch")
        return verification

    def _conflict(
        self,
        transaction: PaymentTransaction,
        verification: PaymentVerification,
    ) -> str | None:
        """Describes a report that disagrees with the settled status, if it does."""
        reported = _SETTLED_BY.get(verification.status)
        current = transaction.status
        if current is TransactionStatus.REFUNDED:
            current = TransactionStatus.COMPLETED
        if reported is None or reported is current:
            return None

        # First terminal write wins; the late report is only recorded.
        logger.warning(
            "Ignoring conflicting payment outcome. reference=%s current=%s reported=%s",
            transaction.reference,
            transaction.status.value,
            reported.value,
        )
        return f"Transaction is already {transaction.status.value}; gateway reported {reported.value}"

    def _result(
        self,
        uow: UnitOfWork,
        transaction: PaymentTransaction,
        applied: bool,
        conflict: bool = False,
        message: str | None = None,
    ) -> ReconciliationResult:
        # Status updates bypass the identity map; reload before reporting.
        uow.transactions.refresh(transaction)
        booking = uow.bookings.refresh(uow.bookings.get_by_id(transaction.booking_id))
        tickets = uow.tickets.list_for_booking(booking.id)
        return ReconciliationResult(
            reference=transaction.reference,
            transaction_status=transaction.status,
            booking_id=booking.id,
            booking_status=booking.status,
            payment_status=booking.payment_status,
            ticket_count=len(tickets),
            applied=applied,
            conflict=conflict,
            message=message or transaction.failure_reason,
        )

    def _audit(self, reference: str, event_type: str, payload_hash: str, outcome: str) -> None:
        with UnitOfWork(self._session_factory) as uow:
            uow.transactions.record_webhook(
                provider=self._gateway.provider,
                reference=reference,
                event_type=event_type,
                payload_hash=payload_hash,
                outcome=outcome,
            )
            uow.commit()
