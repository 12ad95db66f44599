import logging
from datetime import datetime
from enum import Enum
from typing import Callable

from sqlalchemy.orm import sessionmaker

from src.application.notifications import Notification, NotificationDispatcher
from src.application.unit_of_work import UnitOfWork
from src.domain.access import Caller, ensure_organizer_or_admin
from src.domain.clock import utc_now
from src.domain.exceptions import (
    ConflictError,
    GatewayError,
    GatewayTimeoutError,
    NotFoundError,
)
from src.domain.state_machine import RefundStatus, TransactionStatus
from src.infrastructure.db.models import PaymentTransaction
from src.infrastructure.payments.gateway import PaymentGateway

logger = logging.getLogger(__name__)


class RefundDecision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


_DECISION_EVENTS = {
    RefundDecision.APPROVE: "refund.approved",
    RefundDecision.REJECT: "refund.rejected",
}


class RefundService:
    """
    Organizer review of refund requests raised by cancellations.
    Approval hands the refund to the gateway; the transaction only
    becomes refunded once the gateway confirms it by webhook.
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

    def process_refund(
        self,
        caller: Caller,
        transaction_id: str,
        decision: RefundDecision,
        reason: str | None = None,
    ) -> PaymentTransaction:
        now = self._clock()

        with UnitOfWork(self._session_factory) as uow:
            transaction = uow.transactions.get_by_id(transaction_id)
            if not transaction:
                raise NotFoundError("Transaction not found")

            event = uow.inventory.get_event(transaction.event_id)
            ensure_organizer_or_admin(caller, event.organizer_id, "process refunds for this event")

            if transaction.status is not TransactionStatus.COMPLETED:
                raise ConflictError(f"Cannot refund a {transaction.status.value} transaction")
            if transaction.refund_status is not RefundStatus.REQUESTED:
                raise ConflictError(f"Refund is {transaction.refund_status.value}, not requested")

            target = RefundStatus.PROCESSING if decision is RefundDecision.APPROVE else RefundStatus.DENIED
            values = {"updated_at": now}
            if reason:
                values["refund_reason"] = reason[:255]
            if not uow.transactions.transition_refund(
                transaction.id,
                RefundStatus.REQUESTED,
                target,
                **values,
            ):
                raise ConflictError("Refund was already processed by another request")
            uow.commit()

        if decision is RefundDecision.APPROVE:
            try:
                self._gateway.refund(transaction.reference, transaction.refund_amount)
            except GatewayTimeoutError:
                # The gateway may have accepted it; the refund webhook settles processing.
                logger.warning(
                    "Gateway refund timed out, leaving it processing. reference=%s",
                    transaction.reference,
                )
            except GatewayError:
                logger.warning(
                    "Gateway refund failed, returning request to the queue. reference=%s",
                    transaction.reference,
                )
                with UnitOfWork(self._session_factory) as uow:
                    uow.transactions.transition_refund(
                        transaction.id,
                        RefundStatus.PROCESSING,
                        RefundStatus.REQUESTED,
                        updated_at=self._clock(),
                    )
                    uow.commit()
                raise

        with UnitOfWork(self._session_factory) as uow:
            transaction = uow.transactions.get_by_id(transaction_id)

        logger.info(
            "Refund %s. reference=%s amount=%s",
            transaction.refund_status.value,
            transaction.reference,
            transaction.refund_amount,
        )
        self._dispatcher.dispatch(
            Notification(
                event_type=_DECISION_EVENTS[decision],
                aggregate_type="transaction",
                aggregate_id=transaction.id,
                dedupe_key=f"refund.{decision.value}:{transaction.id}",
                payload={
                    "reference": transaction.reference,
                    "user_id": transaction.user_id,
                    "refund_amount": transaction.refund_amount,
                    "refund_status": transaction.refund_status.value,
                },
            )
        )
        return transaction
