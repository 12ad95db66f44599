# src/infrastructure/repositories/transaction_repository.py

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from src.domain.state_machine import (
    RefundStateMachine,
    RefundStatus,
    TransactionStateMachine,
    TransactionStatus,
)
from src.infrastructure.db.models import PaymentTransaction, PaymentWebhookEvent


class TransactionRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_reference(self, reference: str) -> PaymentTransaction | None:
        return self.db.execute(
            select(PaymentTransaction).where(PaymentTransaction.reference == reference)
        ).scalar_one_or_none()

    def get_by_id(self, transaction_id: str) -> PaymentTransaction | None:
        return self.db.execute(
            select(PaymentTransaction).where(PaymentTransaction.id == transaction_id)
        ).scalar_one_or_none()

    def refresh(self, transaction: PaymentTransaction) -> PaymentTransaction:
        self.db.refresh(transaction)
        return transaction

    def find_pending_for_booking(self, booking_id: str) -> PaymentTransaction | None:
        stmt = (
            select(PaymentTransaction)
            .where(PaymentTransaction.booking_id == booking_id)
            .where(PaymentTransaction.status == TransactionStatus.PENDING)
            .order_by(PaymentTransaction.created_at.desc())
            .limit(1)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def latest_for_booking(self, booking_id: str) -> PaymentTransaction | None:
        stmt = (
            select(PaymentTransaction)
            .where(PaymentTransaction.booking_id == booking_id)
            .order_by(PaymentTransaction.created_at.desc())
            .limit(1)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def find_completed_for_booking(self, booking_id: str) -> PaymentTransaction | None:
        stmt = (
            select(PaymentTransaction)
            .where(PaymentTransaction.booking_id == booking_id)
            .where(
                PaymentTransaction.status.in_(
                    [TransactionStatus.COMPLETED, TransactionStatus.REFUNDED]
                )
            )
            .limit(1)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def list_page(
        self,
        offset: int,
        limit: int,
        user_id: str | None = None,
        event_id: str | None = None,
        status: TransactionStatus | None = None,
    ) -> tuple[list[PaymentTransaction], int]:
        """Newest first, with the total before paging."""
        stmt = select(PaymentTransaction)
        if user_id is not None:
            stmt = stmt.where(PaymentTransaction.user_id == user_id)
        if event_id is not None:
            stmt = stmt.where(PaymentTransaction.event_id == event_id)
        if status is not None:
            stmt = stmt.where(PaymentTransaction.status == status)

        total = self.db.execute(
            select(func.count()).select_from(stmt.subquery())
        ).scalar_one()
        items = self.db.execute(
            stmt.order_by(PaymentTransaction.created_at.desc(), PaymentTransaction.reference)
            .offset(offset)
            .limit(limit)
        ).scalars().all()
        return list(items), total

    def add(self, transaction: PaymentTransaction) -> PaymentTransaction:
        self.db.add(transaction)
        self.db.flush()
        return transaction

    def set_authorization(
        self,
        transaction_id: str,
        authorization_url: str,
        access_code: str | None,
    ) -> None:
        self.db.execute(
            update(PaymentTransaction)
            .where(PaymentTransaction.id == transaction_id)
            .values(authorization_url=authorization_url, access_code=access_code)
            .execution_options(synchronize_session=False)
        )

    def transition(
        self,
        reference: str,
        from_status: TransactionStatus,
        to_status: TransactionStatus,
        **values,
    ) -> bool:
        """
        The compare-and-swap both reconciliation triggers race on:
        exactly one caller sees True per (reference, from_status).
        """
        TransactionStateMachine.validate_transition(from_status, to_status)

        stmt = (
            update(PaymentTransaction)
            .where(PaymentTransaction.reference == reference)
            .where(PaymentTransaction.status == from_status)
            .values(status=to_status, **values)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1

    def transition_refund(
        self,
        transaction_id: str,
        from_status: RefundStatus,
        to_status: RefundStatus,
        **values,
    ) -> bool:
        RefundStateMachine.validate_transition(from_status, to_status)

        stmt = (
            update(PaymentTransaction)
            .where(PaymentTransaction.id == transaction_id)
            .where(PaymentTransaction.refund_status == from_status)
            .values(refund_status=to_status, **values)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1

    def record_webhook(
        self,
        provider: str,
        reference: str,
        event_type: str,
        payload_hash: str,
        outcome: str,
    ) -> None:
        self.db.add(
            PaymentWebhookEvent(
                provider=provider,
                reference=reference,
                event_type=event_type,
                payload_hash=payload_hash,
                outcome=outcome,
            )
        )
