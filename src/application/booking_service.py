import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Sequence
from uuid import uuid4

from sqlalchemy.orm import sessionmaker

from src.application.notifications import Notification, NotificationDispatcher
from src.application.reconciliation_service import ReconciliationService
from src.application.ticket_issuer import event_snapshot, issue_tickets
from src.application.unit_of_work import UnitOfWork
from src.config import Settings
from src.domain.access import Caller, ensure_buyer_or_admin
from src.domain.availability import check_availability
from src.domain.clock import as_utc, utc_now
from src.domain.exceptions import (
    ConflictError,
    GatewayError,
    NotFoundError,
    ValidationError,
)
from src.domain.pricing import calculate_totals, requests_from_lines
from src.domain.state_machine import (
    BookingStatus,
    EventStatus,
    PaymentStatus,
    TransactionStatus,
)
from src.domain.validation import TicketRequest, validate_booking_request
from src.infrastructure.db.models import Booking, Event, PaymentTransaction, Ticket
from src.infrastructure.payments.gateway import PaymentGateway

logger = logging.getLogger(__name__)


@dataclass
class BookingResult:
    booking: Booking
    tickets: list[Ticket] = field(default_factory=list)
    transaction: PaymentTransaction | None = None
    authorization_url: str | None = None
    access_code: str | None = None

    @property
    def requires_payment(self) -> bool:
        return self.transaction is not None


def new_order_number(now: datetime) -> str:
    return f"ORD-{now:%Y%m%d}-{secrets.token_hex(4).upper()}"


def new_reference() -> str:
    return f"TXN-{uuid4().hex}"


class BookingService:
    """
    Booking orchestration: validate, price, reserve and either confirm
    (free) or hand the buyer to the payment gateway (paid). Every write
    happens inside one UnitOfWork; the gateway is only called after that
    work committed.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        gateway: PaymentGateway,
        reconciler: ReconciliationService,
        dispatcher: NotificationDispatcher,
        settings: Settings,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._session_factory = session_factory
        self._gateway = gateway
        self._reconciler = reconciler
        self._dispatcher = dispatcher
        self._settings = settings
        self._clock = clock

    def book_event(
        self,
        caller: Caller,
        event_id: str,
        requests: Sequence[TicketRequest],
    ) -> BookingResult:
        items = validate_booking_request(
            requests,
            max_per_tier=self._settings.max_tickets_per_tier,
            max_per_order=self._settings.max_tickets_per_order,
        )
        if not caller.email:
            raise ValidationError("An email address is required to book tickets")

        now = self._clock()

        with UnitOfWork(self._session_factory) as uow:
            event = uow.inventory.get_event(event_id)
            self._ensure_bookable(event, now)

            if uow.bookings.find_confirmed_for_buyer(caller.user_id, event.id):
                raise ConflictError("You already have a confirmed booking for this event")

            tiers = uow.inventory.load_inventory(event)
            check_availability(event.title, tiers, items)
            totals = calculate_totals(items, tiers, self._settings.platform_fee_percent)

            booking = Booking(
                order_number=new_order_number(now),
                buyer_id=caller.user_id,
                buyer_email=caller.email,
                organizer_id=event.organizer_id,
                event_id=event.id,
                ticket_details=[line.to_dict() for line in totals.lines],
                total_tickets=totals.total_quantity,
                subtotal=totals.subtotal,
                service_fee=totals.service_fee,
                total_amount=totals.total_amount,
                currency=event.currency,
                status=BookingStatus.CONFIRMED if totals.is_free else BookingStatus.PENDING,
                payment_status=PaymentStatus.FREE if totals.is_free else PaymentStatus.PENDING,
                inventory_held=True,
                event_snapshot=event_snapshot(event),
                refund_amount=0,
                confirmed_at=now if totals.is_free else None,
                created_at=now,
                updated_at=now,
            )
            uow.bookings.add(booking)
            # The conditional decrement, not the check above, guards the stock.
            uow.inventory.reserve(event.id, items)

            if totals.is_free:
                tickets = issue_tickets(booking, now)
                uow.tickets.add_all(tickets)
                uow.inventory.add_sale(event.id, totals.total_quantity, 0)
                uow.commit()

                logger.info(
                    "Free booking confirmed. booking_id=%s event_id=%s tickets=%s",
                    booking.id,
                    event.id,
                    len(tickets),
                )
                self._dispatcher.dispatch(self._confirmed_notification(booking, tickets))
                return BookingResult(booking=booking, tickets=tickets)

            transaction = self._new_transaction(booking, now)
            uow.transactions.add(transaction)
            uow.commit()

        logger.info(
            "Paid booking reserved. booking_id=%s event_id=%s total=%s reference=%s",
            booking.id,
            booking.event_id,
            booking.total_amount,
            transaction.reference,
        )
        return self._initialize_payment(booking, transaction)

    def pay_again(self, caller: Caller, booking_id: str) -> BookingResult:
        now = self._clock()

        with UnitOfWork(self._session_factory) as uow:
            booking = self._load_booking(uow, booking_id)
            ensure_buyer_or_admin(caller, booking.buyer_id, "pay for")
            self._ensure_payable(booking)
            pending = uow.transactions.find_pending_for_booking(booking.id)

        if pending is not None:
            if pending.authorization_url:
                return BookingResult(
                    booking=booking,
                    transaction=pending,
                    authorization_url=pending.authorization_url,
                    access_code=pending.access_code,
                )
            # Initialize was never acknowledged; the gateway may still know it.
            outcome = self._reconciler.verify(pending.reference)
            if outcome.transaction_status is TransactionStatus.PENDING:
                raise ConflictError("A payment for this booking is still being processed")
            if outcome.transaction_status is not TransactionStatus.FAILED:
                raise ConflictError("This booking has already been paid")

        with UnitOfWork(self._session_factory) as uow:
            booking = self._load_booking(uow, booking_id)
            self._ensure_payable(booking)
            if uow.transactions.find_pending_for_booking(booking.id) is not None:
                raise ConflictError("A payment for this booking is already pending")

            if not booking.inventory_held:
                uow.inventory.reserve(booking.event_id, requests_from_lines(booking.ticket_details))
                uow.bookings.take_hold(booking.id)

            transaction = self._new_transaction(booking, now)
            uow.transactions.add(transaction)
            uow.bookings.update_fields(
                booking.id,
                payment_status=PaymentStatus.PENDING,
                updated_at=now,
            )
            uow.commit()
            uow.bookings.refresh(booking)

        logger.info(
            "Payment re-initialized. booking_id=%s reference=%s",
            booking.id,
            transaction.reference,
        )
        return self._initialize_payment(booking, transaction)

    def get_booking(self, caller: Caller, booking_id: str) -> BookingResult:
        with UnitOfWork(self._session_factory) as uow:
            booking = self._load_booking(uow, booking_id)
            if caller.user_id not in (booking.buyer_id, booking.organizer_id):
                ensure_buyer_or_admin(caller, booking.buyer_id, "view")
            tickets = uow.tickets.list_for_booking(booking.id)
            transaction = uow.transactions.latest_for_booking(booking.id)

        return BookingResult(
            booking=booking,
            tickets=tickets,
            transaction=transaction,
            authorization_url=transaction.authorization_url if transaction else None,
            access_code=transaction.access_code if transaction else None,
        )

    def _initialize_payment(
        self,
        booking: Booking,
        transaction: PaymentTransaction,
    ) -> BookingResult:
        try:
            initialization = self._gateway.initialize(
                email=booking.buyer_email,
                amount_minor=transaction.amount,
                reference=transaction.reference,
                metadata={
                    "booking_id": booking.id,
                    "order_number": booking.order_number,
                    "event_id": booking.event_id,
                    "user_id": booking.buyer_id,
                },
                callback_url=f"{self._settings.frontend_url}/bookings/{booking.id}/payment/verify",
                currency=transaction.currency,
            )
        except GatewayError:
            # Booking, reservation and pending transaction stay for pay-again or the webhook.
            logger.warning(
                "Payment initialization failed. booking_id=%s reference=%s",
                booking.id,
                transaction.reference,
            )
            raise

        with UnitOfWork(self._session_factory) as uow:
            uow.transactions.set_authorization(
                transaction.id,
                initialization.authorization_url,
                initialization.access_code,
            )
            uow.commit()

        return BookingResult(
            booking=booking,
            transaction=transaction,
            authorization_url=initialization.authorization_url,
            access_code=initialization.access_code,
        )

    def _new_transaction(self, booking: Booking, now: datetime) -> PaymentTransaction:
        return PaymentTransaction(
            reference=new_reference(),
            booking_id=booking.id,
            user_id=booking.buyer_id,
            event_id=booking.event_id,
            provider=self._gateway.provider,
            amount=booking.total_amount,
            currency=booking.currency,
            status=TransactionStatus.PENDING,
            refund_amount=0,
            created_at=now,
            updated_at=now,
        )

    def _load_booking(self, uow: UnitOfWork, booking_id: str) -> Booking:
        booking = uow.bookings.get_by_id(booking_id)
        if not booking:
            raise NotFoundError("Booking not found")
        return booking

    def _ensure_bookable(self, event: Event, now: datetime) -> None:
        if event.status is not EventStatus.PUBLISHED:
            raise ConflictError("Event is not open for booking")
        if as_utc(event.starts_at) <= as_utc(now):
            raise ConflictError("Cannot book tickets for past events")

    def _ensure_payable(self, booking: Booking) -> None:
        if booking.status is not BookingStatus.PENDING:
            raise ConflictError(f"Booking is {booking.status.value}, not pending payment")
        if booking.payment_status not in (PaymentStatus.PENDING, PaymentStatus.FAILED):
            raise ConflictError(f"Booking payment is {booking.payment_status.value}")

    def _confirmed_notification(self, booking: Booking, tickets: list[Ticket]) -> Notification:
        return Notification(
            event_type="booking.confirmed",
            aggregate_type="booking",
            aggregate_id=booking.id,
            dedupe_key=f"booking.confirmed:{booking.id}",
            payload={
                "order_number": booking.order_number,
                "buyer_id": booking.buyer_id,
                "buyer_email": booking.buyer_email,
                "event_id": booking.event_id,
                "total_amount": booking.total_amount,
                "ticket_numbers": [ticket.ticket_number for ticket in tickets],
            },
        )
