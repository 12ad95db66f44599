# src/infrastructure/db/models.py

from sqlalchemy import (
    JSON,
    Boolean,
    String,
    Integer,
    DateTime,
    Enum,
    Float,
    Text,
    UniqueConstraint,
    CheckConstraint,
    ForeignKey,
    Index,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime
from uuid import uuid4

from src.infrastructure.db.session import Base
from src.domain.refund_policy import RefundPolicy
from src.domain.state_machine import (
    BookingStatus,
    EventStatus,
    PaymentStatus,
    RefundStatus,
    TicketRefundStatus,
    TicketStatus,
    TransactionStatus,
)


def _enum(enum_cls, name: str) -> Enum:
    # Persist the lowercase values, not the member names.
    return Enum(
        enum_cls,
        name=name,
        values_callable=lambda members: [member.value for member in members],
    )


def _uuid() -> str:
    return str(uuid4())


class Event(Base):
    """
    Inventory owner. Tiered events keep stock in ticket_tiers;
    events without tiers use the legacy single-price columns.
    """

    __tablename__ = "events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    title: Mapped[str] = mapped_column(String(128), nullable=False)
    organizer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[EventStatus] = mapped_column(
        _enum(EventStatus, "event_status"),
        nullable=False,
        default=EventStatus.PUBLISHED,
    )
    starts_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    venue: Mapped[str] = mapped_column(String(128), nullable=False)
    city: Mapped[str | None] = mapped_column(String(64), nullable=True)
    event_type: Mapped[str] = mapped_column(String(16), nullable=False, default="physical")
    category: Mapped[str | None] = mapped_column(String(64), nullable=True)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="NGN")
    refund_policy: Mapped[RefundPolicy] = mapped_column(
        _enum(RefundPolicy, "refund_policy"),
        nullable=False,
        default=RefundPolicy.PARTIAL,
    )
    price: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_tickets: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    available_tickets: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_attendees: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_bookings: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_revenue: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_event_price_nonnegative"),
        CheckConstraint("available_tickets >= 0", name="ck_event_available_nonnegative"),
        CheckConstraint("available_tickets <= total_tickets", name="ck_event_available_lte_total"),
        CheckConstraint("total_attendees >= 0", name="ck_event_attendees_nonnegative"),
        CheckConstraint("total_bookings >= 0", name="ck_event_bookings_nonnegative"),
        CheckConstraint("total_revenue >= 0", name="ck_event_revenue_nonnegative"),
    )


class TicketTier(Base):
    __tablename__ = "ticket_tiers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    event_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("events.id"),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(String(32), nullable=False)
    price: Mapped[int] = mapped_column(Integer, nullable=False)
    capacity: Mapped[int] = mapped_column(Integer, nullable=False)
    remaining: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("event_id", "name", name="uq_ticket_tier_event_name"),
        CheckConstraint("price >= 0", name="ck_tier_price_nonnegative"),
        CheckConstraint("capacity >= 0", name="ck_tier_capacity_nonnegative"),
        CheckConstraint("remaining >= 0", name="ck_tier_remaining_nonnegative"),
        CheckConstraint("remaining <= capacity", name="ck_tier_remaining_lte_capacity"),
    )


class Booking(Base):
    """
    Order aggregate. Services own the transitions;
    the table only stores the current state.
    """

    __tablename__ = "bookings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    order_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    buyer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    buyer_email: Mapped[str] = mapped_column(String(255), nullable=False)
    organizer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("events.id"),
        nullable=False,
    )
    ticket_details: Mapped[list] = mapped_column(JSON, nullable=False)
    total_tickets: Mapped[int] = mapped_column(Integer, nullable=False)
    subtotal: Mapped[int] = mapped_column(Integer, nullable=False)
    service_fee: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False)
    status: Mapped[BookingStatus] = mapped_column(
        _enum(BookingStatus, "booking_status"),
        nullable=False,
        default=BookingStatus.PENDING,
    )
    payment_status: Mapped[PaymentStatus] = mapped_column(
        _enum(PaymentStatus, "booking_payment_status"),
        nullable=False,
        default=PaymentStatus.PENDING,
    )
    inventory_held: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    event_snapshot: Mapped[dict] = mapped_column(JSON, nullable=False)
    refund_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cancellation_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint("total_tickets > 0", name="ck_booking_tickets_positive"),
        CheckConstraint("subtotal >= 0", name="ck_booking_subtotal_nonnegative"),
        CheckConstraint(
            "total_amount = subtotal + service_fee",
            name="ck_booking_total_matches",
        ),
        Index("ix_bookings_buyer_event", "buyer_id", "event_id"),
        Index("ix_bookings_status_created", "status", "created_at"),
    )


class Ticket(Base):
    __tablename__ = "tickets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    ticket_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    qr_code: Mapped[str] = mapped_column(String(128), nullable=False)
    security_code: Mapped[str] = mapped_column(String(16), nullable=False)
    # Null only for legacy standalone tickets sold before bookings existed.
    booking_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("bookings.id"),
        nullable=True,
    )
    event_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("events.id"),
        nullable=False,
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    tier: Mapped[str] = mapped_column(String(32), nullable=False)
    price: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False)
    status: Mapped[TicketStatus] = mapped_column(
        _enum(TicketStatus, "ticket_status"),
        nullable=False,
        default=TicketStatus.CONFIRMED,
    )
    refund_status: Mapped[TicketRefundStatus] = mapped_column(
        _enum(TicketRefundStatus, "ticket_refund_status"),
        nullable=False,
        default=TicketRefundStatus.NONE,
    )
    event_snapshot: Mapped[dict] = mapped_column(JSON, nullable=False)
    checked_in_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    checked_in_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    check_in_latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    check_in_longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    check_in_address: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_ticket_price_nonnegative"),
        Index("ix_tickets_booking", "booking_id"),
        Index("ix_tickets_user", "user_id"),
    )


class PaymentTransaction(Base):
    __tablename__ = "payment_transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    reference: Mapped[str] = mapped_column(String(64), nullable=False)
    booking_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("bookings.id"),
        nullable=False,
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_id: Mapped[str] = mapped_column(String(36), nullable=False)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False)
    status: Mapped[TransactionStatus] = mapped_column(
        _enum(TransactionStatus, "transaction_status"),
        nullable=False,
        default=TransactionStatus.PENDING,
    )
    authorization_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    access_code: Mapped[str | None] = mapped_column(String(128), nullable=True)
    channel: Mapped[str | None] = mapped_column(String(32), nullable=True)
    gateway_response: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refund_status: Mapped[RefundStatus] = mapped_column(
        _enum(RefundStatus, "refund_status"),
        nullable=False,
        default=RefundStatus.NONE,
    )
    refund_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    refund_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("reference", name="uq_transaction_reference"),
        CheckConstraint("amount > 0", name="ck_transaction_amount_positive"),
        CheckConstraint("refund_amount >= 0", name="ck_transaction_refund_nonnegative"),
        Index("ix_transactions_booking_status", "booking_id", "status"),
    )


class PaymentWebhookEvent(Base):
    __tablename__ = "payment_webhook_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    reference: Mapped[str] = mapped_column(String(64), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    outcome: Mapped[str] = mapped_column(String(32), nullable=False, default="processed")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_webhook_events_reference", "provider", "reference"),
    )


class OutboxEvent(Base):
    __tablename__ = "outbox_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    aggregate_type: Mapped[str] = mapped_column(String(64), nullable=False)
    aggregate_id: Mapped[str] = mapped_column(String(36), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    dedupe_key: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="PENDING")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("dedupe_key", name="uq_outbox_dedupe_key"),
    )
