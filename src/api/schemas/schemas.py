from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from src.application.purchase_history import PurchaseSummary


class TicketBookingItem(BaseModel):
    tier: str
    quantity: int


class EventBookingRequest(BaseModel):
    tickets: list[TicketBookingItem]


class TicketResponse(BaseModel):
    id: str
    ticket_number: str
    qr_code: str
    tier: str
    price: int
    currency: str
    status: str
    refund_status: str
    checked_in_at: datetime | None = None
    checked_in_by: str | None = None


class TicketLineResponse(BaseModel):
    tier: str
    quantity: int
    unit_price: int
    subtotal: int


class BookingResponse(BaseModel):
    id: str
    order_number: str
    event_id: str
    buyer_id: str
    status: str
    payment_status: str
    ticket_details: list[TicketLineResponse]
    total_tickets: int
    subtotal: int
    service_fee: int
    total_amount: int
    currency: str
    refund_amount: int
    created_at: datetime
    confirmed_at: datetime | None = None
    cancelled_at: datetime | None = None


class PaymentResponse(BaseModel):
    reference: str
    transaction_id: str
    status: str
    amount: int
    currency: str
    authorization_url: str | None = None
    access_code: str | None = None


class EventBookingResponse(BaseModel):
    requires_payment: bool
    booking: BookingResponse
    tickets: list[TicketResponse] = []
    payment: PaymentResponse | None = None


class BookingDetailResponse(BaseModel):
    booking: BookingResponse
    tickets: list[TicketResponse]
    payment: PaymentResponse | None = None


class VerificationResponse(BaseModel):
    reference: str
    status: str
    booking_id: str
    booking_status: str
    payment_status: str
    ticket_count: int
    message: str | None = None


class WebhookAckResponse(BaseModel):
    received: bool = True
    outcome: str


class RefundProcessRequest(BaseModel):
    action: Literal["approve", "reject"]
    reason: str | None = Field(default=None, max_length=255)


class RefundResponse(BaseModel):
    transaction_id: str
    reference: str
    refund_status: str
    refund_amount: int


class CancelBookingRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=255)


class CancellationResponse(BaseModel):
    booking_id: str
    status: str
    payment_status: str
    cancelled_tickets: int
    skipped_tickets: int
    refund_percent: int
    refund_amount: int


class CheckInRequest(BaseModel):
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)
    address: str | None = Field(default=None, max_length=255)


class CheckInResponse(BaseModel):
    ticket_id: str
    ticket_number: str
    status: str
    checked_in_at: datetime
    checked_in_by: str


class PurchaseHistoryResponse(BaseModel):
    items: list[PurchaseSummary]
    total: int
    page: int
    page_size: int


class TicketTierCreate(BaseModel):
    name: str = Field(min_length=1, max_length=32)
    price: int = Field(ge=0)
    capacity: int = Field(ge=0)


class EventCreate(BaseModel):
    title: str = Field(min_length=1, max_length=128)
    starts_at: datetime
    ends_at: datetime | None = None
    venue: str
    city: str | None = None
    event_type: str = "physical"
    category: str | None = None
    currency: str | None = None
    refund_policy: Literal["full", "partial", "no-refund"] = "partial"
    status: Literal["draft", "published"] = "published"
    tiers: list[TicketTierCreate] = []
    # Single-price inventory, used only when no tiers are given.
    price: int = Field(default=0, ge=0)
    total_tickets: int = Field(default=0, ge=0)


class TicketTierResponse(BaseModel):
    name: str
    price: int
    capacity: int
    remaining: int


class EventResponse(BaseModel):
    id: str
    title: str
    organizer_id: str
    status: str
    starts_at: datetime
    ends_at: datetime | None = None
    venue: str
    city: str | None = None
    currency: str
    refund_policy: str
    tiers: list[TicketTierResponse]
    total_attendees: int
    total_bookings: int
    total_revenue: int


class OutboxEventResponse(BaseModel):
    id: str
    aggregate_type: str
    aggregate_id: str
    event_type: str
    status: str
    attempts: int
    created_at: str


class TransactionResponse(BaseModel):
    id: str
    reference: str
    booking_id: str
    event_id: str
    user_id: str
    provider: str
    amount: int
    currency: str
    status: str
    channel: str | None = None
    failure_reason: str | None = None
    paid_at: datetime | None = None
    refund_status: str
    refund_amount: int
    refund_reason: str | None = None
    created_at: datetime


class TransactionPageResponse(BaseModel):
    items: list[TransactionResponse]
    total: int
    total_pages: int
    page: int
    page_size: int


class AttendeeTicketResponse(TicketResponse):
    event_id: str
    booking_id: str | None = None
    user_id: str
    check_in_address: str | None = None


class AttendeeListResponse(BaseModel):
    items: list[AttendeeTicketResponse]
    stats: dict[str, int]
    total: int
    total_pages: int
    page: int
    page_size: int
