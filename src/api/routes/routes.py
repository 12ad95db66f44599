from datetime import datetime, timezone
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session, sessionmaker
from starlette.concurrency import run_in_threadpool

from src.api.dependencies import (
    get_booking_service,
    get_caller,
    get_cancellation_service,
    get_checkin_service,
    get_gateway,
    get_purchase_history_service,
    get_reconciliation_service,
    get_records_service,
    get_refund_service,
    get_session_factory,
)
from src.api.schemas.schemas import (
    BookingDetailResponse,
    BookingResponse,
    CancelBookingRequest,
    CancellationResponse,
    CheckInRequest,
    CheckInResponse,
    EventBookingRequest,
    EventBookingResponse,
    EventCreate,
    EventResponse,
    AttendeeListResponse,
    AttendeeTicketResponse,
    OutboxEventResponse,
    PaymentResponse,
    PurchaseHistoryResponse,
    RefundProcessRequest,
    RefundResponse,
    TicketResponse,
    TicketTierResponse,
    TransactionPageResponse,
    TransactionResponse,
    VerificationResponse,
    WebhookAckResponse,
)
from src.application.booking_service import BookingResult, BookingService
from src.application.cancellation_service import CancellationService
from src.application.checkin_service import CheckInLocation, CheckInService
from src.application.purchase_history import PurchaseHistoryService
from src.application.reconciliation_service import ReconciliationService
from src.application.records_service import RecordPage, RecordsService
from src.application.refund_service import RefundDecision, RefundService
from src.config import Settings, get_settings
from src.domain.access import Caller, Role
from src.domain.availability import TierInventory
from src.domain.clock import as_utc
from src.domain.exceptions import (
    AuthorizationError,
    ConflictError,
    GatewayError,
    GatewayTimeoutError,
    InsufficientInventoryError,
    InvalidStateTransitionError,
    NotFoundError,
    TicketingError,
    UnknownReferenceError,
    ValidationError,
    WebhookSignatureError,
)
from src.domain.refund_policy import RefundPolicy
from src.domain.state_machine import EventStatus
from src.domain.validation import TicketRequest
from src.infrastructure.db.models import Event, PaymentTransaction, Ticket, TicketTier
from src.infrastructure.payments.gateway import PaymentGateway
from src.infrastructure.repositories.inventory_repository import InventoryRepository
from src.infrastructure.repositories.outbox_repository import OutboxRepository


router = APIRouter()
logger = logging.getLogger(__name__)

# Most specific classes first: GatewayTimeoutError subclasses GatewayError.
_STATUS_BY_ERROR: list[tuple[type[TicketingError], int]] = [
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (WebhookSignatureError, status.HTTP_401_UNAUTHORIZED),
    (AuthorizationError, status.HTTP_403_FORBIDDEN),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (UnknownReferenceError, status.HTTP_404_NOT_FOUND),
    (InsufficientInventoryError, status.HTTP_409_CONFLICT),
    (ConflictError, status.HTTP_409_CONFLICT),
    (InvalidStateTransitionError, status.HTTP_409_CONFLICT),
    (GatewayTimeoutError, status.HTTP_504_GATEWAY_TIMEOUT),
    (GatewayError, status.HTTP_502_BAD_GATEWAY),
]


def get_db(session_factory: sessionmaker = Depends(get_session_factory)):
    db = session_factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def _to_http_exception(exc: TicketingError) -> HTTPException:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=str(exc),
    )


def _booking_response(booking) -> BookingResponse:
    return BookingResponse(
        id=booking.id,
        order_number=booking.order_number,
        event_id=booking.event_id,
        buyer_id=booking.buyer_id,
        status=booking.status.value,
        payment_status=booking.payment_status.value,
        ticket_details=booking.ticket_details,
        total_tickets=booking.total_tickets,
        subtotal=booking.subtotal,
        service_fee=booking.service_fee,
        total_amount=booking.total_amount,
        currency=booking.currency,
        refund_amount=booking.refund_amount,
        created_at=as_utc(booking.created_at),
        confirmed_at=as_utc(booking.confirmed_at) if booking.confirmed_at else None,
        cancelled_at=as_utc(booking.cancelled_at) if booking.cancelled_at else None,
    )


def _ticket_response(ticket: Ticket) -> TicketResponse:
    return TicketResponse(
        id=ticket.id,
        ticket_number=ticket.ticket_number,
        qr_code=ticket.qr_code,
        tier=ticket.tier,
        price=ticket.price,
        currency=ticket.currency,
        status=ticket.status.value,
        refund_status=ticket.refund_status.value,
        checked_in_at=as_utc(ticket.checked_in_at) if ticket.checked_in_at else None,
        checked_in_by=ticket.checked_in_by,
    )


def _payment_response(
    transaction: PaymentTransaction | None,
    authorization_url: str | None,
    access_code: str | None,
) -> PaymentResponse | None:
    if transaction is None:
        return None
    return PaymentResponse(
        reference=transaction.reference,
        transaction_id=transaction.id,
        status=transaction.status.value,
        amount=transaction.amount,
        currency=transaction.currency,
        authorization_url=authorization_url,
        access_code=access_code,
    )


def _event_booking_response(result: BookingResult) -> EventBookingResponse:
    return EventBookingResponse(
        requires_payment=result.requires_payment,
        booking=_booking_response(result.booking),
        tickets=[_ticket_response(ticket) for ticket in result.tickets],
        payment=_payment_response(
            result.transaction,
            result.authorization_url,
            result.access_code,
        ),
    )


def _transaction_response(transaction: PaymentTransaction) -> TransactionResponse:
    return TransactionResponse(
        id=transaction.id,
        reference=transaction.reference,
        booking_id=transaction.booking_id,
        event_id=transaction.event_id,
        user_id=transaction.user_id,
        provider=transaction.provider,
        amount=transaction.amount,
        currency=transaction.currency,
        status=transaction.status.value,
        channel=transaction.channel,
        failure_reason=transaction.failure_reason,
        paid_at=as_utc(transaction.paid_at) if transaction.paid_at else None,
        refund_status=transaction.refund_status.value,
        refund_amount=transaction.refund_amount,
        refund_reason=transaction.refund_reason,
        created_at=as_utc(transaction.created_at),
    )


def _transaction_page_response(page: RecordPage) -> TransactionPageResponse:
    return TransactionPageResponse(
        items=[_transaction_response(item) for item in page.items],
        total=page.total,
        total_pages=page.total_pages,
        page=page.page,
        page_size=page.page_size,
    )


def _attendee_ticket_response(ticket: Ticket) -> AttendeeTicketResponse:
    return AttendeeTicketResponse(
        **_ticket_response(ticket).model_dump(),
        event_id=ticket.event_id,
        booking_id=ticket.booking_id,
        user_id=ticket.user_id,
        check_in_address=ticket.check_in_address,
    )


def _event_response(event: Event, tiers: dict[str, TierInventory]) -> EventResponse:
    return EventResponse(
        id=event.id,
        title=event.title,
        organizer_id=event.organizer_id,
        status=event.status.value,
        starts_at=as_utc(event.starts_at),
        ends_at=as_utc(event.ends_at) if event.ends_at else None,
        venue=event.venue,
        city=event.city,
        currency=event.currency,
        refund_policy=event.refund_policy.value,
        tiers=[
            TicketTierResponse(
                name=tier.name,
                price=tier.price,
                capacity=tier.capacity,
                remaining=tier.remaining,
            )
            for tier in tiers.values()
        ],
        total_attendees=event.total_attendees,
        total_bookings=event.total_bookings,
        total_revenue=event.total_revenue,
    )


@router.get("/health")
def health():
    return {"message": "Ticketing engine is running"}


@router.get("/outbox/events", response_model=list[OutboxEventResponse])
def list_outbox_events(
    status_filter: str = "PENDING",
    limit: int = 50,
    db: Session = Depends(get_db),
):
    safe_limit = max(1, min(limit, 200))
    events = OutboxRepository(db).list_by_status(status_filter, safe_limit)
    return [
        OutboxEventResponse(
            id=item.id,
            aggregate_type=item.aggregate_type,
            aggregate_id=item.aggregate_id,
            event_type=item.event_type,
            status=item.status,
            attempts=item.attempts,
            created_at=item.created_at.isoformat(),
        )
        for item in events
    ]


@router.post("/outbox/events/{event_id}/mark-published", response_model=OutboxEventResponse)
def mark_outbox_event_published(
    event_id: str,
    db: Session = Depends(get_db),
):
    repo = OutboxRepository(db)
    item = repo.get_by_id(event_id)
    if not item:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Outbox event not found",
        )

    repo.mark_published(item, datetime.now(timezone.utc))
    return OutboxEventResponse(
        id=item.id,
        aggregate_type=item.aggregate_type,
        aggregate_id=item.aggregate_id,
        event_type=item.event_type,
        status=item.status,
        attempts=item.attempts,
        created_at=item.created_at.isoformat(),
    )


@router.get("/events", response_model=list[EventResponse])
def list_events(
    organizer_id: str | None = None,
    db: Session = Depends(get_db),
):
    repo = InventoryRepository(db)
    return [
        _event_response(event, repo.load_inventory(event))
        for event in repo.list_events(organizer_id=organizer_id)
    ]


@router.post("/events", response_model=EventResponse, status_code=status.HTTP_201_CREATED)
def create_event(
    request: EventCreate,
    caller: Caller = Depends(get_caller),
    settings: Settings = Depends(get_settings),
    db: Session = Depends(get_db),
):
    if caller.role not in (Role.ORGANIZER, Role.SUPERADMIN):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only organizers can create events",
        )

    starts_at = as_utc(request.starts_at)
    ends_at = as_utc(request.ends_at) if request.ends_at else None
    if starts_at <= datetime.now(timezone.utc):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Event must start in the future",
        )
    if ends_at is not None and ends_at <= starts_at:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Event must end after it starts",
        )

    tier_names = [tier.name.strip() for tier in request.tiers]
    if len(set(tier_names)) != len(tier_names):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Tier names must be unique",
        )

    event = Event(
        title=request.title,
        organizer_id=caller.user_id,
        status=EventStatus(request.status),
        starts_at=starts_at,
        ends_at=ends_at,
        venue=request.venue,
        city=request.city,
        event_type=request.event_type,
        category=request.category,
        currency=request.currency or settings.default_currency,
        refund_policy=RefundPolicy(request.refund_policy),
        price=0 if request.tiers else request.price,
        total_tickets=0 if request.tiers else request.total_tickets,
        available_tickets=0 if request.tiers else request.total_tickets,
    )
    tiers = [
        TicketTier(
            name=name,
            price=tier.price,
            capacity=tier.capacity,
            remaining=tier.capacity,
        )
        for name, tier in zip(tier_names, request.tiers)
    ]

    repo = InventoryRepository(db)
    repo.add_event(event, tiers)
    logger.info("Event created. event_id=%s organizer_id=%s tiers=%s", event.id, caller.user_id, len(tiers))
    return _event_response(event, repo.load_inventory(event))


@router.get("/events/{event_id}", response_model=EventResponse)
def get_event(event_id: str, db: Session = Depends(get_db)):
    repo = InventoryRepository(db)
    try:
        event = repo.get_event(event_id)
    except NotFoundError as exc:
        raise _to_http_exception(exc) from exc
    return _event_response(event, repo.load_inventory(event))


@router.post("/events/{event_id}/book", response_model=EventBookingResponse)
def book_event(
    event_id: str,
    request: EventBookingRequest,
    caller: Caller = Depends(get_caller),
    service: BookingService = Depends(get_booking_service),
):
    try:
        result = service.book_event(
            caller=caller,
            event_id=event_id,
            requests=[
                TicketRequest(tier=item.tier, quantity=item.quantity)
                for item in request.tickets
            ],
        )
    except TicketingError as exc:
        raise _to_http_exception(exc) from exc

    return _event_booking_response(result)


@router.get("/bookings/mine", response_model=PurchaseHistoryResponse)
def list_my_purchases(
    page: int = 1,
    page_size: int = 20,
    caller: Caller = Depends(get_caller),
    service: PurchaseHistoryService = Depends(get_purchase_history_service),
):
    history = service.list_purchases(
        caller,
        page=max(1, page),
        page_size=max(1, min(page_size, 100)),
    )
    return PurchaseHistoryResponse(
        items=history.items,
        total=history.total,
        page=history.page,
        page_size=history.page_size,
    )


@router.get("/bookings/{booking_id}", response_model=BookingDetailResponse)
def get_booking(
    booking_id: str,
    caller: Caller = Depends(get_caller),
    service: BookingService = Depends(get_booking_service),
):
    try:
        result = service.get_booking(caller, booking_id)
    except TicketingError as exc:
        raise _to_http_exception(exc) from exc

    return BookingDetailResponse(
        booking=_booking_response(result.booking),
        tickets=[_ticket_response(ticket) for ticket in result.tickets],
        payment=_payment_response(
            result.transaction,
            result.authorization_url,
            result.access_code,
        ),
    )


@router.post("/bookings/{booking_id}/pay", response_model=EventBookingResponse)
def pay_booking(
    booking_id: str,
    caller: Caller = Depends(get_caller),
    service: BookingService = Depends(get_booking_service),
):
    try:
        result = service.pay_again(caller, booking_id)
    except TicketingError as exc:
        raise _to_http_exception(exc) from exc

    return _event_booking_response(result)


@router.delete("/bookings/{booking_id}", response_model=CancellationResponse)
def cancel_booking(
    booking_id: str,
    request: CancelBookingRequest | None = None,
    caller: Caller = Depends(get_caller),
    service: CancellationService = Depends(get_cancellation_service),
):
    try:
        result = service.cancel_booking(
            caller,
            booking_id,
            reason=request.reason if request else None,
        )
    except TicketingError as exc:
        raise _to_http_exception(exc) from exc

    return CancellationResponse(
        booking_id=result.booking.id,
        status=result.booking.status.value,
        payment_status=result.booking.payment_status.value,
        cancelled_tickets=result.cancelled_tickets,
        skipped_tickets=result.skipped_tickets,
        refund_percent=result.refund_percent,
        refund_amount=result.refund_amount,
    )


@router.get("/transactions/verify/{reference}", response_model=VerificationResponse)
def verify_transaction(
    reference: str,
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    try:
        result = service.verify(reference)
    except TicketingError as exc:
        raise _to_http_exception(exc) from exc

    return VerificationResponse(
        reference=result.reference,
        status=result.transaction_status.value,
        booking_id=result.booking_id,
        booking_status=result.booking_status.value,
        payment_status=result.payment_status.value,
        ticket_count=result.ticket_count,
        message=result.message,
    )


@router.post("/transactions/webhook", response_model=WebhookAckResponse)
async def payment_webhook(
    request: Request,
    gateway: PaymentGateway = Depends(get_gateway),
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    # The signature covers the exact bytes received, so parse only after checking it.
    raw_body = await request.body()
    signature = request.headers.get(gateway.signature_header)

    try:
        outcome = await run_in_threadpool(service.handle_webhook, raw_body, signature)
    except (WebhookSignatureError, ValidationError) as exc:
        raise _to_http_exception(exc) from exc
    except TicketingError as exc:
        # Non-2xx makes the gateway redeliver later.
        logger.exception("Webhook processing failed")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        ) from exc

    return WebhookAckResponse(outcome=outcome)


@router.get("/transactions/mine", response_model=TransactionPageResponse)
def list_my_transactions(
    status_filter: str | None = None,
    page: int = 1,
    page_size: int = 10,
    caller: Caller = Depends(get_caller),
    service: RecordsService = Depends(get_records_service),
):
    try:
        result = service.list_my_transactions(caller, status=status_filter, page=page, page_size=page_size)
    except TicketingError as exc:
        raise _to_http_exception(exc) from exc

    return _transaction_page_response(result)


@router.get("/transactions/{transaction_id}", response_model=TransactionResponse)
def get_transaction(
    transaction_id: str,
    caller: Caller = Depends(get_caller),
    service: RecordsService = Depends(get_records_service),
):
    try:
        transaction = service.get_transaction(caller, transaction_id)
    except TicketingError as exc:
        raise _to_http_exception(exc) from exc

    return _transaction_response(transaction)


@router.put("/transactions/{transaction_id}/refund/process", response_model=RefundResponse)
def process_refund(
    transaction_id: str,
    request: RefundProcessRequest,
    caller: Caller = Depends(get_caller),
    service: RefundService = Depends(get_refund_service),
):
    try:
        transaction = service.process_refund(
            caller,
            transaction_id,
            RefundDecision(request.action),
            reason=request.reason,
        )
    except TicketingError as exc:
        raise _to_http_exception(exc) from exc

    return RefundResponse(
        transaction_id=transaction.id,
        reference=transaction.reference,
        refund_status=transaction.refund_status.value,
        refund_amount=transaction.refund_amount,
    )


@router.post("/events/{event_id}/check-in/{ticket_id}", response_model=CheckInResponse)
def check_in_ticket(
    event_id: str,
    ticket_id: str,
    request: CheckInRequest | None = None,
    caller: Caller = Depends(get_caller),
    service: CheckInService = Depends(get_checkin_service),
):
    location = CheckInLocation()
    if request is not None:
        location = CheckInLocation(
            latitude=request.latitude,
            longitude=request.longitude,
            address=request.address,
        )

    try:
        ticket = service.check_in(caller, event_id, ticket_id, location)
    except TicketingError as exc:
        raise _to_http_exception(exc) from exc

    return CheckInResponse(
        ticket_id=ticket.id,
        ticket_number=ticket.ticket_number,
        status=ticket.status.value,
        checked_in_at=as_utc(ticket.checked_in_at),
        checked_in_by=ticket.checked_in_by,
    )


@router.get("/events/{event_id}/transactions", response_model=TransactionPageResponse)
def list_event_transactions(
    event_id: str,
    status_filter: str | None = None,
    page: int = 1,
    page_size: int = 10,
    caller: Caller = Depends(get_caller),
    service: RecordsService = Depends(get_records_service),
):
    try:
        result = service.list_event_transactions(
            caller,
            event_id,
            status=status_filter,
            page=page,
            page_size=page_size,
        )
    except TicketingError as exc:
        raise _to_http_exception(exc) from exc

    return _transaction_page_response(result)


@router.get("/events/{event_id}/tickets", response_model=AttendeeListResponse)
def list_event_tickets(
    event_id: str,
    status_filter: str | None = None,
    tier: str | None = None,
    page: int = 1,
    page_size: int = 20,
    caller: Caller = Depends(get_caller),
    service: RecordsService = Depends(get_records_service),
):
    try:
        result = service.list_event_tickets(
            caller,
            event_id,
            status=status_filter,
            tier=tier,
            page=page,
            page_size=page_size,
        )
    except TicketingError as exc:
        raise _to_http_exception(exc) from exc

    return AttendeeListResponse(
        items=[_attendee_ticket_response(ticket) for ticket in result.items],
        stats=result.stats,
        total=result.total,
        total_pages=result.total_pages,
        page=result.page,
        page_size=result.page_size,
    )


@router.get("/tickets/{ticket_id}", response_model=AttendeeTicketResponse)
def get_ticket(
    ticket_id: str,
    caller: Caller = Depends(get_caller),
    service: RecordsService = Depends(get_records_service),
):
    try:
        ticket = service.get_ticket(caller, ticket_id)
    except TicketingError as exc:
        raise _to_http_exception(exc) from exc

    return _attendee_ticket_response(ticket)
