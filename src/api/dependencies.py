from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import sessionmaker

from src.application.booking_service import BookingService
from src.application.cancellation_service import CancellationService
from src.application.checkin_service import CheckInService
from src.application.notifications import NotificationDispatcher, OutboxPublisher
from src.application.purchase_history import PurchaseHistoryService
from src.application.reconciliation_service import ReconciliationService
from src.application.records_service import RecordsService
from src.application.refund_service import RefundService
from src.config import Settings, get_settings
from src.domain.access import Caller, Role
from src.infrastructure.db.session import SessionLocal
from src.infrastructure.payments.gateway import PaymentGateway


def get_session_factory() -> sessionmaker:
    return SessionLocal


def get_gateway(request: Request) -> PaymentGateway:
    # Built once by the app lifespan.
    return request.app.state.gateway


def get_dispatcher(
    session_factory: sessionmaker = Depends(get_session_factory),
) -> NotificationDispatcher:
    return NotificationDispatcher(OutboxPublisher(session_factory))


def get_reconciliation_service(
    session_factory: sessionmaker = Depends(get_session_factory),
    gateway: PaymentGateway = Depends(get_gateway),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> ReconciliationService:
    return ReconciliationService(session_factory, gateway, dispatcher)


def get_booking_service(
    session_factory: sessionmaker = Depends(get_session_factory),
    gateway: PaymentGateway = Depends(get_gateway),
    reconciler: ReconciliationService = Depends(get_reconciliation_service),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    settings: Settings = Depends(get_settings),
) -> BookingService:
    return BookingService(session_factory, gateway, reconciler, dispatcher, settings)


def get_cancellation_service(
    session_factory: sessionmaker = Depends(get_session_factory),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    settings: Settings = Depends(get_settings),
) -> CancellationService:
    return CancellationService(session_factory, dispatcher, settings)


def get_refund_service(
    session_factory: sessionmaker = Depends(get_session_factory),
    gateway: PaymentGateway = Depends(get_gateway),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> RefundService:
    return RefundService(session_factory, gateway, dispatcher)


def get_checkin_service(
    session_factory: sessionmaker = Depends(get_session_factory),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> CheckInService:
    return CheckInService(session_factory, dispatcher)


def get_purchase_history_service(
    session_factory: sessionmaker = Depends(get_session_factory),
) -> PurchaseHistoryService:
    return PurchaseHistoryService(session_factory)


def get_records_service(
    session_factory: sessionmaker = Depends(get_session_factory),
) -> RecordsService:
    return RecordsService(session_factory)


def get_caller(
    x_user_id: str | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
    x_user_email: str | None = Header(default=None),
) -> Caller:
    # Identity is resolved upstream by the auth gateway and forwarded as headers.
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing caller identity",
        )
    try:
        role = Role((x_user_role or Role.ATTENDEE.value).lower())
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Unknown role {x_user_role}",
        )
    return Caller(user_id=x_user_id, role=role, email=x_user_email)
