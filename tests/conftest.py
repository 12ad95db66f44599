import hashlib
import hmac
import json
import os
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from fastapi.testclient import TestClient

# Keep module-level engine creation away from Postgres.
os.environ.setdefault("DATABASE_URL", "sqlite:///./.pytest_ticketing.db")

from src.api.dependencies import get_gateway, get_session_factory
from src.application.booking_service import BookingService
from src.application.cancellation_service import CancellationService
from src.application.checkin_service import CheckInService
from src.application.expiry_service import ExpiryService
from src.application.notifications import NotificationDispatcher
from src.application.purchase_history import PurchaseHistoryService
from src.application.reconciliation_service import ReconciliationService
from src.application.records_service import RecordsService
from src.application.refund_service import RefundService
from src.config import Settings, get_settings
from src.domain.access import Caller, Role
from src.domain.refund_policy import RefundPolicy
from src.domain.state_machine import EventStatus
from src.infrastructure.db.models import (
    Base,
    Booking,
    Event,
    PaymentTransaction,
    PaymentWebhookEvent,
    Ticket,
    TicketTier,
)
from src.infrastructure.db.session import build_engine, build_session_factory
from src.infrastructure.payments.gateway import (
    PaymentInitialization,
    PaymentVerification,
    VerificationStatus,
)
from src.infrastructure.payments.paystack import PaystackGateway
from src.main import app
from sqlalchemy import select

WEBHOOK_SECRET = "sk_test_webhook"
BUYER = Caller(user_id="buyer-1", role=Role.ATTENDEE, email="buyer1@example.com")
OTHER_BUYER = Caller(user_id="buyer-2", role=Role.ATTENDEE, email="buyer2@example.com")
ORGANIZER = Caller(user_id="organizer-1", role=Role.ORGANIZER, email="org@example.com")
ADMIN = Caller(user_id="admin-1", role=Role.SUPERADMIN, email="admin@example.com")


def _no_network(request: httpx.Request) -> httpx.Response:
    raise AssertionError(f"Unexpected gateway HTTP call: {request.method} {request.url}")


class FakeGateway(PaystackGateway):
    """
    Paystack-shaped gateway that never leaves the process. Webhook
    signing and parsing are the real Paystack code paths.
    """

    def __init__(self):
        super().__init__(
            secret_key=WEBHOOK_SECRET,
            transport=httpx.MockTransport(_no_network),
        )
        self.initialized: list[dict] = []
        self.refunds: list[tuple[str, int]] = []
        self.refund_attempts: list[tuple[str, int]] = []
        self.outcomes: dict[str, PaymentVerification] = {}
        self.initialize_error: Exception | None = None
        self.verify_error: Exception | None = None
        self.refund_error: Exception | None = None

    def initialize(self, email, amount_minor, reference, metadata, callback_url, currency):
        if self.initialize_error is not None:
            raise self.initialize_error
        self.initialized.append(
            {
                "email": email,
                "amount": amount_minor,
                "reference": reference,
                "metadata": metadata,
                "callback_url": callback_url,
                "currency": currency,
            }
        )
        return PaymentInitialization(
            authorization_url=f"https://checkout.test/{reference}",
            access_code=f"AC-{reference[-8:]}",
        )

    def verify(self, reference):
        if self.verify_error is not None:
            raise self.verify_error
        return self.outcomes.get(
            reference,
            PaymentVerification(reference=reference, status=VerificationStatus.PENDING, message="ongoing"),
        )

    def refund(self, reference, amount_minor):
        self.refund_attempts.append((reference, amount_minor))
        if self.refund_error is not None:
            raise self.refund_error
        self.refunds.append((reference, amount_minor))
        return {"transaction": reference, "amount": amount_minor, "status": "pending"}

    def settle(self, reference: str, amount: int, success: bool = True) -> None:
        self.outcomes[reference] = PaymentVerification(
            reference=reference,
            status=VerificationStatus.SUCCESS if success else VerificationStatus.FAILED,
            gateway_response={"status": "success" if success else "failed", "amount": amount},
            channel="card",
            amount=amount,
            message="Approved" if success else "Declined",
        )


class RecordingPublisher:
    def __init__(self):
        self.published = []

    def publish(self, notification) -> None:
        self.published.append(notification)

    def event_types(self) -> list[str]:
        return [item.event_type for item in self.published]


class FailingPublisher:
    def publish(self, notification) -> None:
        raise RuntimeError("socket transport down")


class Clock:
    def __init__(self):
        self.now = datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class Store:
    """Direct reads and fixtures-setup writes against the test database."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def create_event(
        self,
        tiers=(("Regular", 5000, 10),),
        starts_in: timedelta = timedelta(days=10),
        ends_in: timedelta | None = None,
        refund_policy: RefundPolicy = RefundPolicy.PARTIAL,
        status: EventStatus = EventStatus.PUBLISHED,
        organizer_id: str = ORGANIZER.user_id,
        legacy_price: int = 0,
        legacy_capacity: int = 0,
        now: datetime | None = None,
    ) -> str:
        now = now or datetime.now(timezone.utc)
        with self.session_factory() as session:
            event = Event(
                title="Afrobeats Live",
                organizer_id=organizer_id,
                status=status,
                starts_at=now + starts_in,
                ends_at=now + ends_in if ends_in is not None else None,
                venue="Eko Convention Centre",
                city="Lagos",
                currency="NGN",
                refund_policy=refund_policy,
                price=legacy_price,
                total_tickets=legacy_capacity,
                available_tickets=legacy_capacity,
            )
            session.add(event)
            session.flush()
            for name, price, capacity in tiers:
                session.add(
                    TicketTier(
                        event_id=event.id,
                        name=name,
                        price=price,
                        capacity=capacity,
                        remaining=capacity,
                    )
                )
            session.commit()
            return event.id

    def event(self, event_id: str) -> Event:
        with self.session_factory() as session:
            return session.get(Event, event_id)

    def remaining(self, event_id: str, tier: str) -> int:
        with self.session_factory() as session:
            return session.execute(
                select(TicketTier.remaining)
                .where(TicketTier.event_id == event_id)
                .where(TicketTier.name == tier)
            ).scalar_one()

    def booking(self, booking_id: str) -> Booking:
        with self.session_factory() as session:
            return session.get(Booking, booking_id)

    def tickets(self, booking_id: str) -> list[Ticket]:
        with self.session_factory() as session:
            return list(
                session.execute(select(Ticket).where(Ticket.booking_id == booking_id)).scalars()
            )

    def transactions(self, booking_id: str) -> list[PaymentTransaction]:
        with self.session_factory() as session:
            return list(
                session.execute(
                    select(PaymentTransaction)
                    .where(PaymentTransaction.booking_id == booking_id)
                    .order_by(PaymentTransaction.created_at)
                ).scalars()
            )

    def transaction(self, reference: str) -> PaymentTransaction:
        with self.session_factory() as session:
            return session.execute(
                select(PaymentTransaction).where(PaymentTransaction.reference == reference)
            ).scalar_one()

    def webhook_outcomes(self, reference: str) -> list[str]:
        with self.session_factory() as session:
            return list(
                session.execute(
                    select(PaymentWebhookEvent.outcome)
                    .where(PaymentWebhookEvent.reference == reference)
                ).scalars()
            )


def sign(payload: dict) -> tuple[bytes, str]:
    raw = json.dumps(payload).encode("utf-8")
    signature = hmac.new(WEBHOOK_SECRET.encode("utf-8"), raw, hashlib.sha512).hexdigest()
    return raw, signature


def charge_event(reference: str, amount: int, success: bool = True) -> dict:
    return {
        "event": "charge.success" if success else "charge.failed",
        "data": {
            "reference": reference,
            "status": "success" if success else "failed",
            "amount": amount,
            "channel": "card",
            "gateway_response": "Approved" if success else "Declined",
        },
    }


def settle_and_verify(gateway, reconciler, result, success: bool = True):
    """Has the gateway settle a freshly initialized booking, then verifies it."""
    reference = result.transaction.reference
    gateway.settle(reference, result.transaction.amount, success=success)
    return reconciler.verify(reference)


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'ticketing.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def store(session_factory):
    return Store(session_factory)


@pytest.fixture
def settings():
    return Settings(
        paystack_secret_key=WEBHOOK_SECRET,
        frontend_url="http://frontend.test",
    )


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def dispatcher(publisher):
    return NotificationDispatcher(publisher)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def reconciler(session_factory, gateway, dispatcher, clock):
    return ReconciliationService(session_factory, gateway, dispatcher, clock=clock)


@pytest.fixture
def booking_service(session_factory, gateway, reconciler, dispatcher, settings, clock):
    return BookingService(session_factory, gateway, reconciler, dispatcher, settings, clock=clock)


@pytest.fixture
def cancellation_service(session_factory, dispatcher, settings, clock):
    return CancellationService(session_factory, dispatcher, settings, clock=clock)


@pytest.fixture
def refund_service(session_factory, gateway, dispatcher, clock):
    return RefundService(session_factory, gateway, dispatcher, clock=clock)


@pytest.fixture
def checkin_service(session_factory, dispatcher, clock):
    return CheckInService(session_factory, dispatcher, clock=clock)


@pytest.fixture
def expiry_service(session_factory, settings, clock):
    return ExpiryService(session_factory, settings, clock=clock)


@pytest.fixture
def history_service(session_factory):
    return PurchaseHistoryService(session_factory)


@pytest.fixture
def records_service(session_factory):
    return RecordsService(session_factory)


@pytest.fixture
def client(session_factory, gateway, settings):
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_settings] = lambda: settings

    yield TestClient(app)

    app.dependency_overrides.clear()


def headers_for(caller: Caller) -> dict:
    headers = {"X-User-Id": caller.user_id, "X-User-Role": caller.role.value}
    if caller.email:
        headers["X-User-Email"] = caller.email
    return headers
