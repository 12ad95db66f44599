from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, select

from src.application.ticket_issuer import event_snapshot, new_ticket_number
from src.domain.refund_policy import RefundPolicy
from src.domain.state_machine import EventStatus
from src.infrastructure.db.models import Base, Event, Ticket, TicketTier
from src.infrastructure.db.session import SessionLocal, engine

DEMO_ORGANIZER = "organizer-demo"
DEMO_BUYER = "buyer-demo"


def _dt(days_from_now: int, hour: int, minute: int) -> datetime:
    lagos = timezone(timedelta(hours=1))
    now_lagos = datetime.now(lagos)
    target = now_lagos + timedelta(days=days_from_now)
    return target.replace(hour=hour, minute=minute, second=0, microsecond=0).astimezone(timezone.utc)


def seed_events(db) -> dict[str, Event]:
    # Prices are kobo.
    event_defs = [
        {
            "title": "Afrobeats Live at Eko",
            "starts_at": _dt(days_from_now=10, hour=19, minute=30),
            "venue": "Eko Convention Centre",
            "city": "Lagos",
            "category": "music",
            "refund_policy": RefundPolicy.PARTIAL,
            "tiers": [
                {"name": "Regular", "price": 1_500_000, "capacity": 400},
                {"name": "VIP", "price": 4_500_000, "capacity": 120},
            ],
        },
        {
            "title": "Lagos Tech Meetup",
            "starts_at": _dt(days_from_now=5, hour=10, minute=0),
            "venue": "Yaba Hub",
            "city": "Lagos",
            "category": "tech",
            "refund_policy": RefundPolicy.FULL,
            "tiers": [
                {"name": "Community", "price": 0, "capacity": 150},
            ],
        },
        {
            "title": "Abuja Comedy Night",
            "starts_at": _dt(days_from_now=15, hour=20, minute=0),
            "venue": "Transcorp Hall",
            "city": "Abuja",
            "category": "comedy",
            "refund_policy": RefundPolicy.NO_REFUND,
            "price": 800_000,
            "total_tickets": 250,
            "tiers": [],
        },
    ]

    seeded: dict[str, Event] = {}
    for item in event_defs:
        existing = db.execute(
            select(Event).where(Event.title == item["title"])
        ).scalar_one_or_none()
        if existing:
            db.execute(delete(TicketTier).where(TicketTier.event_id == existing.id))
            event = existing
            event.starts_at = item["starts_at"]
            event.venue = item["venue"]
            event.city = item["city"]
        else:
            event = Event(
                title=item["title"],
                organizer_id=DEMO_ORGANIZER,
                status=EventStatus.PUBLISHED,
                starts_at=item["starts_at"],
                venue=item["venue"],
                city=item["city"],
                category=item["category"],
                currency="NGN",
                refund_policy=item["refund_policy"],
                price=item.get("price", 0),
                total_tickets=item.get("total_tickets", 0),
                available_tickets=item.get("total_tickets", 0),
            )
            db.add(event)
            db.flush()

        for tier in item["tiers"]:
            db.add(
                TicketTier(
                    event_id=event.id,
                    name=tier["name"],
                    price=tier["price"],
                    capacity=tier["capacity"],
                    remaining=tier["capacity"],
                )
            )
        seeded[event.title] = event

    return seeded


def seed_legacy_ticket(db, event: Event) -> None:
    """A standalone ticket from before bookings existed, for purchase history."""
    existing = db.execute(
        select(Ticket)
        .where(Ticket.user_id == DEMO_BUYER)
        .where(Ticket.booking_id.is_(None))
    ).scalar_one_or_none()
    if existing:
        return

    number = new_ticket_number()
    db.add(
        Ticket(
            ticket_number=number,
            qr_code=f"QR-{number}-LEGACY",
            security_code="LEGACY",
            booking_id=None,
            event_id=event.id,
            user_id=DEMO_BUYER,
            tier="General",
            price=event.price,
            currency=event.currency,
            event_snapshot=event_snapshot(event),
        )
    )


def main() -> None:
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        events = seed_events(db)
        seed_legacy_ticket(db, events["Abuja Comedy Night"])
        db.commit()
        print("Seed complete: Afrobeats Live, Lagos Tech Meetup, Abuja Comedy Night added.")
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    main()
