import logging
from dataclasses import dataclass, field
from typing import Protocol

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from src.infrastructure.repositories.outbox_repository import OutboxRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Notification:
    event_type: str
    aggregate_type: str
    aggregate_id: str
    dedupe_key: str
    payload: dict = field(default_factory=dict)


class Publisher(Protocol):
    """Transport for post-commit notifications (socket, queue, outbox...)."""

    def publish(self, notification: Notification) -> None:
        ...


class LoggingPublisher:
    def publish(self, notification: Notification) -> None:
        logger.info(
            "Notification %s aggregate=%s:%s payload=%s",
            notification.event_type,
            notification.aggregate_type,
            notification.aggregate_id,
            notification.payload,
        )


class OutboxPublisher:
    """Writes notifications to the outbox table for email/SMS/socket relays."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def publish(self, notification: Notification) -> None:
        session = self._session_factory()
        try:
            OutboxRepository(session).add_event(
                aggregate_type=notification.aggregate_type,
                aggregate_id=notification.aggregate_id,
                event_type=notification.event_type,
                payload=notification.payload,
                dedupe_key=notification.dedupe_key,
            )
            session.commit()
        except IntegrityError:
            # Same dedupe key committed by a concurrent publisher.
            session.rollback()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


class NotificationDispatcher:
    """
    Fire-and-forget front for a Publisher. Called only after a
    workflow committed; a failing transport is logged and never
    reaches the caller.
    """

    def __init__(self, publisher: Publisher):
        self._publisher = publisher

    def dispatch(self, notification: Notification) -> None:
        try:
            self._publisher.publish(notification)
        except Exception:
            logger.exception(
                "Notification dispatch failed. event_type=%s aggregate_id=%s",
                notification.event_type,
                notification.aggregate_id,
            )
