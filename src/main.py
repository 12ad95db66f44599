import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError

from src.api.routes.routes import router
from src.config import Settings, configure_logging, get_settings
from src.infrastructure.db.session import engine
from src.infrastructure.db.models import Base
from src.infrastructure.payments.factory import build_gateway

logger = logging.getLogger(__name__)


def _wait_for_db(bind: Engine, settings: Settings) -> None:
    # The API container routinely starts before Postgres accepts connections.
    max_retries = settings.db_connect_max_retries
    retry_delay_seconds = settings.db_connect_retry_delay

    for attempt in range(1, max_retries + 1):
        try:
            with bind.connect() as conn:
                conn.execute(text("SELECT 1"))
            logger.info("Database is reachable.")
            return
        except OperationalError:
            if attempt == max_retries:
                logger.exception(
                    "Database not reachable after %s attempts. Check DATABASE_URL.",
                    max_retries,
                )
                raise
            logger.warning(
                "Database not ready (attempt %s/%s). Retrying in %.1f seconds...",
                attempt,
                max_retries,
                retry_delay_seconds,
            )
            time.sleep(retry_delay_seconds)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Prepares the schema and the payment gateway, and closes the gateway on shutdown."""
    settings = get_settings()
    configure_logging(settings.log_level)

    _wait_for_db(engine, settings)
    Base.metadata.create_all(bind=engine)

    gateway = build_gateway(settings)
    app.state.settings = settings
    app.state.gateway = gateway
    logger.info(
        "Ticketing engine started. provider=%s currency=%s",
        gateway.provider,
        settings.default_currency,
    )

    try:
        yield
    finally:
        close = getattr(gateway, "close", None)
        if close is not None:
            close()
        logger.info("Ticketing engine stopped. provider=%s", gateway.provider)


app = FastAPI(title="Event Ticketing Engine", lifespan=lifespan)

app.include_router(router)
