import argparse
import logging
import time

from src.application.expiry_service import ExpiryService
from src.config import configure_logging, get_settings
from src.infrastructure.db.session import SessionLocal

logger = logging.getLogger(__name__)


def main() -> None:
    parser = argparse.ArgumentParser(description="Expire abandoned checkouts and finished-event tickets.")
    parser.add_argument(
        "--interval",
        type=float,
        default=0,
        help="Seconds between sweeps; 0 runs a single sweep and exits.",
    )
    args = parser.parse_args()

    configure_logging()
    service = ExpiryService(SessionLocal, get_settings())

    while True:
        report = service.run()
        logger.info(
            "Sweep finished. expired_bookings=%s expired_tickets=%s",
            report.expired_bookings,
            report.expired_tickets,
        )
        if args.interval <= 0:
            return
        time.sleep(args.interval)


if __name__ == "__main__":
    main()
