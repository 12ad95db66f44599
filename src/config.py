# src/config.py

import logging
import os
from decimal import Decimal
from functools import lru_cache

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from src.domain.refund_policy import RefundLadder

load_dotenv()


class Settings(BaseModel):
    """Runtime knobs read from the environment (and a local .env file)."""

    payment_provider: str = "paystack"
    paystack_secret_key: str = ""
    paystack_base_url: str = "https://api.paystack.co"
    paystack_webhook_secret: str = ""
    razorpay_key_id: str = ""
    razorpay_key_secret: str = ""
    razorpay_webhook_secret: str = ""
    gateway_timeout_seconds: float = Field(default=10.0, gt=0)

    default_currency: str = "NGN"
    platform_fee_percent: Decimal = Field(default=Decimal("3"), ge=0)
    cancellation_cutoff_hours: float = Field(default=24.0, ge=0)
    refund_ladder: str = "168:90,72:70,24:50,0:30"
    pending_booking_ttl_minutes: int = Field(default=30, gt=0)
    max_tickets_per_tier: int = Field(default=10, gt=0)
    max_tickets_per_order: int = Field(default=20, gt=0)

    frontend_url: str = "http://localhost:3000"
    log_level: str = "INFO"

    db_connect_max_retries: int = Field(default=30, gt=0)
    db_connect_retry_delay: float = Field(default=1.5, ge=0)

    @property
    def webhook_secret(self) -> str:
        if self.payment_provider == "razorpay":
            return self.razorpay_webhook_secret
        # Paystack signs webhooks with the account secret key.
        return self.paystack_webhook_secret or self.paystack_secret_key

    def parsed_refund_ladder(self) -> RefundLadder:
        return RefundLadder.parse(self.refund_ladder)

    @classmethod
    def from_env(cls) -> "Settings":
        defaults = cls()
        return cls(
            payment_provider=os.getenv("PAYMENT_PROVIDER", defaults.payment_provider).lower(),
            paystack_secret_key=os.getenv("PAYSTACK_SECRET_KEY", ""),
            paystack_base_url=os.getenv("PAYSTACK_BASE_URL", defaults.paystack_base_url),
            paystack_webhook_secret=os.getenv("PAYSTACK_WEBHOOK_SECRET", ""),
            razorpay_key_id=os.getenv("RAZORPAY_KEY_ID", ""),
            razorpay_key_secret=os.getenv("RAZORPAY_KEY_SECRET", ""),
            razorpay_webhook_secret=os.getenv("RAZORPAY_WEBHOOK_SECRET", ""),
            gateway_timeout_seconds=float(
                os.getenv("GATEWAY_TIMEOUT_SECONDS", defaults.gateway_timeout_seconds)
            ),
            default_currency=os.getenv("DEFAULT_CURRENCY", defaults.default_currency),
            platform_fee_percent=Decimal(
                os.getenv("PLATFORM_FEE_PERCENT", str(defaults.platform_fee_percent))
            ),
            cancellation_cutoff_hours=float(
                os.getenv("CANCELLATION_CUTOFF_HOURS", defaults.cancellation_cutoff_hours)
            ),
            refund_ladder=os.getenv("REFUND_LADDER", defaults.refund_ladder),
            pending_booking_ttl_minutes=int(
                os.getenv("PENDING_BOOKING_TTL_MINUTES", defaults.pending_booking_ttl_minutes)
            ),
            max_tickets_per_tier=int(
                os.getenv("MAX_TICKETS_PER_TIER", defaults.max_tickets_per_tier)
            ),
            max_tickets_per_order=int(
                os.getenv("MAX_TICKETS_PER_ORDER", defaults.max_tickets_per_order)
            ),
            frontend_url=os.getenv("FRONTEND_URL", defaults.frontend_url).rstrip("/"),
            log_level=os.getenv("LOG_LEVEL", defaults.log_level).upper(),
            db_connect_max_retries=int(
                os.getenv("DB_CONNECT_MAX_RETRIES", defaults.db_connect_max_retries)
            ),
            db_connect_retry_delay=float(
                os.getenv("DB_CONNECT_RETRY_DELAY", defaults.db_connect_retry_delay)
            ),
        )


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=(level or get_settings().log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
