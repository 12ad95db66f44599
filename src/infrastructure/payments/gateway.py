# src/infrastructure/payments/gateway.py

from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol


class VerificationStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    # Gateway has not settled the charge yet (abandoned, ongoing, ...).
    PENDING = "pending"


class WebhookKind(str, Enum):
    CHARGE_SUCCESS = "charge_success"
    CHARGE_FAILED = "charge_failed"
    REFUND_PROCESSED = "refund_processed"
    OTHER = "other"


@dataclass(frozen=True)
class PaymentInitialization:
    authorization_url: str
    access_code: str | None


@dataclass(frozen=True)
class PaymentVerification:
    reference: str
    status: VerificationStatus
    gateway_response: dict = field(default_factory=dict)
    channel: str | None = None
    amount: int | None = None
    message: str | None = None


@dataclass(frozen=True)
class WebhookNotification:
    kind: WebhookKind
    event_type: str
    reference: str | None
    verification: PaymentVerification | None = None


class PaymentGateway(Protocol):
    """
    Contract every payment provider adapter fulfils.
    Amounts are integer minor units. Implementations raise
    GatewayError / GatewayTimeoutError and never return partial data.
    """

    provider: str
    signature_header: str

    def initialize(
        self,
        email: str,
        amount_minor: int,
        reference: str,
        metadata: dict,
        callback_url: str,
        currency: str,
    ) -> PaymentInitialization:
        ...

    def verify(self, reference: str) -> PaymentVerification:
        ...

    def refund(self, reference: str, amount_minor: int) -> dict:
        ...

    def verify_webhook_signature(self, raw_body: bytes, signature: str | None) -> bool:
        ...

    def parse_webhook(self, payload: dict) -> WebhookNotification:
        ...
