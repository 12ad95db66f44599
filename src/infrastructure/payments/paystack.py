# src/infrastructure/payments/paystack.py

import hashlib
import hmac
import logging
from dataclasses import replace

import httpx

from src.domain.exceptions import GatewayError, GatewayTimeoutError
from src.infrastructure.payments.gateway import (
    PaymentInitialization,
    PaymentVerification,
    VerificationStatus,
    WebhookKind,
    WebhookNotification,
)

logger = logging.getLogger(__name__)

_STATUS_MAP = {
    "success": VerificationStatus.SUCCESS,
    "failed": VerificationStatus.FAILED,
    "reversed": VerificationStatus.FAILED,
}

_WEBHOOK_KINDS = {
    "charge.success": WebhookKind.CHARGE_SUCCESS,
    "charge.failed": WebhookKind.CHARGE_FAILED,
    "refund.processed": WebhookKind.REFUND_PROCESSED,
}


class PaystackGateway:
    """Paystack REST adapter. Webhooks are signed with HMAC-SHA512 of the raw body."""

    provider = "paystack"
    signature_header = "x-paystack-signature"

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str | None = None,
        base_url: str = "https://api.paystack.co",
        timeout_seconds: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self._webhook_secret = webhook_secret or secret_key
        self._client = httpx.Client(
            base_url=base_url,
            headers={
                "Authorization": f"Bearer {secret_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout_seconds,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def initialize(
        self,
        email: str,
        amount_minor: int,
        reference: str,
        metadata: dict,
        callback_url: str,
        currency: str,
    ) -> PaymentInitialization:
        body = self._request(
            "POST",
            "/transaction/initialize",
            json={
                "email": email,
                "amount": amount_minor,
                "currency": currency,
                "reference": reference,
                "metadata": metadata,
                "callback_url": callback_url,
            },
        )
        data = body.get("data") or {}
        if not data.get("authorization_url"):
            raise GatewayError("Paystack did not return an authorization url")

        return PaymentInitialization(
            authorization_url=data["authorization_url"],
            access_code=data.get("access_code"),
        )

    def verify(self, reference: str) -> PaymentVerification:
        try:
            body = self._request("GET", f"/transaction/verify/{reference}")
        except _ReferenceNotFound as exc:
            # Paystack never saw this reference, so no charge can exist.
            return PaymentVerification(
                reference=reference,
                status=VerificationStatus.FAILED,
                message=str(exc),
            )

        return self._verification_from(body.get("data") or {}, reference)

    def refund(self, reference: str, amount_minor: int) -> dict:
        body = self._request(
            "POST",
            "/refund",
            json={"transaction": reference, "amount": amount_minor},
        )
        return body.get("data") or {}

    def verify_webhook_signature(self, raw_body: bytes, signature: str | None) -> bool:
        if not signature or not self._webhook_secret:
            return False
        expected = hmac.new(
            self._webhook_secret.encode("utf-8"),
            raw_body,
            hashlib.sha512,
        ).hexdigest()
        return hmac.compare_digest(expected, signature)

    def parse_webhook(self, payload: dict) -> WebhookNotification:
        event_type = str(payload.get("event") or "")
        data = payload.get("data") or {}
        kind = _WEBHOOK_KINDS.get(event_type, WebhookKind.OTHER)

        if kind is WebhookKind.REFUND_PROCESSED:
            reference = data.get("transaction_reference") or data.get("reference")
            return WebhookNotification(kind=kind, event_type=event_type, reference=reference)

        reference = data.get("reference")
        verification = None
        if kind in (WebhookKind.CHARGE_SUCCESS, WebhookKind.CHARGE_FAILED) and reference:
            verification = self._verification_from(data, reference)
            if kind is WebhookKind.CHARGE_FAILED:
                verification = replace(verification, status=VerificationStatus.FAILED)

        return WebhookNotification(
            kind=kind,
            event_type=event_type,
            reference=reference,
            verification=verification,
        )

    def _verification_from(self, data: dict, reference: str) -> PaymentVerification:
        status = _STATUS_MAP.get(str(data.get("status", "")).lower(), VerificationStatus.PENDING)
        amount = data.get("amount")
        return PaymentVerification(
            reference=data.get("reference") or reference,
            status=status,
            gateway_response=data,
            channel=data.get("channel"),
            amount=int(amount) if amount is not None else None,
            message=data.get("gateway_response"),
        )

    def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            logger.warning("Paystack call timed out. method=%s path=%s", method, path)
            raise GatewayTimeoutError("Payment gateway timed out") from exc
        except httpx.HTTPError as exc:
            logger.warning("Paystack call failed. method=%s path=%s error=%s", method, path, exc)
            raise GatewayError("Payment gateway unreachable") from exc

        try:
            body = response.json()
        except ValueError:
            body = {}

        message = body.get("message") or f"HTTP {response.status_code}"
        if response.status_code in (400, 404) and "not found" in message.lower():
            raise _ReferenceNotFound(message)

        if response.is_error or not body.get("status"):
            logger.warning(
                "Paystack rejected request. method=%s path=%s status=%s message=%s",
                method,
                path,
                response.status_code,
                message,
            )
            raise GatewayError(message)

        return body


class _ReferenceNotFound(GatewayError):
    pass
