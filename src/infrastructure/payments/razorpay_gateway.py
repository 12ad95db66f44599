# src/infrastructure/payments/razorpay_gateway.py

import logging

import razorpay
import requests

from src.domain.exceptions import GatewayError, GatewayTimeoutError
from src.infrastructure.payments.gateway import (
    PaymentInitialization,
    PaymentVerification,
    VerificationStatus,
    WebhookKind,
    WebhookNotification,
)

logger = logging.getLogger(__name__)

_LINK_STATUS_MAP = {
    "paid": VerificationStatus.SUCCESS,
    "cancelled": VerificationStatus.FAILED,
    "expired": VerificationStatus.FAILED,
}

_WEBHOOK_KINDS = {
    "payment_link.paid": WebhookKind.CHARGE_SUCCESS,
    "payment_link.cancelled": WebhookKind.CHARGE_FAILED,
    "payment_link.expired": WebhookKind.CHARGE_FAILED,
    "refund.processed": WebhookKind.REFUND_PROCESSED,
}


class RazorpayGateway:
    """
    Razorpay adapter built on payment links, so checkout is a hosted URL
    like Paystack's. Our reference travels as the link's reference_id.
    """

    provider = "razorpay"
    signature_header = "x-razorpay-signature"

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        webhook_secret: str,
        timeout_seconds: float = 10.0,
        client: razorpay.Client | None = None,
    ):
        if client is None:
            if not key_id or not key_secret:
                raise GatewayError(
                    "Razorpay keys not configured. Set RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET."
                )
            client = razorpay.Client(auth=(key_id, key_secret))
        self._client = client
        self._webhook_secret = webhook_secret
        self._timeout = timeout_seconds

    def initialize(
        self,
        email: str,
        amount_minor: int,
        reference: str,
        metadata: dict,
        callback_url: str,
        currency: str,
    ) -> PaymentInitialization:
        link = self._call(
            self._client.payment_link.create,
            {
                "amount": amount_minor,
                "currency": currency,
                "reference_id": reference,
                "customer": {"email": email},
                "notify": {"email": False, "sms": False},
                "callback_url": callback_url,
                "callback_method": "get",
                "notes": {key: str(value) for key, value in metadata.items()},
            },
        )
        if not link.get("short_url"):
            raise GatewayError("Razorpay did not return a payment link")

        return PaymentInitialization(
            authorization_url=link["short_url"],
            access_code=link.get("id"),
        )

    def verify(self, reference: str) -> PaymentVerification:
        link = self._find_link(reference)
        if link is None:
            return PaymentVerification(
                reference=reference,
                status=VerificationStatus.FAILED,
                message="Payment link not found",
            )
        return self._verification_from(link, reference)

    def refund(self, reference: str, amount_minor: int) -> dict:
        link = self._find_link(reference)
        payments = (link or {}).get("payments") or []
        captured = [p for p in payments if p.get("status") == "captured"]
        if not captured:
            raise GatewayError(f"No captured payment found for {reference}")

        return self._call(
            self._client.payment.refund,
            captured[0]["payment_id"],
            {"amount": amount_minor, "notes": {"reference": reference}},
        )

    def verify_webhook_signature(self, raw_body: bytes, signature: str | None) -> bool:
        if not signature or not self._webhook_secret:
            return False
        try:
            self._client.utility.verify_webhook_signature(
                raw_body.decode("utf-8"),
                signature,
                self._webhook_secret,
            )
        except razorpay.errors.SignatureVerificationError:
            return False
        return True

    def parse_webhook(self, payload: dict) -> WebhookNotification:
        event_type = str(payload.get("event") or "")
        body = payload.get("payload") or {}
        kind = _WEBHOOK_KINDS.get(event_type, WebhookKind.OTHER)

        if kind is WebhookKind.REFUND_PROCESSED:
            refund = (body.get("refund") or {}).get("entity") or {}
            reference = (refund.get("notes") or {}).get("reference")
            return WebhookNotification(kind=kind, event_type=event_type, reference=reference)

        link = (body.get("payment_link") or {}).get("entity") or {}
        reference = link.get("reference_id")
        verification = None
        if kind is not WebhookKind.OTHER and reference:
            payment = (body.get("payment") or {}).get("entity") or {}
            verification = self._verification_from(link, reference, channel=payment.get("method"))

        return WebhookNotification(
            kind=kind,
            event_type=event_type,
            reference=reference,
            verification=verification,
        )

    def _find_link(self, reference: str) -> dict | None:
        result = self._call(self._client.payment_link.all, {"reference_id": reference})
        links = result.get("payment_links") or []
        return links[0] if links else None

    def _verification_from(
        self,
        link: dict,
        reference: str,
        channel: str | None = None,
    ) -> PaymentVerification:
        status = _LINK_STATUS_MAP.get(str(link.get("status", "")).lower(), VerificationStatus.PENDING)
        amount = link.get("amount_paid") if status is VerificationStatus.SUCCESS else link.get("amount")
        return PaymentVerification(
            reference=reference,
            status=status,
            gateway_response=link,
            channel=channel,
            amount=int(amount) if amount is not None else None,
            message=link.get("status"),
        )

    def _call(self, func, *args):
        try:
            return func(*args, timeout=self._timeout)
        except requests.exceptions.Timeout as exc:
            logger.warning("Razorpay call timed out. call=%s", getattr(func, "__name__", func))
            raise GatewayTimeoutError("Payment gateway timed out") from exc
        except requests.exceptions.RequestException as exc:
            raise GatewayError("Payment gateway unreachable") from exc
        except (
            razorpay.errors.BadRequestError,
            razorpay.errors.GatewayError,
            razorpay.errors.ServerError,
        ) as exc:
            logger.warning("Razorpay rejected request. error=%s", exc)
            raise GatewayError(str(exc)) from exc
