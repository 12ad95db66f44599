from src.config import Settings
from src.infrastructure.payments.gateway import PaymentGateway
from src.infrastructure.payments.paystack import PaystackGateway


def build_gateway(settings: Settings) -> PaymentGateway:
    if settings.payment_provider == "razorpay":
        # The razorpay SDK is only loaded when that provider is selected.
        from src.infrastructure.payments.razorpay_gateway import RazorpayGateway

        return RazorpayGateway(
            key_id=settings.razorpay_key_id,
            key_secret=settings.razorpay_key_secret,
            webhook_secret=settings.razorpay_webhook_secret,
            timeout_seconds=settings.gateway_timeout_seconds,
        )
    if settings.payment_provider == "paystack":
        return PaystackGateway(
            secret_key=settings.paystack_secret_key,
            webhook_secret=settings.webhook_secret,
            base_url=settings.paystack_base_url,
            timeout_seconds=settings.gateway_timeout_seconds,
        )
    raise ValueError(f"Unsupported payment provider: {settings.payment_provider}")
