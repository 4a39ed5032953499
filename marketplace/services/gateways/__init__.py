"""Processor adapters and the registry built from settings."""
import logging

from marketplace.core.config import Settings

from .base import (
    GatewayName,
    GatewayResult,
    PaymentGateway,
    PaymentStatus,
    WebhookEvent,
    to_minor_units,
)
from .cod_gateway import CashOnDeliveryGateway
from .paypal_gateway import PayPalGateway
from .razorpay_gateway import RazorpayGateway
from .stripe_gateway import StripeGateway

log = logging.getLogger("marketplace.gateways")


def build_gateways(settings: Settings) -> dict[GatewayName, PaymentGateway]:
    """One adapter per configured processor; missing credentials leave a gateway out. COD is always on."""
    timeout = settings.payment_request_timeout
    gateways: dict[GatewayName, PaymentGateway] = {}
    if settings.razorpay_enabled:
        gateways[GatewayName.RAZORPAY] = RazorpayGateway(
            key_id=settings.razorpay_key_id,
            key_secret=settings.razorpay_key_secret,
            webhook_secret=settings.razorpay_webhook_secret,
            currencies=settings.currencies_for("razorpay"),
            timeout=timeout,
        )
    else:
        log.warning("Razorpay credentials not provided; Razorpay is disabled.")
    if settings.stripe_enabled:
        gateways[GatewayName.STRIPE] = StripeGateway(
            secret_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            publishable_key=settings.stripe_publishable_key,
            currencies=settings.currencies_for("stripe"),
            timeout=timeout,
            tolerance=settings.webhook_tolerance_seconds,
        )
    else:
        log.warning("Stripe secret key not provided; Stripe is disabled.")
    if settings.paypal_enabled:
        frontend = settings.frontend_url.rstrip("/")
        gateways[GatewayName.PAYPAL] = PayPalGateway(
            client_id=settings.paypal_client_id,
            client_secret=settings.paypal_client_secret,
            webhook_id=settings.paypal_webhook_id,
            live=settings.paypal_mode.lower() == "live" or settings.environment == "production",
            currencies=settings.currencies_for("paypal"),
            timeout=timeout,
            return_url=f"{frontend}/payment/success",
            cancel_url=f"{frontend}/payment/failed",
            brand_name=settings.brand_name,
        )
    else:
        log.warning("PayPal credentials not provided; PayPal is disabled.")
    gateways[GatewayName.COD] = CashOnDeliveryGateway(currencies=settings.currencies_for("cod"))
    return gateways


__all__ = [
    "CashOnDeliveryGateway",
    "GatewayName",
    "GatewayResult",
    "PayPalGateway",
    "PaymentGateway",
    "PaymentStatus",
    "RazorpayGateway",
    "StripeGateway",
    "WebhookEvent",
    "build_gateways",
    "to_minor_units",
]
