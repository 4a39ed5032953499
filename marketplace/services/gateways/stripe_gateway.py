"""Stripe: card payments through PaymentIntents."""
import json
import logging
from collections.abc import Mapping
from decimal import Decimal
from typing import Any

import stripe

from .base import (
    GatewayName,
    GatewayResult,
    PaymentGateway,
    PaymentStatus,
    WebhookEvent,
    to_minor_units,
)

log = logging.getLogger("marketplace.gateways.stripe")

SIGNATURE_HEADER = "stripe-signature"


class StripeGateway(PaymentGateway):
    name = GatewayName.STRIPE
    display_name = "Stripe"
    description = "Pay securely with Credit/Debit Cards"

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str = "",
        publishable_key: str = "",
        currencies: list[str] | None = None,
        timeout: float = 15.0,
        tolerance: int = 300,
    ):
        super().__init__(currencies or ["USD", "EUR", "GBP", "INR"], timeout)
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.publishable_key = publishable_key
        self.tolerance = tolerance
        # One shared HTTP client for the process; retries are left to the caller/webhooks
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)
        stripe.max_network_retries = 0

    @property
    def public_key(self) -> str | None:
        return self.publishable_key or None

    def _failure(self, action: str, exc: stripe.StripeError) -> GatewayResult:
        if isinstance(exc, stripe.APIConnectionError):
            log.warning("Stripe %s could not reach the API: %s", action, exc)
            return GatewayResult.failure(f"Stripe {action} timed out", timed_out=True)
        log.error("Stripe %s failed: %s", action, exc)
        return GatewayResult.failure(getattr(exc, "user_message", None) or str(exc) or f"Stripe {action} failed")

    def create_order(self, amount, currency, receipt, items=None, metadata=None) -> GatewayResult:
        try:
            intent = stripe.PaymentIntent.create(
                amount=to_minor_units(amount, currency),
                currency=currency.lower(),
                metadata={"receipt": receipt, **{k: str(v) for k, v in (metadata or {}).items()}},
                automatic_payment_methods={"enabled": True},
                api_key=self.secret_key,
                idempotency_key=receipt,
            )
        except stripe.StripeError as e:
            return self._failure("payment intent creation", e)
        return GatewayResult(
            success=True,
            gateway_order_id=intent.id,
            client_secret=intent.client_secret,
            status=PaymentStatus.PENDING.value,
        )

    def verify(self, payload: Mapping[str, Any]) -> GatewayResult:
        intent_id = payload.get("payment_intent_id")
        if not intent_id:
            return GatewayResult.failure("payment_intent_id is required")
        try:
            intent = stripe.PaymentIntent.retrieve(intent_id, api_key=self.secret_key)
        except stripe.StripeError as e:
            return self._failure("payment verification", e)
        if intent.status != "succeeded":
            return GatewayResult.failure(f"Payment status: {intent.status}", status=intent.status)
        return GatewayResult(
            success=True,
            gateway_order_id=intent.id,
            payment_id=intent.id,
            status=PaymentStatus.PAID.value,
        )

    def refund(
        self,
        payment_id: str,
        amount: Decimal | None = None,
        currency: str | None = None,
        reference: str | None = None,
    ) -> GatewayResult:
        params: dict[str, Any] = {"payment_intent": payment_id}
        if amount:
            params["amount"] = to_minor_units(amount, currency or "USD")
        if reference:
            params["idempotency_key"] = reference
        try:
            refund = stripe.Refund.create(api_key=self.secret_key, **params)
        except stripe.StripeError as e:
            return self._failure("refund", e)
        return GatewayResult(
            success=True,
            payment_id=payment_id,
            status=refund.status,
            refund={"id": refund.id, "amount": amount, "status": refund.status},
        )

    def handle_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> GatewayResult:
        if not self.webhook_secret:
            log.error("Stripe webhook received but STRIPE_WEBHOOK_SECRET is not set")
            return GatewayResult.bad_signature()
        try:
            event = stripe.Webhook.construct_event(
                raw_body,
                headers.get(SIGNATURE_HEADER) or "",
                self.webhook_secret,
                tolerance=self.tolerance,
            )
        except stripe.SignatureVerificationError as e:
            log.warning("Stripe webhook signature rejected: %s", e)
            return GatewayResult.bad_signature()
        except ValueError:
            return GatewayResult.failure("malformed webhook body")

        # StripeObject dropped its dict interface; read the verified payload as plain JSON
        payload = json.loads(raw_body)
        obj = (payload.get("data") or {}).get("object") or {}
        metadata = obj.get("metadata") or {}
        if event.type == "payment_intent.succeeded":
            normalized = WebhookEvent(
                event_type=event.type,
                new_status=PaymentStatus.PAID,
                receipt=metadata.get("receipt"),
                gateway_order_id=obj.get("id"),
                payment_id=obj.get("id"),
                raw={"id": event.id, "type": event.type},
            )
        elif event.type == "payment_intent.payment_failed":
            last_error = obj.get("last_payment_error") or {}
            normalized = WebhookEvent(
                event_type=event.type,
                new_status=PaymentStatus.FAILED,
                receipt=metadata.get("receipt"),
                gateway_order_id=obj.get("id"),
                failure_reason=last_error.get("message") or "payment failed",
                raw={"id": event.id, "type": event.type},
            )
        else:
            log.info("Unhandled Stripe webhook event type: %s", event.type)
            normalized = WebhookEvent(event_type=event.type)
        return GatewayResult(success=True, event=normalized)

    def create_subscription(self, data: dict) -> GatewayResult:
        """Customer + incomplete subscription; the client confirms the first invoice's intent."""
        try:
            customer = stripe.Customer.create(
                email=data.get("email"),
                name=data.get("name"),
                metadata=data.get("metadata") or {},
                api_key=self.secret_key,
            )
            subscription = stripe.Subscription.create(
                customer=customer.id,
                items=[{"price": data["price_id"]}],
                payment_behavior="default_incomplete",
                payment_settings={"save_default_payment_method": "on_subscription"},
                expand=["latest_invoice.payment_intent"],
                api_key=self.secret_key,
            )
        except stripe.StripeError as e:
            return self._failure("subscription creation", e)
        invoice = getattr(subscription, "latest_invoice", None)
        intent = getattr(invoice, "payment_intent", None)
        return GatewayResult(
            success=True,
            status=subscription.status,
            client_secret=getattr(intent, "client_secret", None),
            raw={"id": subscription.id, "customer": customer.id},
        )

    def check_connection(self) -> GatewayResult:
        try:
            stripe.Balance.retrieve(api_key=self.secret_key)
        except stripe.StripeError as e:
            return self._failure("connection check", e)
        return GatewayResult(success=True, status="connected")
