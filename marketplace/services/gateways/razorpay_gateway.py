"""Razorpay: cards, UPI and netbanking (INR)."""
import json
import logging
from collections.abc import Mapping
from decimal import Decimal
from typing import Any

import razorpay
import requests

from .base import (
    GatewayName,
    GatewayResult,
    PaymentGateway,
    PaymentStatus,
    WebhookEvent,
    hmac_sha256_hex,
    signatures_match,
    to_minor_units,
)

log = logging.getLogger("marketplace.gateways.razorpay")

SIGNATURE_HEADER = "x-razorpay-signature"

_RAZORPAY_ERRORS = (
    razorpay.errors.BadRequestError,
    razorpay.errors.ServerError,
    razorpay.errors.GatewayError,
)


class RazorpayGateway(PaymentGateway):
    name = GatewayName.RAZORPAY
    display_name = "Razorpay"
    description = "Pay securely with Credit/Debit Cards, UPI, Net Banking"

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        webhook_secret: str = "",
        currencies: list[str] | None = None,
        timeout: float = 15.0,
        client: Any = None,
    ):
        super().__init__(currencies or ["INR"], timeout)
        self.key_id = key_id
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret
        self.client = client or razorpay.Client(auth=(key_id, key_secret))

    @property
    def public_key(self) -> str | None:
        return self.key_id

    def _failure(self, action: str, exc: Exception) -> GatewayResult:
        if isinstance(exc, requests.Timeout):
            log.warning("Razorpay %s timed out after %ss", action, self.timeout)
            return GatewayResult.failure(f"Razorpay {action} timed out", timed_out=True)
        log.error("Razorpay %s failed: %s", action, exc)
        return GatewayResult.failure(str(exc) or f"Razorpay {action} failed")

    def create_order(self, amount, currency, receipt, items=None, metadata=None) -> GatewayResult:
        data = {
            "amount": to_minor_units(amount, currency),  # paise
            "currency": currency,
            "receipt": receipt,
            "payment_capture": 1,
        }
        if metadata:
            data["notes"] = {k: str(v) for k, v in metadata.items()}
        try:
            order = self.client.order.create(data=data, timeout=self.timeout)
        except (requests.RequestException, *_RAZORPAY_ERRORS) as e:
            return self._failure("order creation", e)
        return GatewayResult(
            success=True,
            gateway_order_id=order["id"],
            status=PaymentStatus.PENDING.value,
            raw=order,
        )

    def verify(self, payload: Mapping[str, Any]) -> GatewayResult:
        """Checkout handler signature: HMAC-SHA256(key_secret, order_id + "|" + payment_id)."""
        order_id = payload.get("razorpay_order_id") or ""
        payment_id = payload.get("razorpay_payment_id") or ""
        signature = payload.get("razorpay_signature")
        if not order_id or not payment_id:
            return GatewayResult.failure("razorpay_order_id and razorpay_payment_id are required")
        expected = hmac_sha256_hex(self.key_secret, f"{order_id}|{payment_id}")
        if not signatures_match(expected, signature):
            log.warning("Razorpay payment signature mismatch for order %s", order_id)
            return GatewayResult.bad_signature()
        return GatewayResult(
            success=True,
            gateway_order_id=order_id,
            payment_id=payment_id,
            status=PaymentStatus.PAID.value,
        )

    def refund(
        self,
        payment_id: str,
        amount: Decimal | None = None,
        currency: str | None = None,
        reference: str | None = None,
    ) -> GatewayResult:
        data: dict[str, Any] = {}
        if amount:
            data["amount"] = to_minor_units(amount, currency or "INR")
        if reference:
            data["receipt"] = reference[:40]
        try:
            refund = self.client.payment.refund(payment_id, data, timeout=self.timeout)
        except (requests.RequestException, *_RAZORPAY_ERRORS) as e:
            return self._failure("refund", e)
        return GatewayResult(
            success=True,
            payment_id=payment_id,
            status=refund.get("status"),
            refund={"id": refund["id"], "amount": amount, "status": refund.get("status")},
            raw=refund,
        )

    def handle_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> GatewayResult:
        if not self.webhook_secret:
            log.error("Razorpay webhook received but RAZORPAY_WEBHOOK_SECRET is not set")
            return GatewayResult.bad_signature()
        expected = hmac_sha256_hex(self.webhook_secret, raw_body)
        if not signatures_match(expected, headers.get(SIGNATURE_HEADER)):
            log.warning("Razorpay webhook signature mismatch")
            return GatewayResult.bad_signature()
        try:
            body = json.loads(raw_body)
        except ValueError:
            return GatewayResult.failure("malformed webhook body")

        event_type = body.get("event") or ""
        payload = body.get("payload") or {}
        payment = (payload.get("payment") or {}).get("entity") or {}
        order = (payload.get("order") or {}).get("entity") or {}

        if event_type in ("payment.captured", "order.paid"):
            event = WebhookEvent(
                event_type=event_type,
                new_status=PaymentStatus.PAID,
                gateway_order_id=payment.get("order_id") or order.get("id"),
                receipt=order.get("receipt"),
                payment_id=payment.get("id"),
                raw=body,
            )
        elif event_type == "payment.failed":
            event = WebhookEvent(
                event_type=event_type,
                new_status=PaymentStatus.FAILED,
                gateway_order_id=payment.get("order_id"),
                failure_reason=payment.get("error_description") or "payment failed",
                raw=body,
            )
        else:
            log.info("Unhandled Razorpay webhook event: %s", event_type)
            event = WebhookEvent(event_type=event_type, raw=body)
        return GatewayResult(success=True, event=event)

    def create_subscription(self, data: dict) -> GatewayResult:
        try:
            subscription = self.client.subscription.create(data=data, timeout=self.timeout)
        except (requests.RequestException, *_RAZORPAY_ERRORS) as e:
            return self._failure("subscription creation", e)
        return GatewayResult(success=True, status=subscription.get("status"), raw=subscription)

    def check_connection(self) -> GatewayResult:
        try:
            self.client.order.all({"count": 1}, timeout=self.timeout)
        except (requests.RequestException, *_RAZORPAY_ERRORS) as e:
            return self._failure("connection check", e)
        return GatewayResult(success=True, status="connected")
