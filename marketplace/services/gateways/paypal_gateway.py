"""PayPal wallet: Orders v2 REST API (create -> buyer approval -> capture)."""
import json
import logging
import time
from collections.abc import Mapping
from decimal import Decimal
from typing import Any

import requests
from requests.auth import HTTPBasicAuth

from .base import (
    GatewayName,
    GatewayResult,
    PaymentGateway,
    PaymentStatus,
    WebhookEvent,
)

log = logging.getLogger("marketplace.gateways.paypal")

LIVE_BASE_URL = "https://api-m.paypal.com"
SANDBOX_BASE_URL = "https://api-m.sandbox.paypal.com"
COMMON_HEADERS = {"Content-Type": "application/json", "Accept": "application/json"}

# Headers PayPal signs webhook deliveries with
TRANSMISSION_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}


class PayPalAPIError(Exception):
    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        super().__init__(message)


def _money(value: Decimal | str | int | float, currency: str) -> dict:
    return {"currency_code": currency, "value": f"{Decimal(str(value)):.2f}"}


class PayPalGateway(PaymentGateway):
    name = GatewayName.PAYPAL
    display_name = "PayPal"
    description = "Pay with your PayPal account"
    captures_on_verify = True

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        webhook_id: str = "",
        live: bool = False,
        currencies: list[str] | None = None,
        timeout: float = 15.0,
        return_url: str = "",
        cancel_url: str = "",
        brand_name: str = "Marketplace",
        session: requests.Session | None = None,
    ):
        super().__init__(currencies or ["USD", "EUR", "GBP"], timeout)
        self.client_id = client_id
        self.client_secret = client_secret
        self.webhook_id = webhook_id
        self.base_url = LIVE_BASE_URL if live else SANDBOX_BASE_URL
        self.return_url = return_url
        self.cancel_url = cancel_url
        self.brand_name = brand_name
        self.session = session or requests.Session()
        self._token: str | None = None
        self._token_expires_at = 0.0

    @property
    def public_key(self) -> str | None:
        return self.client_id

    # ---------- HTTP ----------
    def _access_token(self) -> str:
        """Client-credentials token, cached until shortly before it expires."""
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token
        resp = self.session.post(
            f"{self.base_url}/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=HTTPBasicAuth(self.client_id, self.client_secret),
            headers={"Accept": "application/json"},
            timeout=self.timeout,
        )
        if resp.status_code != 200:
            raise PayPalAPIError(resp.status_code, "PayPal authentication failed")
        body = resp.json()
        self._token = body["access_token"]
        self._token_expires_at = time.monotonic() + max(int(body.get("expires_in", 0)) - 60, 0)
        return self._token

    def _request(self, method: str, path: str, payload: dict | None = None, request_id: str | None = None) -> dict:
        headers = {**COMMON_HEADERS, "Authorization": f"Bearer {self._access_token()}"}
        if request_id:
            headers["PayPal-Request-Id"] = request_id
        if method == "POST":
            headers["Prefer"] = "return=representation"
        resp = self.session.request(
            method,
            f"{self.base_url}{path}",
            json=payload,
            headers=headers,
            timeout=self.timeout,
        )
        if resp.status_code >= 400:
            try:
                detail = resp.json()
                message = detail.get("message") or detail.get("name") or resp.text
            except ValueError:
                message = resp.text
            raise PayPalAPIError(resp.status_code, message or f"PayPal HTTP {resp.status_code}")
        return resp.json() if resp.content else {}

    def _failure(self, action: str, exc: Exception) -> GatewayResult:
        if isinstance(exc, requests.Timeout):
            log.warning("PayPal %s timed out after %ss", action, self.timeout)
            return GatewayResult.failure(f"PayPal {action} timed out", timed_out=True)
        log.error("PayPal %s failed: %s", action, exc)
        return GatewayResult.failure(str(exc) or f"PayPal {action} failed")

    # ---------- Orders ----------
    def _order_body(self, amount: Decimal, currency: str, receipt: str, items: list[dict] | None) -> dict:
        if items:
            lines = [
                {
                    "name": str(item.get("name") or "Order Item")[:127],
                    "unit_amount": _money(item.get("price", 0), currency),
                    "quantity": str(int(item.get("quantity", 1))),
                    "category": "PHYSICAL_GOODS",
                }
                for item in items
            ]
            item_total = sum(
                (Decimal(str(item.get("price", 0))) * int(item.get("quantity", 1)) for item in items),
                Decimal("0"),
            )
        else:
            lines = [
                {
                    "name": "Order Item",
                    "unit_amount": _money(amount, currency),
                    "quantity": "1",
                    "category": "PHYSICAL_GOODS",
                }
            ]
            item_total = Decimal(amount)
        return {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": receipt,
                    "custom_id": receipt,
                    "amount": {
                        **_money(amount, currency),
                        "breakdown": {"item_total": _money(item_total, currency)},
                    },
                    "items": lines,
                }
            ],
            "application_context": {
                "return_url": self.return_url,
                "cancel_url": self.cancel_url,
                "brand_name": self.brand_name,
                "landing_page": "BILLING",
                "shipping_preference": "SET_PROVIDED_ADDRESS",
                "user_action": "PAY_NOW",
            },
        }

    def create_order(self, amount, currency, receipt, items=None, metadata=None) -> GatewayResult:
        try:
            order = self._request(
                "POST",
                "/v2/checkout/orders",
                self._order_body(amount, currency, receipt, items),
                request_id=receipt,
            )
        except (requests.RequestException, PayPalAPIError) as e:
            return self._failure("order creation", e)
        approval_url = next(
            (link.get("href") for link in order.get("links", []) if link.get("rel") in ("approve", "payer-action")),
            None,
        )
        return GatewayResult(
            success=True,
            gateway_order_id=order["id"],
            approval_url=approval_url,
            status=PaymentStatus.PENDING.value,
            raw={"status": order.get("status")},
        )

    def capture(self, gateway_order_id: str) -> GatewayResult:
        try:
            order = self._request("POST", f"/v2/checkout/orders/{gateway_order_id}/capture", {})
        except (requests.RequestException, PayPalAPIError) as e:
            return self._failure("order capture", e)
        status = order.get("status")
        if status != "COMPLETED":
            return GatewayResult.failure(f"Capture status: {status}", status=status)
        capture = order["purchase_units"][0]["payments"]["captures"][0]
        return GatewayResult(
            success=True,
            gateway_order_id=order.get("id"),
            payment_id=capture["id"],
            status=status,
        )

    def verify(self, payload: Mapping[str, Any]) -> GatewayResult:
        """Capture the approved order, then read it back; COMPLETED means paid."""
        order_id = payload.get("paypal_order_id")
        if not order_id:
            return GatewayResult.failure("paypal_order_id is required")
        captured = self.capture(order_id)
        if not captured.success:
            return captured
        try:
            order = self._request("GET", f"/v2/checkout/orders/{order_id}")
        except (requests.RequestException, PayPalAPIError) as e:
            return self._failure("payment verification", e)
        if order.get("status") != "COMPLETED":
            return GatewayResult.failure(f"Payment status: {order.get('status')}", status=order.get("status"))
        return GatewayResult(
            success=True,
            gateway_order_id=order_id,
            payment_id=captured.payment_id,
            status=PaymentStatus.PAID.value,
        )

    def refund(
        self,
        payment_id: str,
        amount: Decimal | None = None,
        currency: str | None = None,
        reference: str | None = None,
    ) -> GatewayResult:
        body: dict[str, Any] = {}
        if amount:
            body["amount"] = _money(amount, currency or "USD")
        try:
            refund = self._request(
                "POST", f"/v2/payments/captures/{payment_id}/refund", body, request_id=reference
            )
        except (requests.RequestException, PayPalAPIError) as e:
            return self._failure("refund", e)
        return GatewayResult(
            success=True,
            payment_id=payment_id,
            status=refund.get("status"),
            refund={"id": refund.get("id"), "amount": amount, "status": refund.get("status")},
        )

    # ---------- Webhooks ----------
    def _signature_verified(self, headers: Mapping[str, str], event: dict) -> bool:
        """PayPal's verify-webhook-signature call checks the cert chain and transmission signature."""
        fields = {key: headers.get(header) for key, header in TRANSMISSION_HEADERS.items()}
        if not all(fields.values()):
            return False
        result = self._request(
            "POST",
            "/v1/notifications/verify-webhook-signature",
            {**fields, "webhook_id": self.webhook_id, "webhook_event": event},
        )
        return result.get("verification_status") == "SUCCESS"

    def handle_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> GatewayResult:
        if not self.webhook_id:
            log.error("PayPal webhook received but PAYPAL_WEBHOOK_ID is not set")
            return GatewayResult.bad_signature()
        try:
            body = json.loads(raw_body)
        except ValueError:
            body = None
        if not isinstance(body, dict):
            return GatewayResult.failure("malformed webhook body")
        try:
            verified = self._signature_verified(headers, body)
        except (requests.RequestException, PayPalAPIError) as e:
            return self._failure("webhook verification", e)
        if not verified:
            log.warning("PayPal webhook signature rejected: id=%s", body.get("id"))
            return GatewayResult.bad_signature()

        event_type = body.get("event_type") or ""
        resource = body.get("resource") or {}
        if event_type == "CHECKOUT.ORDER.COMPLETED":
            unit = (resource.get("purchase_units") or [{}])[0]
            captures = (unit.get("payments") or {}).get("captures") or [{}]
            event = WebhookEvent(
                event_type=event_type,
                new_status=PaymentStatus.PAID,
                receipt=unit.get("reference_id"),
                gateway_order_id=resource.get("id"),
                payment_id=captures[0].get("id"),
                raw=body,
            )
        elif event_type in ("PAYMENT.CAPTURE.COMPLETED", "PAYMENT.CAPTURE.DENIED"):
            related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
            paid = event_type == "PAYMENT.CAPTURE.COMPLETED"
            event = WebhookEvent(
                event_type=event_type,
                new_status=PaymentStatus.PAID if paid else PaymentStatus.FAILED,
                receipt=resource.get("custom_id"),
                gateway_order_id=related.get("order_id"),
                payment_id=resource.get("id") if paid else None,
                failure_reason=None if paid else "capture denied",
                raw=body,
            )
        else:
            log.info("Unhandled PayPal webhook event: %s", event_type)
            event = WebhookEvent(event_type=event_type, raw=body)
        return GatewayResult(success=True, event=event)

    def create_subscription(self, data: dict) -> GatewayResult:
        try:
            subscription = self._request("POST", "/v1/billing/subscriptions", data)
        except (requests.RequestException, PayPalAPIError) as e:
            return self._failure("subscription creation", e)
        approval_url = next(
            (link.get("href") for link in subscription.get("links", []) if link.get("rel") == "approve"),
            None,
        )
        return GatewayResult(
            success=True,
            status=subscription.get("status"),
            approval_url=approval_url,
            raw={"id": subscription.get("id")},
        )

    def check_connection(self) -> GatewayResult:
        try:
            self._access_token()
        except (requests.RequestException, PayPalAPIError) as e:
            return self._failure("connection check", e)
        return GatewayResult(success=True, status="connected")
