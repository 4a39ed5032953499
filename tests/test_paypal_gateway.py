"""PayPal adapter: Orders v2 over a fake HTTP session."""
import json
from decimal import Decimal

import requests

from marketplace.services.gateways import PaymentStatus, PayPalGateway
from marketplace.services.gateways.paypal_gateway import LIVE_BASE_URL

from conftest import PAYPAL_WEBHOOK_ID, FakePayPalSession

TRANSMISSION = {
    "paypal-auth-algo": "SHA256withRSA",
    "paypal-cert-url": "https://api.sandbox.paypal.com/v1/notifications/certs/CERT-1",
    "paypal-transmission-id": "tx-1",
    "paypal-transmission-sig": "c2lnbmF0dXJl",
    "paypal-transmission-time": "2026-10-18T10:00:00Z",
}


def _gateway(session, **kwargs):
    return PayPalGateway("pp_client", "pp_secret", webhook_id=PAYPAL_WEBHOOK_ID, session=session, **kwargs)


def test_live_mode_uses_live_host():
    assert _gateway(FakePayPalSession(), live=True).base_url == LIVE_BASE_URL


def test_create_order_without_items_sends_single_line():
    session = FakePayPalSession()
    result = _gateway(session, brand_name="Shop").create_order(Decimal("50"), "USD", "order_o6_1")
    assert result.success
    assert result.gateway_order_id == "po_6"
    assert result.approval_url.endswith("token=po_6")
    _, _, body, headers = session.calls[0]
    unit = body["purchase_units"][0]
    assert unit["custom_id"] == "order_o6_1"
    assert unit["items"] == [
        {"name": "Order Item", "unit_amount": {"currency_code": "USD", "value": "50.00"}, "quantity": "1", "category": "PHYSICAL_GOODS"}
    ]
    assert body["application_context"]["brand_name"] == "Shop"
    assert headers["Authorization"] == "Bearer A21-test-token"


def test_access_token_is_reused():
    session = FakePayPalSession()
    gateway = _gateway(session)
    gateway.create_order(Decimal("5"), "USD", "r1")
    gateway.create_order(Decimal("5"), "USD", "r2")
    assert session.token_requests == 1


def test_verify_captures_then_reads_back():
    session = FakePayPalSession()
    result = _gateway(session).verify({"paypal_order_id": "po_6"})
    assert result.success
    assert result.payment_id == "cap_6"
    assert result.status == PaymentStatus.PAID.value


def test_verify_not_completed_fails():
    session = FakePayPalSession()
    session.responses[("GET", "/v2/checkout/orders/po_6")] = (200, {"id": "po_6", "status": "APPROVED"})
    result = _gateway(session).verify({"paypal_order_id": "po_6"})
    assert not result.success
    assert result.status == "APPROVED"


def test_timeout_is_flagged():
    session = FakePayPalSession()
    session.fail_with = requests.ReadTimeout("read timed out")
    assert _gateway(session).create_order(Decimal("5"), "USD", "r1").timed_out


def test_refund_of_capture_sends_decimal_amount():
    session = FakePayPalSession()
    result = _gateway(session).refund("cap_6", Decimal("20"), "USD")
    assert result.refund["id"] == "pp_refund_1"
    method, path, body, _ = session.calls[0]
    assert (method, path) == ("POST", "/v2/payments/captures/cap_6/refund")
    assert body == {"amount": {"currency_code": "USD", "value": "20.00"}}


def test_webhook_is_verified_with_paypal():
    session = FakePayPalSession()
    event = {
        "id": "WH-1",
        "event_type": "CHECKOUT.ORDER.COMPLETED",
        "resource": {"id": "po_6", "purchase_units": [{"reference_id": "order_o6_1"}]},
    }
    result = _gateway(session).handle_webhook(json.dumps(event).encode(), TRANSMISSION)
    assert result.success
    assert result.event.new_status == PaymentStatus.PAID
    assert result.event.receipt == "order_o6_1"
    _, path, body, _ = session.calls[0]
    assert path == "/v1/notifications/verify-webhook-signature"
    assert body["webhook_id"] == PAYPAL_WEBHOOK_ID
    assert body["transmission_id"] == "tx-1"
    assert body["webhook_event"] == event


def test_webhook_rejected_by_paypal():
    session = FakePayPalSession()
    session.responses[("POST", "/v1/notifications/verify-webhook-signature")] = (200, {"verification_status": "FAILURE"})
    body = json.dumps({"event_type": "PAYMENT.CAPTURE.COMPLETED", "resource": {}}).encode()
    assert _gateway(session).handle_webhook(body, TRANSMISSION).signature_invalid


def test_webhook_without_transmission_headers_never_calls_paypal():
    session = FakePayPalSession()
    body = json.dumps({"event_type": "PAYMENT.CAPTURE.COMPLETED", "resource": {}}).encode()
    assert _gateway(session).handle_webhook(body, {}).signature_invalid
    assert session.calls == []


def test_capture_denied_maps_to_failed():
    session = FakePayPalSession()
    event = {
        "event_type": "PAYMENT.CAPTURE.DENIED",
        "resource": {"id": "cap_6", "custom_id": "order_o6_1", "supplementary_data": {"related_ids": {"order_id": "po_6"}}},
    }
    result = _gateway(session).handle_webhook(json.dumps(event).encode(), TRANSMISSION)
    assert result.event.new_status == PaymentStatus.FAILED
    assert result.event.payment_id is None


def test_order_completed_carries_capture_id():
    session = FakePayPalSession()
    event = {
        "event_type": "CHECKOUT.ORDER.COMPLETED",
        "resource": {
            "id": "po_6",
            "purchase_units": [{"reference_id": "order_o6_1", "payments": {"captures": [{"id": "cap_6"}]}}],
        },
    }
    result = _gateway(session).handle_webhook(json.dumps(event).encode(), TRANSMISSION)
    assert (result.event.gateway_order_id, result.event.payment_id) == ("po_6", "cap_6")


def test_webhook_body_that_is_not_an_object_is_malformed():
    session = FakePayPalSession()
    result = _gateway(session).handle_webhook(b'["CHECKOUT.ORDER.COMPLETED"]', TRANSMISSION)
    assert not result.success
    assert not result.signature_invalid
    assert session.calls == []


def test_refund_reference_is_sent_as_request_id():
    session = FakePayPalSession()
    _gateway(session).refund("cap_6", Decimal("20"), "USD", reference="refund_o6_3")
    _, _, _, headers = session.calls[0]
    assert headers["PayPal-Request-Id"] == "refund_o6_3"
