"""Pytest fixtures: test client, isolated in-memory databases, tokens and processor fakes."""
import hashlib
import hmac
import itertools
import os
from decimal import Decimal
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

# In-memory SQLite and no real processor credentials (must be set before the app is imported)
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("RATE_LIMIT_PER_MINUTE", "1000")
for _var in (
    "RAZORPAY_KEY_ID",
    "RAZORPAY_KEY_SECRET",
    "STRIPE_SECRET_KEY",
    "PAYPAL_CLIENT_ID",
    "PAYPAL_CLIENT_SECRET",
):
    os.environ[_var] = ""

from marketplace import models  # noqa: E402,F401
from marketplace.api.deps import get_payment_service  # noqa: E402
from marketplace.core.database import engine as app_engine  # noqa: E402
from marketplace.core.security import create_access_token  # noqa: E402
from marketplace.main import app  # noqa: E402
from marketplace.models import Order, User  # noqa: E402
from marketplace.services.gateways import (  # noqa: E402
    CashOnDeliveryGateway,
    GatewayName,
    PayPalGateway,
    RazorpayGateway,
)
from marketplace.services.gateways.paypal_gateway import SANDBOX_BASE_URL  # noqa: E402
from marketplace.services.payment import PaymentService  # noqa: E402
from marketplace.services.payment_repository import OrderPaymentRepository  # noqa: E402

RAZORPAY_KEY_ID = "rzp_test_key"
RAZORPAY_KEY_SECRET = "rzp_test_secret"
RAZORPAY_WEBHOOK_SECRET = "rzp_webhook_secret"
PAYPAL_WEBHOOK_ID = "WH-TEST-1"


def sign(secret: str, message: bytes | str) -> str:
    if isinstance(message, str):
        message = message.encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


class FakeRazorpayClient:
    """Stands in for razorpay.Client: records calls and answers like the API does."""

    def __init__(self):
        self.calls: list[tuple[str, dict]] = []
        self.fail_with: Exception | None = None
        self._order_ids = (f"gwo_{i}" for i in itertools.count(1))
        self._refund_ids = (f"rfnd_{i}" for i in itertools.count(1))
        self.order = SimpleNamespace(create=self._order_create, all=self._order_all)
        self.payment = SimpleNamespace(refund=self._payment_refund)
        self.subscription = SimpleNamespace(create=self._subscription_create)

    def _call(self, name: str, **kwargs) -> None:
        self.calls.append((name, kwargs))
        if self.fail_with is not None:
            raise self.fail_with

    def _order_create(self, data, timeout=None):
        self._call("order.create", data=data, timeout=timeout)
        return {"id": next(self._order_ids), "amount": data["amount"], "currency": data["currency"], "receipt": data["receipt"], "status": "created"}

    def _order_all(self, data=None, timeout=None):
        self._call("order.all", data=data, timeout=timeout)
        return {"count": 0, "items": []}

    def _payment_refund(self, payment_id, data=None, timeout=None):
        self._call("payment.refund", payment_id=payment_id, data=data, timeout=timeout)
        return {"id": next(self._refund_ids), "payment_id": payment_id, "amount": (data or {}).get("amount"), "status": "processed"}

    def _subscription_create(self, data=None, timeout=None):
        self._call("subscription.create", data=data, timeout=timeout)
        return {"id": "sub_1", "plan_id": (data or {}).get("plan_id"), "status": "created"}


class FakeResponse:
    def __init__(self, status_code: int, body: dict | None = None):
        self.status_code = status_code
        self._body = body
        self.content = b"{}" if body is not None else b""
        self.text = str(body or "")

    def json(self):
        if self._body is None:
            raise ValueError("no body")
        return self._body


class FakePayPalSession:
    """Stands in for requests.Session against the PayPal sandbox; responses are keyed by (method, path)."""

    def __init__(self):
        self.calls: list[tuple[str, str, dict | None, dict]] = []
        self.token_requests = 0
        self.fail_with: Exception | None = None
        self.responses: dict[tuple[str, str], tuple[int, dict]] = {
            ("POST", "/v2/checkout/orders"): (201, {
                "id": "po_6",
                "status": "CREATED",
                "links": [
                    {"rel": "self", "href": f"{SANDBOX_BASE_URL}/v2/checkout/orders/po_6"},
                    {"rel": "approve", "href": "https://www.sandbox.paypal.com/checkoutnow?token=po_6"},
                ],
            }),
            ("POST", "/v2/checkout/orders/po_6/capture"): (201, {
                "id": "po_6",
                "status": "COMPLETED",
                "purchase_units": [{"payments": {"captures": [{"id": "cap_6", "status": "COMPLETED"}]}}],
            }),
            ("GET", "/v2/checkout/orders/po_6"): (200, {"id": "po_6", "status": "COMPLETED"}),
            ("POST", "/v2/payments/captures/cap_6/refund"): (201, {"id": "pp_refund_1", "status": "COMPLETED"}),
            ("POST", "/v1/notifications/verify-webhook-signature"): (200, {"verification_status": "SUCCESS"}),
            ("POST", "/v1/billing/subscriptions"): (201, {
                "id": "I-SUB1",
                "status": "APPROVAL_PENDING",
                "links": [{"rel": "approve", "href": "https://www.sandbox.paypal.com/webapps/billing/subscriptions?ba_token=1"}],
            }),
        }

    def post(self, url, data=None, auth=None, headers=None, timeout=None):
        # Only the OAuth token call goes through post(); API calls use request()
        self.token_requests += 1
        if self.fail_with is not None:
            raise self.fail_with
        return FakeResponse(200, {"access_token": "A21-test-token", "expires_in": 32400})

    def request(self, method, url, json=None, headers=None, timeout=None):
        path = url[len(SANDBOX_BASE_URL):]
        self.calls.append((method, path, json, headers or {}))
        if self.fail_with is not None:
            raise self.fail_with
        status, body = self.responses.get((method, path), (404, {"name": "RESOURCE_NOT_FOUND", "message": "not found"}))
        return FakeResponse(status, body)


@pytest.fixture
def db_engine():
    """Fresh in-memory database per test for service and repository tests."""
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def repository(db_engine):
    return OrderPaymentRepository(db_engine)


def _order_factory(engine):
    def make(order_id: str = "o1", amount: str = "1000", currency: str = "INR", customer_id: int = 1) -> Order:
        with Session(engine) as db:
            order = Order(
                id=order_id,
                order_number=f"ORD-{order_id}",
                customer_id=customer_id,
                amount=Decimal(amount),
                currency=currency,
            )
            db.add(order)
            db.commit()
            db.refresh(order)
            return order

    return make


@pytest.fixture
def make_order(db_engine):
    return _order_factory(db_engine)


@pytest.fixture
def razorpay_client():
    return FakeRazorpayClient()


@pytest.fixture
def paypal_session():
    return FakePayPalSession()


@pytest.fixture
def gateways(razorpay_client, paypal_session):
    return {
        GatewayName.RAZORPAY: RazorpayGateway(
            key_id=RAZORPAY_KEY_ID,
            key_secret=RAZORPAY_KEY_SECRET,
            webhook_secret=RAZORPAY_WEBHOOK_SECRET,
            client=razorpay_client,
        ),
        GatewayName.PAYPAL: PayPalGateway(
            client_id="pp_client",
            client_secret="pp_secret",
            webhook_id=PAYPAL_WEBHOOK_ID,
            return_url="http://shop.test/payment/success",
            cancel_url="http://shop.test/payment/failed",
            session=paypal_session,
        ),
        GatewayName.COD: CashOnDeliveryGateway(),
    }


@pytest.fixture
def service(gateways, repository):
    return PaymentService(gateways, repository)


# ---------- HTTP ----------
@pytest.fixture
def client():
    """TestClient; lifespan creates the tables, every test starts from empty ones."""
    with TestClient(app) as c:
        SQLModel.metadata.drop_all(app_engine)
        SQLModel.metadata.create_all(app_engine)
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def api_service(client, gateways):
    """Payment service over the app database with fake processors, injected into the routes."""
    svc = PaymentService(gateways, OrderPaymentRepository(app_engine))
    app.dependency_overrides[get_payment_service] = lambda: svc
    return svc


@pytest.fixture
def api_make_order(client):
    return _order_factory(app_engine)


def _user(email: str, is_admin: bool = False, is_banned: bool = False) -> User:
    with Session(app_engine) as db:
        user = User(email=email, full_name=email.split("@")[0], is_admin=is_admin, is_banned=is_banned)
        db.add(user)
        db.commit()
        db.refresh(user)
        return user


@pytest.fixture
def customer(client):
    return _user("customer@example.com")


@pytest.fixture
def admin(client):
    return _user("admin@example.com", is_admin=True)


@pytest.fixture
def auth_headers(customer):
    return {"Authorization": f"Bearer {create_access_token({'sub': str(customer.id)})}"}


@pytest.fixture
def admin_headers(admin):
    return {"Authorization": f"Bearer {create_access_token({'sub': str(admin.id)})}"}
