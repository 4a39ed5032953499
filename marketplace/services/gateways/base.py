"""Shared contract for processor adapters.

Every adapter answers with a GatewayResult instead of raising: processor and
network failures come back as ``success=False`` with ``error`` set, plus
``timed_out`` / ``signature_invalid`` so the payment service can pick the
right error kind. Only programming errors escape as exceptions.
"""
import hashlib
import hmac
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any

# Currencies without a minor unit: the processor expects the major amount as is
ZERO_DECIMAL_CURRENCIES = {"BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA", "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF"}

INVALID_SIGNATURE = "invalid signature"


class GatewayName(str, Enum):
    RAZORPAY = "razorpay"
    STRIPE = "stripe"
    PAYPAL = "paypal"
    COD = "cod"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUNDED = "refunded"


@dataclass
class WebhookEvent:
    """Processor event reduced to what the order record needs."""

    event_type: str
    new_status: PaymentStatus | None = None  # None: acknowledged, nothing to apply
    receipt: str | None = None
    gateway_order_id: str | None = None
    payment_id: str | None = None
    failure_reason: str | None = None
    raw: dict = field(default_factory=dict)


@dataclass
class GatewayResult:
    success: bool
    gateway_order_id: str | None = None
    payment_id: str | None = None
    status: str | None = None
    client_secret: str | None = None
    approval_url: str | None = None
    refund: dict | None = None
    event: WebhookEvent | None = None
    error: str | None = None
    timed_out: bool = False
    signature_invalid: bool = False
    raw: dict = field(default_factory=dict)

    @classmethod
    def failure(cls, error: str, **kwargs: Any) -> "GatewayResult":
        return cls(success=False, error=error, **kwargs)

    @classmethod
    def bad_signature(cls) -> "GatewayResult":
        return cls(success=False, error=INVALID_SIGNATURE, signature_invalid=True)


def to_minor_units(amount: Decimal, currency: str) -> int:
    """1000.50 INR -> 100050 paise; JPY and other zero-decimal currencies stay as is."""
    amount = Decimal(amount)
    if (currency or "").upper() in ZERO_DECIMAL_CURRENCIES:
        return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def hmac_sha256_hex(secret: str, message: bytes | str) -> str:
    if isinstance(message, str):
        message = message.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def signatures_match(expected: str, provided: str | None) -> bool:
    """Constant-time comparison; empty or missing signatures never match."""
    if not provided or not expected:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


class PaymentGateway(ABC):
    name: GatewayName
    display_name: str = ""
    kind: str = "gateway"  # gateway | offline
    description: str = ""
    # Verification captures funds, so it must not be repeated on a settled record
    captures_on_verify: bool = False

    def __init__(self, currencies: list[str] | None = None, timeout: float = 15.0):
        self.currencies = [c.upper() for c in (currencies or [])]
        self.timeout = timeout

    @property
    def public_key(self) -> str | None:
        return None

    def supports_currency(self, currency: str) -> bool:
        return not self.currencies or (currency or "").upper() in self.currencies

    def describe(self) -> dict:
        return {
            "id": self.name.value,
            "display_name": self.display_name,
            "kind": self.kind,
            "supported_currencies": list(self.currencies),
            "description": self.description,
            "public_key": self.public_key,
        }

    @abstractmethod
    def create_order(
        self,
        amount: Decimal,
        currency: str,
        receipt: str,
        items: list[dict] | None = None,
        metadata: dict | None = None,
    ) -> GatewayResult: ...

    def capture(self, gateway_order_id: str) -> GatewayResult:
        return GatewayResult.failure(f"{self.name.value} does not separate authorization and capture")

    @abstractmethod
    def verify(self, payload: Mapping[str, Any]) -> GatewayResult: ...

    @abstractmethod
    def refund(
        self,
        payment_id: str,
        amount: Decimal | None = None,
        currency: str | None = None,
        reference: str | None = None,
    ) -> GatewayResult:
        """``reference`` is stable across retries of the same refund; adapters pass it as the idempotency key."""

    @abstractmethod
    def handle_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> GatewayResult: ...

    def create_subscription(self, data: dict) -> GatewayResult:
        return GatewayResult.failure(f"{self.name.value} does not support subscriptions")

    def check_connection(self) -> GatewayResult:
        return GatewayResult(success=True, status="configured")
