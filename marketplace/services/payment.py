"""Payment service: one interface over every configured processor.

Holds no per-order state. Every write goes through OrderPaymentRepository,
which enforces the status machine and compare-and-set on the order row.
Processor calls happen before the write; the write re-checks the record it
re-reads, so a webhook that settled the order in between wins.
"""
import logging
import threading
from collections.abc import Callable, Mapping
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from marketplace.core.clock import as_utc, epoch_millis, utcnow
from marketplace.core.errors import (
    AdapterError,
    ConfigurationError,
    ConflictError,
    GatewayTimeout,
    GatewayUnsupported,
    OrderNotFound,
    RefundExceedsAmount,
    RefundNotSupported,
    SignatureError,
    StateError,
    UnauthorizedOrder,
    ValidationError,
    VerificationFailed,
)

from .gateways import GatewayName, GatewayResult, PaymentGateway, PaymentStatus
from .payment_repository import OrderPaymentRepository, PaymentRecord
from .payment_state import REFUNDABLE, SETTLED, TERMINAL, can_transition

log = logging.getLogger("marketplace.payments")

DEFAULT_PRIORITY = ["razorpay", "stripe", "paypal", "cod"]
CENT = Decimal("0.01")

# Verify payload key carrying the processor order id, per gateway
_VERIFY_ORDER_KEYS = {
    GatewayName.RAZORPAY: "razorpay_order_id",
    GatewayName.STRIPE: "payment_intent_id",
    GatewayName.PAYPAL: "paypal_order_id",
}


class ReceiptMinter:
    """order_<orderId>_<epochMillis>, strictly increasing per process; a repeated millisecond gets _<n>."""

    def __init__(self, clock: Callable[[], int] = epoch_millis):
        self._clock = clock
        self._lock = threading.Lock()
        self._last = 0
        self._seq = 0

    def mint(self, order_id: str) -> str:
        with self._lock:
            now = self._clock()
            if now > self._last:
                self._last, self._seq = now, 0
                return f"order_{order_id}_{now}"
            self._seq += 1
            return f"order_{order_id}_{self._last}_{self._seq}"


def _money(value: Any, field: str = "amount") -> Decimal:
    try:
        amount = Decimal(str(value)).quantize(CENT)
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"{field} must be a number")
    if not amount.is_finite() or amount <= 0:
        raise ValidationError(f"{field} must be greater than zero")
    return amount


def _raise_for(result: GatewayResult, verification: bool = False) -> None:
    if result.signature_invalid:
        raise SignatureError("Payment signature verification failed")
    if result.timed_out:
        raise GatewayTimeout(result.error or "Payment processor did not respond in time")
    if verification:
        raise VerificationFailed(result.error or "Payment verification failed")
    raise AdapterError(result.error or "Payment processor error")


class PaymentService:
    def __init__(
        self,
        gateways: Mapping[GatewayName, PaymentGateway],
        repository: OrderPaymentRepository,
        priority: list[str] | None = None,
        receipts: ReceiptMinter | None = None,
    ):
        self.gateways = dict(gateways)
        self.repository = repository
        self.priority = priority or DEFAULT_PRIORITY
        self.receipts = receipts or ReceiptMinter()

    # ---------- lookup helpers ----------
    def _gateway_name(self, gateway: Any) -> GatewayName:
        try:
            return GatewayName(str(gateway or "").strip().lower())
        except ValueError:
            raise GatewayUnsupported(f"Payment gateway '{gateway}' is not supported")

    def _adapter(self, gateway: Any) -> tuple[GatewayName, PaymentGateway]:
        name = self._gateway_name(gateway)
        adapter = self.gateways.get(name)
        if adapter is None:
            raise GatewayUnsupported(f"Payment gateway '{name.value}' is not enabled")
        return name, adapter

    def _order(self, order_id: str | None, user_id: int | None = None) -> PaymentRecord:
        if not order_id:
            raise ValidationError("order_id is required")
        record = self.repository.get(order_id)
        if record is None:
            raise OrderNotFound("Order not found")
        if user_id is not None and record.customer_id != user_id:
            raise UnauthorizedOrder("Unauthorized access to order")
        return record

    def _mutate(self, record: PaymentRecord, write: Callable[[PaymentRecord], PaymentRecord]) -> PaymentRecord:
        """Run ``write`` against the record; on a concurrent change re-read once and run it again."""
        try:
            return write(record)
        except ConflictError:
            log.info("Payment of order %s changed concurrently, retrying once", record.order_id)
            fresh = self.repository.get(record.order_id)
            if fresh is None:
                raise OrderNotFound("Order not found")
            return write(fresh)

    # ---------- methods ----------
    def get_available_payment_methods(self) -> list[dict]:
        ordered: list[GatewayName] = []
        for tag in self.priority:
            try:
                name = GatewayName(tag)
            except ValueError:
                log.warning("Unknown gateway %r in PAYMENT_GATEWAY_PRIORITY ignored", tag)
                continue
            if name in self.gateways and name not in ordered:
                ordered.append(name)
        ordered.extend(name for name in GatewayName if name in self.gateways and name not in ordered)
        return [self.gateways[name].describe() for name in ordered]

    # ---------- create ----------
    def _ensure_creatable(self, record: PaymentRecord, name: GatewayName) -> None:
        if record.payment_id or record.status in SETTLED:
            raise StateError("Order is already paid")
        if record.status is not None and record.status != PaymentStatus.PENDING:
            raise StateError(f"Cannot create a payment for an order in status {record.status.value}")
        if record.gateway and record.gateway != name.value:
            raise StateError(f"Order payment is already bound to {record.gateway}")

    def create_payment_order(
        self,
        gateway: Any,
        amount: Any,
        order_id: str,
        currency: str | None = None,
        items: list[dict] | None = None,
        customer_data: dict | None = None,
        user_id: int | None = None,
    ) -> dict:
        name, adapter = self._adapter(gateway)
        amount = _money(amount)
        record = self._order(order_id, user_id)
        currency = (currency or record.order_currency or "").upper()
        if not adapter.supports_currency(currency):
            raise ValidationError(f"{adapter.display_name} does not accept {currency}")
        self._ensure_creatable(record, name)

        receipt = self.receipts.mint(record.order_id)
        metadata = {"orderId": record.order_id}
        if customer_data and customer_data.get("email"):
            metadata["customerEmail"] = customer_data["email"]
        result = adapter.create_order(amount, currency, receipt, items=items, metadata=metadata)
        if not result.success:
            log.error("%s order creation failed for order %s: %s", name.value, record.order_id, result.error)
            _raise_for(result)

        patch = {
            "gateway": name.value,
            "gateway_order_id": result.gateway_order_id,
            "receipt": receipt,
            "amount": amount,
            "currency": currency,
            "status": PaymentStatus.PENDING,
            "client_secret": result.client_secret,
            "approval_url": result.approval_url,
            "failure_reason": None,
        }

        def write(current: PaymentRecord) -> PaymentRecord:
            self._ensure_creatable(current, name)
            return self.repository.update_payment_info(current, patch)

        record = self._mutate(record, write)
        log.info("Payment created: order=%s gateway=%s receipt=%s", record.order_id, name.value, receipt)
        self.repository.audit("payment_created", record.order_id, user_id, f"{name.value}:{receipt}")
        return {
            "success": True,
            "gateway": name.value,
            "order_id": record.order_id,
            "gateway_order_id": record.gateway_order_id,
            "receipt": receipt,
            "amount": amount,
            "currency": currency,
            "status": PaymentStatus.PENDING.value,
            "client_secret": result.client_secret,
            "approval_url": result.approval_url,
            "key": adapter.public_key,
        }

    # ---------- verify ----------
    def _verify_payload(self, name: GatewayName, record: PaymentRecord, payload: Mapping[str, Any]) -> dict:
        data = dict(payload)
        key = _VERIFY_ORDER_KEYS.get(name)
        if key is None:
            return data
        provided = data.get(key)
        if not provided:
            data[key] = provided = record.gateway_order_id
        if provided != record.gateway_order_id:
            raise ValidationError(f"{key} does not belong to this order")
        return data

    def verify_payment(self, payload: Mapping[str, Any], user_id: int | None = None) -> dict:
        name, adapter = self._adapter(payload.get("gateway"))
        record = self._order(payload.get("order_id"), user_id)
        if record.gateway is None:
            raise StateError("No payment has been created for this order")
        if record.gateway != name.value:
            raise ValidationError(f"Order payment was created with {record.gateway}")
        if record.status in TERMINAL:
            raise StateError(f"Payment is already {record.status.value}")

        if record.status in SETTLED and adapter.captures_on_verify:
            # Settled by a webhook; capturing again would fail at the processor
            result = GatewayResult(success=True, payment_id=record.payment_id, status=PaymentStatus.PAID.value)
        else:
            result = adapter.verify(self._verify_payload(name, record, payload))
        if not result.success:
            log.warning("%s verification failed for order %s: %s", name.value, record.order_id, result.error)
            _raise_for(result, verification=True)

        target = PaymentStatus.PENDING if name is GatewayName.COD else PaymentStatus.PAID

        def write(current: PaymentRecord) -> PaymentRecord:
            now = utcnow()
            if current.status in SETTLED:
                extras: dict[str, Any] = {"verified_at": now}
                if not current.payment_id and result.payment_id:
                    extras["payment_id"] = result.payment_id
                return self.repository.update_status(current, current.status, extras)
            if current.status in TERMINAL:
                raise StateError(f"Payment is already {current.status.value}")
            extras = {"verified_at": now}
            if target is PaymentStatus.PAID:
                extras.update(payment_id=result.payment_id, paid_at=now)
            return self.repository.update_status(current, target, extras)

        record = self._mutate(record, write)
        log.info("Payment verified: order=%s gateway=%s status=%s", record.order_id, name.value, record.status.value)
        self.repository.audit("payment_verified", record.order_id, user_id, name.value)
        return {
            "success": True,
            "order_id": record.order_id,
            "payment_id": record.payment_id if name is not GatewayName.COD else record.receipt,
            "status": record.status.value,
        }

    # ---------- refund ----------
    def process_refund(self, order_id: str, amount: Any = None, reason: str | None = None) -> dict:
        if amount is not None:
            amount = _money(amount)
        record = self._order(order_id)
        if record.status is PaymentStatus.REFUNDED:
            raise RefundExceedsAmount("Payment is already fully refunded")
        if record.status not in REFUNDABLE:
            shown = record.status.value if record.status else "unpaid"
            raise RefundNotSupported(f"Cannot refund a payment that is {shown}")
        if amount is None:
            amount = record.refundable_amount
        if record.refunded_amount + amount > (record.amount or Decimal("0")):
            raise RefundExceedsAmount(
                f"Refund of {amount} exceeds the refundable amount {record.refundable_amount}"
            )
        name = self._gateway_name(record.gateway)
        adapter = self.gateways.get(name)
        if adapter is None:
            raise ConfigurationError(f"{name.value} is no longer configured; refund it from the processor dashboard")
        if not record.payment_id:
            raise StateError("Payment has no processor payment id to refund")

        # Stable while the record is unchanged; Stripe and PayPal drop a repeated refund with the same key
        reference = f"refund_{record.order_id}_{record.version}"
        result = adapter.refund(record.payment_id, amount, record.currency, reference=reference)
        if not result.success:
            log.error("%s refund failed for order %s: %s", name.value, record.order_id, result.error)
            _raise_for(result)
        refund_id = (result.refund or {}).get("id") or reference

        def write(current: PaymentRecord) -> PaymentRecord:
            if current.refunded_amount + amount > (current.amount or Decimal("0")):
                log.error(
                    "Refund %s for order %s was issued at %s but exceeds the recorded remainder",
                    refund_id, current.order_id, name.value,
                )
                raise RefundExceedsAmount("Refund exceeds the refundable amount")
            return self.repository.add_refund(current, refund_id, amount, reason)

        record = self._mutate(record, write)
        log.info("Refund %s processed: order=%s amount=%s status=%s", refund_id, record.order_id, amount, record.status.value)
        self.repository.audit("payment_refunded", record.order_id, None, f"{refund_id}:{amount}")
        return {
            "success": True,
            "refund": {"id": refund_id, "amount": amount, "reason": reason, "status": "completed"},
            "payment_status": record.status.value,
            "refunded_amount": record.refunded_amount,
        }

    # ---------- webhooks ----------
    def handle_webhook(self, gateway: Any, raw_body: bytes, headers: Mapping[str, str]) -> dict:
        name, adapter = self._adapter(gateway)
        if name is GatewayName.COD:
            raise GatewayUnsupported("Cash on delivery has no webhooks")
        result = adapter.handle_webhook(raw_body, headers)
        if not result.success:
            if result.signature_invalid:
                raise SignatureError("invalid signature")
            if result.timed_out:
                raise GatewayTimeout("Webhook verification timed out")
            raise ValidationError("Webhook could not be processed")

        event = result.event
        if event is None or event.new_status is None:
            return {"success": True, "event": event.event_type if event else None, "applied": False}
        record = self.repository.find_by_reference(name.value, event.receipt, event.gateway_order_id)
        if record is None:
            log.warning(
                "%s webhook %s for unknown order (receipt=%s, gateway_order_id=%s) ignored",
                name.value, event.event_type, event.receipt, event.gateway_order_id,
            )
            return {"success": True, "event": event.event_type, "applied": False}
        if name is GatewayName.PAYPAL and event.receipt != record.receipt:
            log.warning("PayPal webhook %s does not carry the receipt of order %s; ignored", event.event_type, record.order_id)
            return {"success": True, "event": event.event_type, "applied": False}

        new_status = event.new_status
        applied = {"value": False}

        def write(current: PaymentRecord) -> PaymentRecord:
            now = utcnow()
            extras: dict[str, Any] = {}
            if new_status is PaymentStatus.PAID and event.payment_id and not current.payment_id:
                extras["payment_id"] = event.payment_id
            if current.status == new_status:
                # Redelivery of an event already applied
                return self.repository.update_status(current, new_status, extras)
            if not can_transition(current.status, new_status):
                log.warning(
                    "%s webhook %s cannot move order %s from %s to %s; ignored",
                    name.value, event.event_type, current.order_id,
                    current.status.value if current.status else None, new_status.value,
                )
                return current
            if new_status is PaymentStatus.PAID:
                extras["paid_at"] = now
            else:
                extras.update(failed_at=now, failure_reason=event.failure_reason)
            applied["value"] = True
            return self.repository.update_status(current, new_status, extras)

        record = self._mutate(record, write)
        if applied["value"]:
            log.info("%s webhook %s: order %s is now %s", name.value, event.event_type, record.order_id, new_status.value)
            self.repository.audit(f"webhook_{name.value}", record.order_id, None, event.event_type)
        return {"success": True, "event": event.event_type, "applied": applied["value"]}

    # ---------- reporting ----------
    def get_payment_stats(self, start_date: datetime | None = None, end_date: datetime | None = None) -> dict:
        start_date, end_date = as_utc(start_date), as_utc(end_date)
        if start_date and end_date and start_date > end_date:
            raise ValidationError("start_date must not be after end_date")
        return {"success": True, "stats": self.repository.stats(start_date, end_date)}

    def payment_history(self, customer_id: int, page: int = 1, limit: int = 10) -> dict:
        records, total = self.repository.history(customer_id, page, limit)
        return {
            "success": True,
            "payments": [
                {
                    "order_id": r.order_id,
                    "order_number": r.order_number,
                    "total_amount": r.order_amount,
                    "payment": r.as_dict(),
                }
                for r in records
            ],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": (total + limit - 1) // limit,
            },
        }

    def test_connection(self, gateway: Any) -> dict:
        name = self._gateway_name(gateway)
        adapter = self.gateways.get(name)
        if adapter is None:
            return {
                "success": True,
                "gateway": name.value,
                "is_connected": False,
                "message": f"{name.value.capitalize()} credentials not configured",
            }
        result = adapter.check_connection()
        return {
            "success": True,
            "gateway": name.value,
            "is_connected": result.success,
            "message": f"{adapter.display_name} configuration is valid" if result.success else (result.error or "Connection failed"),
        }

    def create_subscription(self, gateway: Any, data: dict) -> dict:
        name, adapter = self._adapter(gateway)
        result = adapter.create_subscription(data)
        if not result.success:
            _raise_for(result)
        log.info("%s subscription created: %s", name.value, result.raw.get("id"))
        return {
            "success": True,
            "gateway": name.value,
            "subscription": result.raw,
            "status": result.status,
            "client_secret": result.client_secret,
            "approval_url": result.approval_url,
        }
