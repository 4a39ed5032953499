"""Cash on delivery: no processor, settled at the doorstep outside the payment core."""
import uuid
from collections.abc import Mapping
from decimal import Decimal
from typing import Any

from .base import GatewayName, GatewayResult, PaymentGateway, PaymentStatus


class CashOnDeliveryGateway(PaymentGateway):
    name = GatewayName.COD
    display_name = "Cash on Delivery"
    kind = "offline"
    description = "Pay when your order is delivered"

    def __init__(self, currencies: list[str] | None = None, timeout: float = 15.0):
        super().__init__(currencies or ["INR", "USD"], timeout)

    def create_order(self, amount, currency, receipt, items=None, metadata=None) -> GatewayResult:
        # The receipt doubles as the "gateway" order id
        return GatewayResult(
            success=True,
            gateway_order_id=receipt,
            status=PaymentStatus.PENDING.value,
            raw={"payment_method": "cash_on_delivery"},
        )

    def verify(self, payload: Mapping[str, Any]) -> GatewayResult:
        # Confirmed on delivery; verification only acknowledges the choice
        return GatewayResult(success=True, status=PaymentStatus.PENDING.value)

    def refund(
        self,
        payment_id: str,
        amount: Decimal | None = None,
        currency: str | None = None,
        reference: str | None = None,
    ) -> GatewayResult:
        refund_id = reference or f"refund_{uuid.uuid4().hex[:16]}"
        return GatewayResult(
            success=True,
            payment_id=payment_id,
            status="completed",
            refund={"id": refund_id, "amount": amount, "status": "completed"},
        )

    def handle_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> GatewayResult:
        return GatewayResult.failure("cash on delivery has no webhooks")
