from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class OrderItem(BaseModel):
    name: str = "Order Item"
    price: Decimal = Decimal("0")
    quantity: int = Field(default=1, ge=1)


class CustomerData(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str | None = None
    email: str | None = None
    phone: str | None = None


class CreatePaymentOrderRequest(BaseModel):
    """Starts (or re-issues, while pending) the processor payment for an order."""
    order_id: str
    gateway: str
    amount: Decimal
    currency: str | None = None
    items: list[OrderItem] | None = None
    customer_data: CustomerData | None = None


class VerifyPaymentRequest(BaseModel):
    """Checkout callback payload; only the fields of the chosen gateway are used."""
    model_config = ConfigDict(extra="allow")

    gateway: str
    order_id: str
    razorpay_order_id: str | None = None
    razorpay_payment_id: str | None = None
    razorpay_signature: str | None = None
    payment_intent_id: str | None = None
    paypal_order_id: str | None = None


class RefundRequest(BaseModel):
    order_id: str
    amount: Decimal | None = None  # omitted: the remaining amount
    reason: str | None = Field(default=None, max_length=500)


class SubscriptionRequest(BaseModel):
    """Processor-specific subscription body, passed through as is."""
    gateway: str
    data: dict[str, Any] = Field(default_factory=dict)
