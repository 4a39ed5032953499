import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from marketplace.core.clock import utcnow


def _order_id() -> str:
    return uuid.uuid4().hex


class Order(SQLModel, table=True):
    """
    Marketplace order. Items, addresses and fulfilment live with the order service;
    the payment core reads the identity columns and owns every payment_* column.
    """

    __tablename__ = "orders"

    id: str = Field(default_factory=_order_id, primary_key=True, max_length=64)
    order_number: str = Field(unique=True, index=True)
    customer_id: int = Field(index=True)
    currency: str = "INR"
    amount: Decimal = Field(default=Decimal("0"), max_digits=12, decimal_places=2)  # order total, major units
    status: str = "pending"  # fulfilment status, not touched by the payment core
    created_at: datetime = Field(default_factory=utcnow, index=True, sa_type=DateTime(timezone=True))

    # Payment slice. Written only through OrderPaymentRepository.
    payment_gateway: str | None = Field(default=None, index=True)  # razorpay | stripe | paypal | cod
    payment_gateway_order_id: str | None = Field(default=None, index=True)
    payment_receipt: str | None = Field(default=None, unique=True, index=True)
    payment_id: str | None = None
    payment_amount: Decimal | None = Field(default=None, max_digits=12, decimal_places=2)
    payment_currency: str | None = None
    payment_status: str | None = Field(default=None, index=True)
    payment_client_secret: str | None = None
    payment_approval_url: str | None = None
    payment_refunded_amount: Decimal = Field(default=Decimal("0"), max_digits=12, decimal_places=2)
    payment_failure_reason: str | None = None
    payment_paid_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
    payment_failed_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
    payment_verified_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
    payment_updated_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
    # Compare-and-set counter; bumped on every payment write
    payment_version: int = 0


class PaymentRefund(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    order_id: str = Field(foreign_key="orders.id", index=True, max_length=64)
    refund_id: str = Field(index=True)
    amount: Decimal = Field(max_digits=12, decimal_places=2)
    reason: str | None = None
    status: str = "completed"
    processed_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
