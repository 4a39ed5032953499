"""Persistence for the payment slice of an order.

All writes are compare-and-set on ``orders.payment_version``: the UPDATE only
matches when nobody else wrote the payment since the caller read it, and the
version is bumped together with ``payment_updated_at``. A miss raises
ConflictError; the payment service re-reads and retries once.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import case, func, insert, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from marketplace.core.clock import as_utc, utcnow
from marketplace.core.errors import ConflictError, StateError
from marketplace.models import AuditLog, Order, PaymentRefund

from .gateways.base import PaymentStatus
from .payment_state import SETTLED, ensure_transition

log = logging.getLogger("marketplace.payments")

# patch key -> column; the only payment fields callers may set
_COLUMNS = {
    "gateway": "payment_gateway",
    "gateway_order_id": "payment_gateway_order_id",
    "receipt": "payment_receipt",
    "payment_id": "payment_id",
    "amount": "payment_amount",
    "currency": "payment_currency",
    "status": "payment_status",
    "client_secret": "payment_client_secret",
    "approval_url": "payment_approval_url",
    "failure_reason": "payment_failure_reason",
    "paid_at": "payment_paid_at",
    "failed_at": "payment_failed_at",
    "verified_at": "payment_verified_at",
}


@dataclass(frozen=True)
class RefundEntry:
    refund_id: str
    amount: Decimal
    reason: str | None
    status: str
    processed_at: datetime


@dataclass(frozen=True)
class PaymentRecord:
    """Read-only view of Order.payment as the payment core sees it."""

    order_id: str
    order_number: str
    customer_id: int
    order_amount: Decimal
    order_currency: str
    gateway: str | None = None
    gateway_order_id: str | None = None
    receipt: str | None = None
    payment_id: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    status: PaymentStatus | None = None
    client_secret: str | None = None
    approval_url: str | None = None
    refunded_amount: Decimal = Decimal("0")
    failure_reason: str | None = None
    paid_at: datetime | None = None
    failed_at: datetime | None = None
    verified_at: datetime | None = None
    updated_at: datetime | None = None
    version: int = 0
    refunds: list[RefundEntry] = field(default_factory=list)

    @property
    def refundable_amount(self) -> Decimal:
        return (self.amount or Decimal("0")) - self.refunded_amount

    def as_dict(self) -> dict[str, Any]:
        return {
            "gateway": self.gateway,
            "gateway_order_id": self.gateway_order_id,
            "receipt": self.receipt,
            "payment_id": self.payment_id,
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status.value if self.status else None,
            "refunded_amount": self.refunded_amount,
            "failure_reason": self.failure_reason,
            "paid_at": self.paid_at,
            "failed_at": self.failed_at,
            "verified_at": self.verified_at,
            "updated_at": self.updated_at,
            "refunds": [
                {
                    "refund_id": r.refund_id,
                    "amount": r.amount,
                    "reason": r.reason,
                    "status": r.status,
                    "processed_at": r.processed_at,
                }
                for r in self.refunds
            ],
        }


def _record(order: Order, refunds: list[PaymentRefund]) -> PaymentRecord:
    return PaymentRecord(
        order_id=order.id,
        order_number=order.order_number,
        customer_id=order.customer_id,
        order_amount=order.amount,
        order_currency=order.currency,
        gateway=order.payment_gateway,
        gateway_order_id=order.payment_gateway_order_id,
        receipt=order.payment_receipt,
        payment_id=order.payment_id,
        amount=order.payment_amount,
        currency=order.payment_currency,
        status=PaymentStatus(order.payment_status) if order.payment_status else None,
        client_secret=order.payment_client_secret,
        approval_url=order.payment_approval_url,
        refunded_amount=order.payment_refunded_amount or Decimal("0"),
        failure_reason=order.payment_failure_reason,
        paid_at=as_utc(order.payment_paid_at),
        failed_at=as_utc(order.payment_failed_at),
        verified_at=as_utc(order.payment_verified_at),
        updated_at=as_utc(order.payment_updated_at),
        version=order.payment_version or 0,
        refunds=[
            RefundEntry(
                refund_id=r.refund_id,
                amount=r.amount,
                reason=r.reason,
                status=r.status,
                processed_at=as_utc(r.processed_at),
            )
            for r in refunds
        ],
    )


class OrderPaymentRepository:
    def __init__(self, engine: Engine):
        self.engine = engine

    # ---------- reads ----------
    def _load(self, db: Session, order: Order | None) -> PaymentRecord | None:
        if order is None:
            return None
        refunds = db.exec(
            select(PaymentRefund).where(PaymentRefund.order_id == order.id).order_by(PaymentRefund.id)
        ).all()
        return _record(order, list(refunds))

    def get(self, order_id: str) -> PaymentRecord | None:
        with Session(self.engine) as db:
            return self._load(db, db.get(Order, order_id))

    def find_by_reference(
        self,
        gateway: str,
        receipt: str | None = None,
        gateway_order_id: str | None = None,
    ) -> PaymentRecord | None:
        """Order a processor event refers to: by our receipt first, then by the processor's order id."""
        with Session(self.engine) as db:
            if receipt:
                order = db.exec(
                    select(Order).where(Order.payment_gateway == gateway, Order.payment_receipt == receipt)
                ).first()
                if order is not None:
                    return self._load(db, order)
            if gateway_order_id:
                order = db.exec(
                    select(Order).where(
                        Order.payment_gateway == gateway,
                        Order.payment_gateway_order_id == gateway_order_id,
                    )
                ).first()
                return self._load(db, order)
        return None

    # ---------- writes ----------
    def _values(self, record: PaymentRecord, patch: dict[str, Any]) -> dict[str, Any]:
        unknown = set(patch) - set(_COLUMNS)
        if unknown:
            raise ValueError(f"Not a payment field: {', '.join(sorted(unknown))}")
        new_payment_id = patch.get("payment_id")
        if record.payment_id and new_payment_id and new_payment_id != record.payment_id:
            raise StateError("Payment id is already recorded for this order")
        values = {_COLUMNS[k]: (v.value if isinstance(v, PaymentStatus) else v) for k, v in patch.items()}
        values["payment_updated_at"] = utcnow()
        values["payment_version"] = record.version + 1
        return values

    def _compare_and_set(self, conn, record: PaymentRecord, values: dict[str, Any]) -> None:
        result = conn.execute(
            update(Order)
            .where(Order.id == record.order_id, Order.payment_version == record.version)
            .values(**values)
        )
        if result.rowcount != 1:
            raise ConflictError(f"Payment of order {record.order_id} changed concurrently")

    def update_payment_info(self, record: PaymentRecord, patch: dict[str, Any]) -> PaymentRecord:
        """Write processor details (gateway, receipt, intent handles) of a new or re-issued payment."""
        ensure_transition(record.status, PaymentStatus(patch.get("status", PaymentStatus.PENDING)))
        values = self._values(record, {"status": PaymentStatus.PENDING, **patch})
        with self.engine.begin() as conn:
            self._compare_and_set(conn, record, values)
        return self.get(record.order_id)

    def update_status(self, record: PaymentRecord, status: PaymentStatus, extras: dict[str, Any] | None = None) -> PaymentRecord:
        """Move to ``status``; writing the current status again only refreshes timestamps and extras."""
        if status != record.status:
            ensure_transition(record.status, status)
        extras = dict(extras or {})
        if extras.get("payment_id") and status not in SETTLED:
            raise StateError("Payment id can only be recorded on a paid order")
        values = self._values(record, {**extras, "status": status})
        with self.engine.begin() as conn:
            self._compare_and_set(conn, record, values)
        return self.get(record.order_id)

    def add_refund(
        self,
        record: PaymentRecord,
        refund_id: str,
        amount: Decimal,
        reason: str | None,
    ) -> PaymentRecord:
        """Append a completed refund and raise refunded_amount in one transaction."""
        refunded = record.refunded_amount + amount
        status = PaymentStatus.REFUNDED if refunded >= (record.amount or Decimal("0")) else PaymentStatus.PARTIALLY_REFUNDED
        ensure_transition(record.status, status)
        values = self._values(record, {"status": status})
        values["payment_refunded_amount"] = refunded
        now = values["payment_updated_at"]
        with self.engine.begin() as conn:
            self._compare_and_set(conn, record, values)
            conn.execute(
                insert(PaymentRefund).values(
                    order_id=record.order_id,
                    refund_id=refund_id,
                    amount=amount,
                    reason=reason,
                    status="completed",
                    processed_at=now,
                )
            )
        return self.get(record.order_id)

    def audit(self, event: str, order_id: str | None = None, user_id: int | None = None, detail: str | None = None) -> None:
        """Best-effort audit trail; a failed write never fails the payment operation."""
        try:
            with Session(self.engine) as db:
                db.add(AuditLog(event=event, order_id=order_id, user_id=user_id, detail=(detail or "")[:500] or None))
                db.commit()
        except SQLAlchemyError as e:
            log.warning("AuditLog %s write failed: %s", event, e)

    # ---------- reporting ----------
    def history(self, customer_id: int, page: int, limit: int) -> tuple[list[PaymentRecord], int]:
        conditions = (Order.customer_id == customer_id, Order.payment_status.is_not(None))
        with Session(self.engine) as db:
            total = db.exec(select(func.count()).select_from(Order).where(*conditions)).one()
            orders = db.exec(
                select(Order)
                .where(*conditions)
                .order_by(Order.created_at.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            ).all()
            return [self._load(db, o) for o in orders], int(total or 0)

    def stats(self, start: datetime | None = None, end: datetime | None = None) -> list[dict[str, Any]]:
        settled = [s.value for s in SETTLED]
        stmt = select(
            Order.payment_gateway,
            func.count(Order.id),
            func.coalesce(func.sum(Order.payment_amount), 0),
            func.sum(case((Order.payment_status.in_(settled), 1), else_=0)),
            func.sum(case((Order.payment_status == PaymentStatus.PENDING.value, 1), else_=0)),
            func.sum(case((Order.payment_status == PaymentStatus.FAILED.value, 1), else_=0)),
        ).where(Order.payment_gateway.is_not(None))
        if start is not None:
            stmt = stmt.where(Order.created_at >= start)
        if end is not None:
            stmt = stmt.where(Order.created_at <= end)
        stmt = stmt.group_by(Order.payment_gateway)
        with Session(self.engine) as db:
            rows = db.exec(stmt).all()
        stats = [
            {
                "gateway": gateway,
                "total_orders": int(count or 0),
                "total_amount": Decimal(str(total or 0)).quantize(Decimal("0.01")),
                "successful": int(ok or 0),
                "pending": int(pending or 0),
                "failed": int(failed or 0),
            }
            for gateway, count, total, ok, pending, failed in rows
        ]
        stats.sort(key=lambda s: s["total_amount"], reverse=True)
        return stats
