"""Order.payment status machine.

    (none) -> pending                          create
    pending -> pending                         re-create while pending, COD verify
    pending -> paid | failed                   verify, webhook
    paid | partially_refunded -> partially_refunded | refunded    refund

failed and refunded are terminal.
"""
from marketplace.core.errors import StateError

from .gateways.base import PaymentStatus

TERMINAL = frozenset({PaymentStatus.FAILED, PaymentStatus.REFUNDED})
REFUNDABLE = frozenset({PaymentStatus.PAID, PaymentStatus.PARTIALLY_REFUNDED})
# States that carry a processor payment id
SETTLED = frozenset({PaymentStatus.PAID, PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED})

TRANSITIONS: dict[PaymentStatus | None, frozenset[PaymentStatus]] = {
    None: frozenset({PaymentStatus.PENDING}),
    PaymentStatus.PENDING: frozenset({PaymentStatus.PENDING, PaymentStatus.PAID, PaymentStatus.FAILED}),
    PaymentStatus.PAID: frozenset({PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED}),
    PaymentStatus.PARTIALLY_REFUNDED: frozenset({PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}


def can_transition(current: PaymentStatus | None, target: PaymentStatus) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def ensure_transition(current: PaymentStatus | None, target: PaymentStatus) -> None:
    if not can_transition(current, target):
        shown = current.value if current else "none"
        raise StateError(f"Payment cannot move from {shown} to {target.value}")
