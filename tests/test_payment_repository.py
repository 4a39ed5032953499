"""Order payment repository: compare-and-set writes and refund bookkeeping."""
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from marketplace.core.clock import as_utc, utcnow
from marketplace.core.errors import ConflictError, StateError
from marketplace.services.gateways import PaymentStatus


def _pending(repository, make_order, order_id="o1"):
    make_order(order_id)
    return repository.update_payment_info(
        repository.get(order_id),
        {"gateway": "razorpay", "gateway_order_id": "gwo_1", "receipt": f"order_{order_id}_1", "amount": Decimal("1000")},
    )


def test_update_payment_info_defaults_to_pending(repository, make_order):
    record = _pending(repository, make_order)
    assert record.status == PaymentStatus.PENDING
    assert record.version == 1
    assert record.updated_at is not None


def test_stale_record_write_conflicts(repository, make_order):
    stale = _pending(repository, make_order)
    repository.update_status(stale, PaymentStatus.PAID, {"payment_id": "pay_1"})
    with pytest.raises(ConflictError):
        repository.update_status(stale, PaymentStatus.FAILED)
    assert repository.get("o1").status == PaymentStatus.PAID


def test_payment_id_is_never_replaced(repository, make_order):
    paid = repository.update_status(_pending(repository, make_order), PaymentStatus.PAID, {"payment_id": "pay_1"})
    with pytest.raises(StateError):
        repository.update_status(paid, PaymentStatus.PAID, {"payment_id": "pay_2"})


def test_payment_id_needs_a_paid_status(repository, make_order):
    with pytest.raises(StateError):
        repository.update_status(_pending(repository, make_order), PaymentStatus.PENDING, {"payment_id": "pay_1"})


def test_illegal_transition_is_rejected(repository, make_order):
    with pytest.raises(StateError):
        repository.update_status(_pending(repository, make_order), PaymentStatus.REFUNDED)


def test_unknown_patch_key_is_rejected(repository, make_order):
    make_order("o1")
    with pytest.raises(ValueError):
        repository.update_payment_info(repository.get("o1"), {"customer_id": 7})


def test_refund_row_and_total_move_together(repository, make_order):
    paid = repository.update_status(_pending(repository, make_order), PaymentStatus.PAID, {"payment_id": "pay_1"})
    partial = repository.add_refund(paid, "rfnd_1", Decimal("400"), "size")
    assert partial.status == PaymentStatus.PARTIALLY_REFUNDED
    assert partial.refunded_amount == Decimal("400")
    with pytest.raises(ConflictError):
        repository.add_refund(paid, "rfnd_2", Decimal("100"), None)
    record = repository.get("o1")
    assert [r.refund_id for r in record.refunds] == ["rfnd_1"]
    full = repository.add_refund(record, "rfnd_3", Decimal("600"), None)
    assert full.status == PaymentStatus.REFUNDED
    assert full.refunded_amount == Decimal("1000")


def test_find_by_reference_prefers_receipt(repository, make_order):
    _pending(repository, make_order, "o1")
    assert repository.find_by_reference("razorpay", receipt="order_o1_1").order_id == "o1"
    assert repository.find_by_reference("razorpay", gateway_order_id="gwo_1").order_id == "o1"
    assert repository.find_by_reference("stripe", gateway_order_id="gwo_1") is None
    assert repository.find_by_reference("razorpay") is None


def test_timestamps_round_trip_as_utc(repository, make_order):
    paid_at = utcnow()
    repository.update_status(_pending(repository, make_order), PaymentStatus.PAID, {"payment_id": "pay_1", "paid_at": paid_at})
    record = repository.get("o1")
    assert record.paid_at == paid_at
    assert record.paid_at.utcoffset() == timedelta(0)
    assert record.updated_at.utcoffset() == timedelta(0)
    assert record.updated_at >= paid_at


def test_naive_values_are_taken_as_utc():
    naive = datetime(2026, 10, 18, 9, 30)
    assert as_utc(naive) == naive.replace(tzinfo=timezone.utc)
    assert as_utc(datetime(2026, 10, 18, 15, 0, tzinfo=timezone(timedelta(hours=5, minutes=30)))) == datetime(2026, 10, 18, 9, 30, tzinfo=timezone.utc)
    assert as_utc(None) is None
