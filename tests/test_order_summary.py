from datetime import datetime
from types import SimpleNamespace

import pytest

from payrecon.errors import PaymentError
from payrecon.services.order_summary import (
    build_order_payment_summary,
    derive_order_payment_status,
    format_amount,
    get_order_payment_summary,
)

T0 = datetime(2024, 1, 1, 10, 0, 0)
T1 = datetime(2024, 1, 1, 10, 5, 0)
T2 = datetime(2024, 1, 1, 10, 10, 0)


def order_row(**overrides):
    fields = dict(id="order-1", status="pending", payment_method=None, total="499.00",
                  amount_minor=49900, created_at=T0, updated_at=T0)
    fields.update(overrides)
    return SimpleNamespace(**fields)


def make_payment(id="pay-1", status="created", **overrides):
    fields = dict(id=id, status=status, provider="phonepe", method_kind="upi",
                  amount_authorized_minor=49900, amount_captured_minor=None,
                  provider_payment_id="T" + id, provider_order_id=None,
                  created_at=T0, updated_at=None)
    fields.update(overrides)
    return SimpleNamespace(**fields)


def make_refund(amount_minor, status="completed"):
    return SimpleNamespace(amount_minor=amount_minor, status=status)


def test_order_without_payments_is_pending():
    summary = build_order_payment_summary(order_row(), [], [])

    assert summary.order.payment_status == "pending"
    assert summary.order.payment_method == "upi"
    assert summary.transactions == []
    assert summary.latest_transaction is None
    assert summary.total_paid == 0.0
    assert summary.total_refunded == 0.0


def test_captured_payment_marks_order_paid():
    payment = make_payment(status="captured", amount_captured_minor=49900, updated_at=T1)

    summary = build_order_payment_summary(order_row(), [payment], [])

    assert summary.order.payment_status == "paid"
    assert summary.total_paid == 499.0
    assert summary.latest_transaction.amount == "499.00"
    assert summary.latest_transaction.merchant_transaction_id == "Tpay-1"


def test_partial_refund_totals():
    payment = make_payment(status="partially_refunded", amount_captured_minor=49900)

    summary = build_order_payment_summary(
        order_row(), [payment], [make_refund(19900), make_refund(5000, status="pending")],
    )

    assert summary.order.payment_status == "partially_refunded"
    assert summary.total_paid == 499.0
    assert summary.total_refunded == 199.0


@pytest.mark.parametrize("statuses, expected", [
    (["failed", "captured"], "paid"),
    (["captured", "refunded"], "refunded"),
    (["partially_refunded", "captured"], "partially_refunded"),
    (["cancelled"], "failed"),
    (["failed", "processing"], "failed"),
    (["created", "processing"], "pending"),
])
def test_status_priority(statuses, expected):
    assert derive_order_payment_status(statuses) == expected


def test_payment_method_fallbacks():
    with_kind = build_order_payment_summary(order_row(payment_method="card"), [make_payment()], [])
    assert with_kind.order.payment_method == "upi"

    from_order = build_order_payment_summary(
        order_row(payment_method="netbanking"), [make_payment(method_kind=None)], [],
    )
    assert from_order.order.payment_method == "netbanking"

    from_provider = build_order_payment_summary(order_row(), [make_payment(method_kind=None)], [])
    assert from_provider.order.payment_method == "phonepe"


def test_transactions_sorted_newest_first():
    older = make_payment("pay-a", status="failed", created_at=T0, updated_at=T1)
    newer = make_payment("pay-b", status="captured", created_at=T1, updated_at=T2, amount_captured_minor=49900)
    untouched = make_payment("pay-c", status="created", created_at=T0)

    summary = build_order_payment_summary(order_row(), [untouched, older, newer], [])

    assert [t.id for t in summary.transactions] == ["pay-b", "pay-a", "pay-c"]
    assert summary.latest_transaction.id == "pay-b"
    assert summary.transactions[2].updated_at == T0


def test_ties_break_on_payment_id():
    first = make_payment("pay-a", updated_at=T1)
    second = make_payment("pay-b", updated_at=T1)

    summary = build_order_payment_summary(order_row(), [first, second], [])

    assert summary.latest_transaction.id == "pay-b"


def test_order_total_falls_back_to_minor_amount():
    summary = build_order_payment_summary(order_row(total=None, amount_minor=12345), [], [])
    assert summary.order.total == "123.45"


def test_merchant_transaction_id_falls_back():
    by_order_ref = make_payment("pay-1", provider_payment_id=None, provider_order_id="ORD-9")
    by_id = make_payment("pay-2", provider_payment_id=None, updated_at=T1)

    summary = build_order_payment_summary(order_row(), [by_order_ref, by_id], [])

    refs = {t.id: t.merchant_transaction_id for t in summary.transactions}
    assert refs == {"pay-1": "ORD-9", "pay-2": "pay-2"}


def test_format_amount():
    assert format_amount(0) == "0.00"
    assert format_amount(100) == "1.00"
    assert format_amount(19950) == "199.50"


def test_unknown_order_raises(session_factory):
    with session_factory() as db:
        with pytest.raises(PaymentError) as excinfo:
            get_order_payment_summary(db, "missing", "default")
    assert excinfo.value.code == "ORDER_NOT_FOUND"
    assert excinfo.value.http_status == 404


def test_summary_is_tenant_scoped(session_factory, make_order):
    make_order("order-acme", tenant_id="acme")

    with session_factory() as db:
        assert get_order_payment_summary(db, "order-acme", "acme").order.id == "order-acme"
        with pytest.raises(PaymentError):
            get_order_payment_summary(db, "order-acme", "default")
