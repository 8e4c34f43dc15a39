"""
Order Payment Summary — Read-side view of an order's payments and refunds.

``build_order_payment_summary`` is pure: same rows in, same summary out.
"""
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from payrecon.errors import PaymentError
from payrecon.models.order import Order
from payrecon.models.payment import Payment, Refund
from payrecon.schemas.schemas import (
    OrderPaymentSummary,
    OrderSummaryInfo,
    TransactionSummary,
)

PAID_STATUSES = ("captured", "partially_refunded", "refunded")


def to_major_units(amount_minor: int) -> float:
    return round(amount_minor) / 100


def format_amount(amount_minor: int) -> str:
    return f"{to_major_units(amount_minor):.2f}"


def derive_order_payment_status(statuses: Iterable[str]) -> str:
    statuses = set(statuses)
    if "refunded" in statuses:
        return "refunded"
    if "partially_refunded" in statuses:
        return "partially_refunded"
    if "captured" in statuses:
        return "paid"
    if "failed" in statuses or "cancelled" in statuses:
        return "failed"
    return "pending"


def _payment_amount(payment) -> int:
    if payment.amount_captured_minor is not None:
        return payment.amount_captured_minor
    if payment.amount_authorized_minor is not None:
        return payment.amount_authorized_minor
    return 0


def _sort_key(payment):
    stamp = payment.updated_at or payment.created_at or datetime.min
    return stamp, payment.id


def build_order_payment_summary(order, payments: list, refunds: list) -> OrderPaymentSummary:
    """Derive the order's payment status, totals and transaction list.

    Args:
        order: Order row (or any object with the same attributes).
        payments: Payment rows for the order.
        refunds: Refund rows for the order.
    """
    ordered = sorted(payments, key=_sort_key, reverse=True)
    latest = ordered[0] if ordered else None

    payment_method = (
        (latest.method_kind if latest else None)
        or order.payment_method
        or (latest.provider if latest else None)
        or "upi"
    )

    transactions = [
        TransactionSummary(
            id=payment.id,
            status=payment.status,
            amount=format_amount(_payment_amount(payment)),
            merchant_transaction_id=payment.provider_payment_id or payment.provider_order_id or payment.id,
            provider=payment.provider,
            created_at=payment.created_at,
            updated_at=payment.updated_at or payment.created_at,
        )
        for payment in ordered
    ]

    total_paid_minor = sum(_payment_amount(p) for p in ordered if p.status in PAID_STATUSES)
    total_refunded_minor = sum(r.amount_minor or 0 for r in refunds if r.status == "completed")

    return OrderPaymentSummary(
        order=OrderSummaryInfo(
            id=order.id,
            status=order.status,
            payment_status=derive_order_payment_status(p.status for p in ordered),
            payment_method=str(payment_method),
            total=order.total or format_amount(order.amount_minor or 0),
            created_at=order.created_at,
            updated_at=order.updated_at,
        ),
        transactions=transactions,
        latest_transaction=transactions[0] if transactions else None,
        total_paid=to_major_units(total_paid_minor),
        total_refunded=to_major_units(total_refunded_minor),
    )


def get_order_payment_summary(db: Session, order_id: str, tenant_id: str) -> OrderPaymentSummary:
    order: Optional[Order] = (
        db.query(Order).filter(Order.id == order_id, Order.tenant_id == tenant_id).first()
    )
    if order is None:
        raise PaymentError(f"Order {order_id} not found", "ORDER_NOT_FOUND")

    payments = (
        db.query(Payment)
        .filter(Payment.order_id == order_id, Payment.tenant_id == tenant_id)
        .all()
    )
    refunds = (
        db.query(Refund)
        .filter(Refund.order_id == order_id, Refund.tenant_id == tenant_id)
        .all()
    )
    return build_order_payment_summary(order, payments, refunds)
