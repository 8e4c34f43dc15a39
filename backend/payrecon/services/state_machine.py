"""
Payment State Machine — Allowed transitions and the conditional-update helpers
every reconciliation path goes through.

No lock serializes verify, webhook and poller. Each mutation is an
``UPDATE ... WHERE status = <expected>`` whose affected-row count decides
whether this caller won. A loser re-reads the row and retries only while the
move is still allowed from the state it finds.
"""
import logging
from datetime import datetime
from typing import Optional, Union

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from payrecon.adapters.base import PaymentStatus, RefundStatus
from payrecon.models.order import Order
from payrecon.models.payment import Payment, Refund
from payrecon.models.polling_job import PhonePePollingJob

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    PaymentStatus.CREATED: {
        PaymentStatus.PROCESSING, PaymentStatus.CAPTURED,
        PaymentStatus.FAILED, PaymentStatus.CANCELLED,
    },
    PaymentStatus.PROCESSING: {
        PaymentStatus.CAPTURED, PaymentStatus.FAILED, PaymentStatus.CANCELLED,
    },
    PaymentStatus.CAPTURED: {PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED},
    PaymentStatus.PARTIALLY_REFUNDED: {PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED},
    PaymentStatus.FAILED: set(),
    PaymentStatus.CANCELLED: set(),
    PaymentStatus.REFUNDED: set(),
}

SETTLED_STATUSES = frozenset({
    PaymentStatus.CAPTURED, PaymentStatus.FAILED, PaymentStatus.CANCELLED,
    PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED,
})
FAILURE_STATUSES = frozenset({PaymentStatus.FAILED, PaymentStatus.CANCELLED})
CAPTURED_STATUSES = frozenset({
    PaymentStatus.CAPTURED, PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED,
})


def coerce_status(value: Union[str, PaymentStatus, None]) -> PaymentStatus:
    if isinstance(value, PaymentStatus):
        return value
    try:
        return PaymentStatus((value or "created").strip().lower())
    except ValueError:
        return PaymentStatus.PROCESSING


def can_transition(current: PaymentStatus, next_status: PaymentStatus) -> bool:
    return next_status in ALLOWED_TRANSITIONS.get(current, set())


def try_transition(
    db: Session,
    payment_id: str,
    expected: PaymentStatus,
    next_status: PaymentStatus,
    values: Optional[dict] = None,
    now: Optional[datetime] = None,
) -> bool:
    """Move a payment from ``expected`` to ``next_status`` if nobody beat us to it.

    Returns:
        True only when this call changed the row.
    """
    if not can_transition(expected, next_status):
        logger.debug("transition %s -> %s not allowed for payment %s", expected.value, next_status.value, payment_id)
        return False

    changes = dict(values or {})
    changes["status"] = next_status.value
    changes["updated_at"] = now or datetime.utcnow()

    affected = (
        db.query(Payment)
        .filter(Payment.id == payment_id, Payment.status == expected.value)
        .update(changes, synchronize_session=False)
    )
    if affected != 1:
        logger.debug("lost transition race %s -> %s for payment %s", expected.value, next_status.value, payment_id)
        return False
    return True


def promote_order_paid(
    db: Session, order_id: str, tenant_id: str, method_kind: Optional[str] = None,
    now: Optional[datetime] = None,
) -> bool:
    changes = {
        Order.payment_status: "paid",
        Order.status: case((Order.status == "pending", "confirmed"), else_=Order.status),
        Order.updated_at: now or datetime.utcnow(),
    }
    if method_kind:
        changes[Order.payment_method] = method_kind

    affected = (
        db.query(Order)
        .filter(
            Order.id == order_id,
            Order.tenant_id == tenant_id,
            Order.payment_status != "paid",
        )
        .update(changes, synchronize_session=False)
    )
    return affected == 1


def mark_order_failed(db: Session, order_id: str, tenant_id: str, now: Optional[datetime] = None) -> bool:
    now = now or datetime.utcnow()
    affected = (
        db.query(Order)
        .filter(
            Order.id == order_id,
            Order.tenant_id == tenant_id,
            Order.payment_status == "pending",
        )
        .update(
            {Order.payment_status: "failed", Order.payment_failed_at: now, Order.updated_at: now},
            synchronize_session=False,
        )
    )
    return affected == 1


def mark_order_refunded(
    db: Session, order_id: str, tenant_id: str, refund_status: PaymentStatus,
    now: Optional[datetime] = None,
) -> bool:
    affected = (
        db.query(Order)
        .filter(
            Order.id == order_id,
            Order.tenant_id == tenant_id,
            Order.payment_status.in_(("paid", "partially_refunded")),
        )
        .update(
            {Order.payment_status: refund_status.value, Order.updated_at: now or datetime.utcnow()},
            synchronize_session=False,
        )
    )
    return affected == 1


def close_polling_job(
    db: Session, payment_id: str, tenant_id: str, status: PaymentStatus,
    now: Optional[datetime] = None,
) -> bool:
    """Settle the payment's pending polling job so its next firing exits."""
    now = now or datetime.utcnow()
    affected = (
        db.query(PhonePePollingJob)
        .filter(
            PhonePePollingJob.payment_id == payment_id,
            PhonePePollingJob.tenant_id == tenant_id,
            PhonePePollingJob.status == "pending",
        )
        .update(
            {
                PhonePePollingJob.status: "completed" if status in CAPTURED_STATUSES else "failed",
                PhonePePollingJob.last_status: status.value,
                PhonePePollingJob.completed_at: now,
                PhonePePollingJob.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    return affected == 1


def apply_payment_status(
    db: Session,
    payment: Payment,
    next_status: PaymentStatus,
    values: Optional[dict] = None,
    now: Optional[datetime] = None,
) -> bool:
    """Apply an observed status to ``payment`` and cascade to its order and polling job.

    The order is promoted or failed only when this caller's own transition was
    applied, so concurrent paths converge on a single promotion. When another
    path moved the row first, the status is re-read and the transition retried
    for as long as it is still allowed from the new state.
    """
    current = coerce_status(payment.status)
    now = now or datetime.utcnow()

    # Each retry follows a committed forward move, so the loop is bounded by the chain length
    for _ in range(len(ALLOWED_TRANSITIONS)):
        if next_status == current and next_status != PaymentStatus.PARTIALLY_REFUNDED:
            return False
        if not can_transition(current, next_status):
            logger.debug("transition %s -> %s not allowed for payment %s", current.value, next_status.value, payment.id)
            return False
        if try_transition(db, payment.id, current, next_status, values, now):
            break
        current = coerce_status(
            db.query(Payment.status).filter(Payment.id == payment.id).scalar()
        )
    else:
        return False

    if next_status == PaymentStatus.CAPTURED:
        promoted = promote_order_paid(db, payment.order_id, payment.tenant_id, payment.method_kind, now)
        if promoted:
            logger.info("order %s promoted to paid by payment %s", payment.order_id, payment.id)
    elif next_status in FAILURE_STATUSES:
        mark_order_failed(db, payment.order_id, payment.tenant_id, now)

    if next_status in SETTLED_STATUSES:
        close_polling_job(db, payment.id, payment.tenant_id, next_status, now)

    return True


def refunded_total(db: Session, payment_id: str, statuses) -> int:
    total = (
        db.query(func.coalesce(func.sum(Refund.amount_minor), 0))
        .filter(Refund.payment_id == payment_id, Refund.status.in_(statuses))
        .scalar()
    )
    return int(total or 0)


def settle_refund(
    db: Session,
    refund_id: str,
    tenant_id: str,
    status: RefundStatus,
    values: Optional[dict] = None,
    now: Optional[datetime] = None,
) -> bool:
    """Move a pending refund to its final status. Completed and failed refunds never change again."""
    if status == RefundStatus.PENDING:
        return False

    changes = {k: v for k, v in (values or {}).items() if v is not None}
    changes["status"] = status.value
    changes["updated_at"] = now or datetime.utcnow()

    affected = (
        db.query(Refund)
        .filter(Refund.id == refund_id, Refund.tenant_id == tenant_id, Refund.status == RefundStatus.PENDING.value)
        .update(changes, synchronize_session=False)
    )
    return affected == 1


def apply_completed_refunds(db: Session, payment_id: str, tenant_id: str, now: Optional[datetime] = None) -> bool:
    """Roll completed refunds up into the payment and order statuses."""
    now = now or datetime.utcnow()
    refunded_minor = refunded_total(db, payment_id, (RefundStatus.COMPLETED.value,))

    for _ in range(len(ALLOWED_TRANSITIONS)):
        row = (
            db.query(Payment.status, Payment.amount_captured_minor, Payment.order_id)
            .filter(Payment.id == payment_id, Payment.tenant_id == tenant_id)
            .first()
        )
        if row is None:
            return False

        current = coerce_status(row.status)
        next_status = (
            PaymentStatus.REFUNDED if refunded_minor >= (row.amount_captured_minor or 0)
            else PaymentStatus.PARTIALLY_REFUNDED
        )
        if not can_transition(current, next_status):
            return False
        if try_transition(db, payment_id, current, next_status, {"amount_refunded_minor": refunded_minor}, now):
            mark_order_refunded(db, row.order_id, tenant_id, next_status, now)
            return True
    return False
