from datetime import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from payrecon.adapters.base import PaymentStatus
from payrecon.database import init_db
from payrecon.models import Order, Payment, PhonePePollingJob
from payrecon.services.state_machine import apply_payment_status, can_transition

from conftest import load

NOW = datetime(2024, 1, 1, 10, 0, 0)


@pytest.fixture
def file_sessions(tmp_path):
    """Two sessions on separate connections, so commits interleave like concurrent requests."""
    engine = create_engine(f"sqlite:///{tmp_path / 'payments.db'}", connect_args={"check_same_thread": False})
    init_db(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    with factory.begin() as db:
        db.add(Order(id="order-1", tenant_id="default", status="pending", payment_status="pending",
                     total="499.00", amount_minor=49900, created_at=NOW, updated_at=NOW))
        db.add(Payment(id="pay-1", tenant_id="default", order_id="order-1", provider="phonepe",
                       provider_payment_id="Tpay1", amount_authorized_minor=49900, status="created",
                       method_kind="upi", created_at=NOW, updated_at=NOW))
        db.add(PhonePePollingJob(id="job-1", tenant_id="default", order_id="order-1", payment_id="pay-1",
                                 merchant_transaction_id="Tpay1", status="pending", attempt=0,
                                 next_poll_at=NOW, expire_at=NOW, created_at=NOW, updated_at=NOW))
    yield factory
    engine.dispose()


def test_capture_survives_concurrent_intermediate_move(file_sessions):
    with file_sessions.begin() as first:
        payment = first.query(Payment).filter(Payment.id == "pay-1").one()
        assert payment.status == "created"

        # Another path commits created -> processing after this session read the row
        with file_sessions.begin() as second:
            other = second.query(Payment).filter(Payment.id == "pay-1").one()
            assert apply_payment_status(second, other, PaymentStatus.PROCESSING, now=NOW) is True

        applied = apply_payment_status(
            first, payment, PaymentStatus.CAPTURED, {"amount_captured_minor": 49900}, now=NOW,
        )

    assert applied is True
    stored = load(file_sessions, Payment, id="pay-1")
    assert stored.status == "captured"
    assert stored.amount_captured_minor == 49900
    assert load(file_sessions, Order, id="order-1").payment_status == "paid"
    assert load(file_sessions, PhonePePollingJob, id="job-1").status == "completed"


def test_stale_transition_stops_when_no_longer_allowed(file_sessions):
    with file_sessions.begin() as first:
        payment = first.query(Payment).filter(Payment.id == "pay-1").one()

        with file_sessions.begin() as second:
            other = second.query(Payment).filter(Payment.id == "pay-1").one()
            assert apply_payment_status(second, other, PaymentStatus.CAPTURED, now=NOW) is True

        applied = apply_payment_status(first, payment, PaymentStatus.FAILED, now=NOW)

    assert applied is False
    assert load(file_sessions, Payment, id="pay-1").status == "captured"
    assert load(file_sessions, Order, id="order-1").payment_status == "paid"


def test_same_end_state_reached_elsewhere_is_not_applied_twice(file_sessions):
    with file_sessions.begin() as first:
        payment = first.query(Payment).filter(Payment.id == "pay-1").one()

        with file_sessions.begin() as second:
            other = second.query(Payment).filter(Payment.id == "pay-1").one()
            assert apply_payment_status(second, other, PaymentStatus.CAPTURED, now=NOW) is True

        assert apply_payment_status(first, payment, PaymentStatus.CAPTURED, now=NOW) is False


@pytest.mark.parametrize("current, next_status, allowed", [
    (PaymentStatus.CREATED, PaymentStatus.PROCESSING, True),
    (PaymentStatus.PROCESSING, PaymentStatus.CAPTURED, True),
    (PaymentStatus.CAPTURED, PaymentStatus.FAILED, False),
    (PaymentStatus.CAPTURED, PaymentStatus.PARTIALLY_REFUNDED, True),
    (PaymentStatus.CANCELLED, PaymentStatus.CAPTURED, False),
    (PaymentStatus.REFUNDED, PaymentStatus.PARTIALLY_REFUNDED, False),
])
def test_allowed_transitions(current, next_status, allowed):
    assert can_transition(current, next_status) is allowed
