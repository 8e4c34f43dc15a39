import json
import os
import uuid
from datetime import datetime, timedelta

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("POLLING_ENABLED", "false")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from payrecon.adapters.base import (
    PaymentAdapter,
    PaymentCancelledEvent,
    PaymentCapturedEvent,
    PaymentExpiredEvent,
    PaymentFailedEvent,
    PaymentPendingEvent,
    PaymentResult,
    PaymentStatus,
    RefundResult,
    RefundStatus,
    RefundStatusEvent,
    VerifyPaymentParams,
    WebhookVerifyResult,
)
from payrecon.adapters.factory import AdapterFactory
from payrecon.config import Settings
from payrecon.container import build_services
from payrecon.database import init_db
from payrecon.models import Order


class FakeClock:
    def __init__(self, start=datetime(2024, 1, 1, 10, 0, 0)):
        self.current = start

    def __call__(self):
        return self.current

    def advance(self, seconds):
        self.current += timedelta(seconds=seconds)


class FakeTimer:
    def __init__(self, delay, callback):
        self.delay = delay
        self.callback = callback
        self.started = False
        self.cancelled = False
        self.fired = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        self.fired = True
        self.callback()


class FakeTimerFactory:
    """Collects timers instead of sleeping; tests fire them by hand."""

    def __init__(self):
        self.timers = []

    def __call__(self, delay, callback):
        timer = FakeTimer(delay, callback)
        self.timers.append(timer)
        return timer

    def pending(self):
        return [t for t in self.timers if t.started and not t.cancelled and not t.fired]

    def fire_next(self, clock):
        timer = self.pending()[0]
        clock.advance(timer.delay)
        timer.fire()
        return timer


_WEBHOOK_EVENTS = {
    "captured": PaymentCapturedEvent,
    "cancelled": PaymentCancelledEvent,
    "expired": PaymentExpiredEvent,
    "failed": PaymentFailedEvent,
    "pending": PaymentPendingEvent,
}


class FakeAdapter(PaymentAdapter):
    """In-memory PhonePe stand-in. Verify outcomes are consumed in order; the last one repeats."""

    provider = "phonepe"
    requires_polling = True

    def __init__(self):
        self.create_calls = []
        self.verify_calls = []
        self.refund_calls = []
        self.refund_status_calls = []
        self.webhook_calls = 0
        self.create_error = None
        self.create_status = PaymentStatus.CREATED
        self.verify_outcomes = [PaymentStatus.PROCESSING]
        self.verify_amount_minor = None
        self.verify_utr = "123456789012"
        self.verify_vpa = "customer@ybl"
        self.refund_status = RefundStatus.COMPLETED
        self.refund_status_outcome = RefundStatus.COMPLETED

    def create_payment(self, params):
        self.create_calls.append(params)
        if self.create_error is not None:
            raise self.create_error
        return PaymentResult(
            payment_id=params.payment_id,
            status=self.create_status,
            provider=self.provider,
            amount_minor=params.amount_minor,
            provider_payment_id="T" + uuid.uuid4().hex[:20],
            method_kind="upi",
            payer_handle=params.payer_vpa,
            instrument_type=params.instrument,
            redirect_url="https://mercury.example/pay",
        )

    def verify_payment(self, params):
        self.verify_calls.append(params)
        outcome = self.verify_outcomes.pop(0) if len(self.verify_outcomes) > 1 else self.verify_outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        captured = outcome == PaymentStatus.CAPTURED
        return PaymentResult(
            payment_id=params.payment_id,
            status=outcome,
            provider=self.provider,
            amount_minor=self.verify_amount_minor if captured else None,
            provider_payment_id=params.provider_payment_id,
            utr=self.verify_utr if captured else None,
            payer_handle=self.verify_vpa if captured else None,
            response_code="SUCCESS" if captured else "PAYMENT_PENDING",
        )

    def capture_payment(self, params):
        return self.verify_payment(VerifyPaymentParams(
            payment_id=params.payment_id, provider_payment_id=params.provider_payment_id,
        ))

    def create_refund(self, params):
        self.refund_calls.append(params)
        return RefundResult(
            refund_id=params.refund_id,
            payment_id=params.payment_id,
            status=self.refund_status,
            provider=self.provider,
            amount_minor=params.amount_minor,
            provider_refund_id="PR" + uuid.uuid4().hex[:10],
            merchant_refund_id=params.merchant_refund_id,
            reason=params.reason,
        )

    def get_refund_status(self, params):
        self.refund_status_calls.append(params)
        if isinstance(self.refund_status_outcome, Exception):
            raise self.refund_status_outcome
        return RefundResult(
            refund_id=params.refund_id,
            payment_id=params.payment_id,
            status=self.refund_status_outcome,
            provider=self.provider,
            amount_minor=0,
            provider_refund_id=params.provider_refund_id or "PRSETTLED",
            merchant_refund_id=params.merchant_refund_id,
            utr="XXXXXXXX9012",
        )

    def verify_webhook(self, request):
        self.webhook_calls += 1
        if request.headers.get("authorization") == "wrong":
            return WebhookVerifyResult(verified=False, error_code="INVALID_AUTHORIZATION", error_message="bad auth")
        if request.headers.get("x-verify") != "valid":
            return WebhookVerifyResult(verified=False, error_code="INVALID_SIGNATURE", error_message="bad signature")

        body = json.loads(request.body)
        if body.get("originalTransactionId"):
            return WebhookVerifyResult(verified=True, event=RefundStatusEvent(
                refund_id=body["merchantTransactionId"],
                status=RefundStatus(body["status"]),
                amount_minor=body.get("amount"),
                original_transaction_id=body["originalTransactionId"],
                provider_refund_id=body.get("transactionId"),
            ))

        event_cls = _WEBHOOK_EVENTS[body["status"]]
        return WebhookVerifyResult(verified=True, event=event_cls(
            payment_id=body["merchantTransactionId"],
            merchant_transaction_id=body["merchantTransactionId"],
            amount_minor=body.get("amount"),
            utr=body.get("utr"),
        ))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def timers():
    return FakeTimerFactory()


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def settings():
    return Settings(DATABASE_URL="sqlite://", POLLING_ENABLED=False, _env_file=None)


@pytest.fixture
def adapter():
    return FakeAdapter()


@pytest.fixture
def services(settings, session_factory, adapter, timers, clock):
    factory = AdapterFactory("phonepe", {"phonepe": adapter})
    built = build_services(settings, session_factory, factory, timer_factory=timers, now=clock)
    yield built
    built.polling_worker.stop()


@pytest.fixture
def make_order(session_factory, clock):
    def _make(order_id="order-1", amount_minor=49900, total="499.00", tenant_id="default"):
        with session_factory.begin() as db:
            db.add(Order(
                id=order_id,
                tenant_id=tenant_id,
                status="pending",
                payment_status="pending",
                total=total,
                amount_minor=amount_minor,
                currency="INR",
                created_at=clock(),
                updated_at=clock(),
            ))
        return order_id

    return _make


@pytest.fixture
def order(make_order):
    return make_order()


def load(session_factory, model, **filters):
    with session_factory() as db:
        return db.query(model).filter_by(**filters).first()


def load_all(session_factory, model, **filters):
    with session_factory() as db:
        return db.query(model).filter_by(**filters).all()
