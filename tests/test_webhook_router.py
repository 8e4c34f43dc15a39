import json

import pytest

from payrecon.adapters.base import PaymentStatus, RefundStatus, VerifyPaymentParams, WebhookRequest
from payrecon.models import Order, Payment, PaymentEvent, PhonePePollingJob, Refund, WebhookInbox
from payrecon.services.payments_service import CreatePaymentInput, CreateRefundInput
from payrecon.services.webhook_router import compute_dedupe_key

from conftest import load, load_all


@pytest.fixture
def payment(services, order):
    return services.payments.create_payment(
        CreatePaymentInput(order_id=order, idempotency_key="idem-webhook"), "default",
    )


def webhook(payment, status="captured", amount=49900, event_id="evt-1", signature="valid", **extra):
    body = {"status": status, "merchantTransactionId": payment["provider_payment_id"], "amount": amount, **extra}
    if event_id:
        body["eventId"] = event_id
    return WebhookRequest(
        provider="phonepe",
        headers={"x-verify": signature, "content-type": "application/json"},
        body=json.dumps(body).encode("utf-8"),
        tenant_id="default",
    )


def events_of(session_factory, payment_id, event_type):
    return [e for e in load_all(session_factory, PaymentEvent, payment_id=payment_id) if e.type == event_type]

def rejections(session_factory, event_type):
    return load_all(session_factory, PaymentEvent, type=event_type)


def refund_webhook(payment, refund, status="completed", event_id="evt-refund-1"):
    body = {
        "status": status,
        "merchantTransactionId": refund["merchant_refund_id"],
        "originalTransactionId": payment["provider_payment_id"],
        "transactionId": "PRWEBHOOK1",
        "amount": refund["amount_minor"],
        "eventId": event_id,
    }
    return WebhookRequest(
        provider="phonepe", headers={"x-verify": "valid"}, body=json.dumps(body).encode("utf-8"), tenant_id="default",
    )



def test_captured_webhook_promotes_order(services, payment, session_factory):
    response = services.webhooks.process_webhook("phonepe", webhook(payment, utr="998877665544"))

    assert response.status_code == 200
    assert response.body["status"] == "processed"
    assert response.body["payment_updated"] is True

    stored = load(session_factory, Payment, id=payment["payment_id"])
    assert stored.status == "captured"
    assert stored.amount_captured_minor == 49900
    assert stored.upi_utr == "********5544"
    assert load(session_factory, Order, id="order-1").payment_status == "paid"
    assert load(session_factory, PhonePePollingJob, payment_id=payment["payment_id"]).status == "completed"

    inbox = load(session_factory, WebhookInbox, provider="phonepe")
    assert inbox.signature_verified is True
    assert inbox.processed_at is not None


def test_replayed_webhook_is_short_circuited(services, adapter, payment, session_factory):
    first = services.webhooks.process_webhook("phonepe", webhook(payment))
    second = services.webhooks.process_webhook("phonepe", webhook(payment))

    assert first.body["status"] == "processed"
    assert second.status_code == 200
    assert second.body == {"status": "already_processed"}
    assert adapter.webhook_calls == 1
    assert len(events_of(session_factory, payment["payment_id"], "payment.captured")) == 1

    replays = rejections(session_factory, "webhook.replayed")
    assert len(replays) == 1
    assert replays[0].payment_id is None
    assert replays[0].source == "webhook"
    assert replays[0].provider == "phonepe"


def test_invalid_signature_is_rejected_without_side_effects(services, payment, session_factory):
    response = services.webhooks.process_webhook("phonepe", webhook(payment, signature="forged"))

    assert response.status_code == 401
    assert response.body["error"] == "signature_invalid"
    assert load_all(session_factory, WebhookInbox) == []
    assert load(session_factory, Payment, id=payment["payment_id"]).status == "created"

    failures = rejections(session_factory, "webhook.signature_failed")
    assert len(failures) == 1
    assert failures[0].data["error_code"] == "INVALID_SIGNATURE"
    assert failures[0].payment_id is None

    # A later genuine delivery of the same event still goes through
    retry = services.webhooks.process_webhook("phonepe", webhook(payment))
    assert retry.body["status"] == "processed"


def test_amount_mismatch_is_contained(services, payment, session_factory):
    response = services.webhooks.process_webhook("phonepe", webhook(payment, amount=100))

    assert response.status_code == 200
    assert response.body["status"] == "processed"
    assert response.body["payment_updated"] is False

    mismatches = events_of(session_factory, payment["payment_id"], "webhook.amount_mismatch")
    assert len(mismatches) == 1
    assert mismatches[0].data["expected_amount_minor"] == 49900
    assert mismatches[0].data["received_amount_minor"] == 100
    assert mismatches[0].data["order_id"] == "order-1"

    assert load(session_factory, Payment, id=payment["payment_id"]).status == "created"
    assert load(session_factory, Order, id="order-1").payment_status == "pending"


def test_cancel_after_capture_is_a_noop(services, adapter, payment, session_factory):
    adapter.verify_outcomes = [PaymentStatus.CAPTURED]
    services.payments.verify_payment(VerifyPaymentParams(payment_id=payment["payment_id"]), "default")

    response = services.webhooks.process_webhook("phonepe", webhook(payment, status="cancelled", event_id="evt-2"))

    assert response.body["status"] == "processed"
    assert response.body["payment_updated"] is False
    assert load(session_factory, Payment, id=payment["payment_id"]).status == "captured"
    assert load(session_factory, Order, id="order-1").payment_status == "paid"


def test_expired_webhook_cancels_payment(services, payment, session_factory):
    response = services.webhooks.process_webhook("phonepe", webhook(payment, status="expired", amount=None))

    assert response.body["payment_updated"] is True
    assert load(session_factory, Payment, id=payment["payment_id"]).status == "cancelled"
    assert load(session_factory, Order, id="order-1").payment_status == "failed"
    assert len(events_of(session_factory, payment["payment_id"], "payment.expired")) == 1


def test_pending_webhook_moves_to_processing(services, payment, session_factory):
    response = services.webhooks.process_webhook("phonepe", webhook(payment, status="pending", amount=None))

    assert response.body["payment_updated"] is True
    assert load(session_factory, Payment, id=payment["payment_id"]).status == "processing"


def test_unknown_payment_is_acknowledged(services, payment):
    unknown = dict(payment, provider_payment_id="T-does-not-exist")
    response = services.webhooks.process_webhook("phonepe", webhook(unknown))

    assert response.status_code == 200
    assert response.body["payment_updated"] is False
    assert response.body["payment_id"] is None


def test_unconfigured_provider(services, payment):
    response = services.webhooks.process_webhook("razorpay", webhook(payment))

    assert response.status_code == 404
    assert response.body["error"] == "provider_not_available"


def test_dedupe_key_prefers_event_id():
    a = compute_dedupe_key("default", "phonepe", json.dumps({"eventId": "e1", "amount": 1}).encode())
    b = compute_dedupe_key("default", "phonepe", json.dumps({"eventId": "e1", "amount": 2}).encode())
    other_tenant = compute_dedupe_key("acme", "phonepe", json.dumps({"eventId": "e1"}).encode())

    assert a == b
    assert a != other_tenant


def test_dedupe_key_falls_back_to_identifiers_and_body():
    body_a = json.dumps({"data": {"merchantTransactionId": "T1", "state": "COMPLETED"}}).encode()
    body_b = json.dumps({"data": {"merchantTransactionId": "T1", "state": "FAILED"}}).encode()

    assert compute_dedupe_key("default", "phonepe", body_a) == compute_dedupe_key("default", "phonepe", body_a)
    assert compute_dedupe_key("default", "phonepe", body_a) != compute_dedupe_key("default", "phonepe", body_b)


def test_stats_and_cleanup(services, payment, clock):
    services.webhooks.process_webhook("phonepe", webhook(payment))

    stats = services.webhooks.get_stats("default")
    assert stats["total"] == 1
    assert stats["processed"] == 1
    assert stats["by_provider"] == {"phonepe": 1}

    assert services.webhooks.cleanup_old_webhooks(30) == 0
    clock.advance(31 * 24 * 3600)
    assert services.webhooks.cleanup_old_webhooks(30) == 1


def test_bad_authorization_is_forbidden_and_recorded(services, payment, session_factory):
    request = webhook(payment)
    request.headers["authorization"] = "wrong"

    response = services.webhooks.process_webhook("phonepe", request)

    assert response.status_code == 403
    assert response.body["error"] == "authorization_invalid"
    assert load_all(session_factory, WebhookInbox) == []

    failures = rejections(session_factory, "webhook.auth_failed")
    assert len(failures) == 1
    assert failures[0].data["error_code"] == "INVALID_AUTHORIZATION"
    assert rejections(session_factory, "webhook.signature_failed") == []


@pytest.fixture
def pending_refund(services, adapter, payment):
    adapter.verify_outcomes = [PaymentStatus.CAPTURED]
    services.payments.verify_payment(VerifyPaymentParams(payment_id=payment["payment_id"]), "default")
    adapter.refund_status = RefundStatus.PENDING
    return services.payments.create_refund(
        CreateRefundInput(payment_id=payment["payment_id"], amount_minor=19900), "default",
    )


def test_refund_webhook_settles_pending_refund(services, adapter, payment, pending_refund, session_factory):
    response = services.webhooks.process_webhook("phonepe", refund_webhook(payment, pending_refund))

    assert response.status_code == 200
    assert response.body["status"] == "processed"
    assert response.body["refund_updated"] is True
    assert response.body["refund_id"] == pending_refund["refund_id"]

    refund = load(session_factory, Refund, id=pending_refund["refund_id"])
    assert refund.status == "completed"
    assert refund.provider_refund_id == "PRWEBHOOK1"

    stored = load(session_factory, Payment, id=payment["payment_id"])
    assert stored.status == "partially_refunded"
    assert stored.amount_refunded_minor == 19900
    assert load(session_factory, Order, id="order-1").payment_status == "partially_refunded"

    assert len(events_of(session_factory, payment["payment_id"], "refund.updated")) == 1
    assert len(events_of(session_factory, payment["payment_id"], "refund.status_changed")) == 1

    inbox = load(session_factory, WebhookInbox, event_type="refund.updated")
    assert inbox.payment_id == payment["provider_payment_id"]
    assert inbox.payload["merchant_refund_id"] == pending_refund["merchant_refund_id"]
    assert adapter.refund_status_calls == []


def test_refund_webhook_after_settlement_changes_nothing(services, payment, pending_refund, session_factory):
    services.webhooks.process_webhook("phonepe", refund_webhook(payment, pending_refund, status="failed"))
    response = services.webhooks.process_webhook(
        "phonepe", refund_webhook(payment, pending_refund, status="completed", event_id="evt-refund-2"),
    )

    assert response.body["refund_updated"] is False
    assert load(session_factory, Refund, id=pending_refund["refund_id"]).status == "failed"
    assert load(session_factory, Payment, id=payment["payment_id"]).status == "captured"


def test_refund_webhook_for_unknown_refund(services, payment, pending_refund):
    unknown = dict(pending_refund, merchant_refund_id="R-not-ours")
    response = services.webhooks.process_webhook("phonepe", refund_webhook(payment, unknown))

    assert response.status_code == 200
    assert response.body["refund_updated"] is False
    assert response.body["refund_id"] is None
