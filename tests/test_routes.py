import json

import pytest
from fastapi.testclient import TestClient

from payrecon.adapters.base import PaymentStatus, RefundStatus
from payrecon.database import get_db
from payrecon.main import app


@pytest.fixture
def client(services, session_factory, order):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.state.services = services
    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()
    del app.state.services


def create(client, key="idem-route-1", **body):
    return client.post("/api/payments", json={"order_id": "order-1", **body}, headers={"Idempotency-Key": key})


def test_create_payment_replays_with_same_key(client, adapter):
    first = create(client)
    second = create(client)

    assert first.status_code == 201
    assert second.status_code == 201
    assert first.json() == second.json()
    assert first.json()["status"] == "created"
    assert first.json()["amount_minor"] == 49900
    assert len(adapter.create_calls) == 1


def test_create_payment_for_unknown_order(client):
    response = client.post("/api/payments", json={"order_id": "nope"}, headers={"Idempotency-Key": "k"})

    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "ORDER_NOT_FOUND"


def test_create_payment_validates_amount(client):
    response = create(client, amount_minor=0)
    assert response.status_code == 422


def test_verify_then_summary(client, adapter):
    payment = create(client).json()
    adapter.verify_outcomes = [PaymentStatus.CAPTURED]

    verified = client.post(f"/api/payments/{payment['payment_id']}/verify")
    assert verified.status_code == 200
    assert verified.json()["status"] == "captured"
    assert verified.json()["upi_utr"] == "********9012"

    summary = client.get("/api/orders/order-1/payment-summary").json()
    assert summary["order"]["payment_status"] == "paid"
    assert summary["total_paid"] == 499.0
    assert summary["latest_transaction"]["id"] == payment["payment_id"]


def test_summary_unknown_order(client):
    response = client.get("/api/orders/missing/payment-summary")

    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "ORDER_NOT_FOUND"


def test_summary_respects_tenant_header(client):
    response = client.get("/api/orders/order-1/payment-summary", headers={"X-Tenant-Id": "acme"})
    assert response.status_code == 404


def test_verify_unknown_payment(client):
    response = client.post("/api/payments/missing/verify")

    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "PAYMENT_NOT_FOUND"


def test_cancel_and_refund_flow(client, adapter):
    payment = create(client).json()

    cancelled = client.post(f"/api/payments/{payment['payment_id']}/cancel", json={"reason": "user_closed"})
    assert cancelled.json()["status"] == "cancelled"

    refund = client.post(f"/api/payments/{payment['payment_id']}/refunds", json={"amount_minor": 100})
    assert refund.status_code == 422
    assert refund.json()["detail"]["code"] == "NO_CAPTURED_AMOUNT"


def test_refund_route(client, adapter):
    payment = create(client).json()
    adapter.verify_outcomes = [PaymentStatus.CAPTURED]
    client.post(f"/api/payments/{payment['payment_id']}/verify")

    refund = client.post(
        f"/api/payments/{payment['payment_id']}/refunds",
        json={"amount_minor": 19900, "merchant_refund_id": "R1"},
    )

    assert refund.status_code == 201
    assert refund.json()["status"] == "completed"
    assert refund.json()["amount_minor"] == 19900


def test_refund_status_route(client, adapter):
    payment = create(client).json()
    adapter.verify_outcomes = [PaymentStatus.CAPTURED]
    client.post(f"/api/payments/{payment['payment_id']}/verify")
    adapter.refund_status = RefundStatus.PENDING
    refund = client.post(f"/api/payments/{payment['payment_id']}/refunds", json={"amount_minor": 19900}).json()
    assert refund["status"] == "pending"

    checked = client.get(f"/api/payments/refunds/{refund['refund_id']}")
    missing = client.get("/api/payments/refunds/nope")

    assert checked.status_code == 200
    assert checked.json()["status"] == "completed"
    assert checked.json()["applied"] is True
    assert missing.status_code == 404
    assert missing.json()["detail"]["code"] == "REFUND_NOT_FOUND"


def test_webhook_route(client):
    payment = create(client).json()
    body = {"status": "captured", "merchantTransactionId": payment["provider_payment_id"],
            "amount": 49900, "eventId": "evt-route"}

    accepted = client.post("/webhooks/phonepe", content=json.dumps(body), headers={"X-VERIFY": "valid"})
    replayed = client.post("/webhooks/phonepe", content=json.dumps(body), headers={"X-VERIFY": "valid"})
    forged = client.post("/webhooks/phonepe", content=json.dumps(dict(body, eventId="evt-x")),
                         headers={"X-VERIFY": "nope"})

    assert accepted.status_code == 200
    assert accepted.json()["status"] == "processed"
    assert replayed.json() == {"status": "already_processed"}
    assert forged.status_code == 401


def test_admin_events_and_integrity(client):
    payment = create(client).json()

    events = client.get(f"/api/admin/payments/{payment['payment_id']}/events")
    assert events.status_code == 200
    assert [e["type"] for e in events.json()] == ["payment.created"]

    report = client.get(f"/api/admin/payments/{payment['payment_id']}/events/verify").json()
    assert report["valid"] is True
    assert report["total_entries"] == 1

    assert client.get("/api/admin/payments/missing/events").status_code == 404


def test_admin_polling_and_stats(client):
    create(client)

    jobs = client.get("/api/admin/polling/jobs", params={"status": "pending"}).json()
    assert len(jobs) == 1

    stats = client.get("/api/admin/idempotency/stats").json()
    assert stats["total_keys"] == 1

    cleanup = client.post("/api/admin/idempotency/cleanup", json={"older_than_days": 30}).json()
    assert cleanup == {"deleted": 0, "older_than_days": 30}
