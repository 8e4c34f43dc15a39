"""
Payment Event Model — Append-only audit log of every state-changing action.
Each row carries a SHA-256 hash of its data for tamper detection.
"""
from datetime import datetime
from sqlalchemy import Column, String, DateTime, JSON

from payrecon.database import Base


class PaymentEvent(Base):
    __tablename__ = "payment_events"

    id = Column(String(36), primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, default="default", index=True)
    payment_id = Column(String(36), nullable=True, index=True)
    order_id = Column(String(36), nullable=True, index=True)
    provider = Column(String(24))

    type = Column(String(64), nullable=False, index=True)
    # Types: payment.created, payment.verified, payment.captured, payment.cancelled,
    #        payment.expired, payment.failed, payment.amount_mismatch,
    #        webhook.amount_mismatch, checkout.user_cancelled, refund.created,
    #        refund.attempt_failed, refund.status_changed, refund.updated,
    #        webhook.replayed, webhook.signature_failed, webhook.auth_failed
    source = Column(String(16), nullable=False, default="api")   # api | webhook | poller

    data = Column(JSON, default=dict)
    payload_hash = Column(String(64))

    occurred_at = Column(DateTime, default=datetime.utcnow, index=True)
