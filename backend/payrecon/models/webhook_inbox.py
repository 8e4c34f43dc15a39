"""
Webhook Inbox Model — Dedup record for inbound provider webhooks.
"""
from datetime import datetime
from sqlalchemy import Column, String, Integer, DateTime, JSON, Boolean, UniqueConstraint

from payrecon.database import Base


class WebhookInbox(Base):
    __tablename__ = "webhook_inbox"
    __table_args__ = (
        UniqueConstraint("tenant_id", "provider", "dedupe_key", name="webhook_inbox_provider_dedupe_unique"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    tenant_id = Column(String(64), nullable=False, default="default")
    provider = Column(String(24), nullable=False)
    dedupe_key = Column(String(64), nullable=False)

    event_type = Column(String(64))
    payment_id = Column(String(64))
    signature_verified = Column(Boolean, default=False)
    payload = Column(JSON, default=dict)

    received_at = Column(DateTime, default=datetime.utcnow)
    processed_at = Column(DateTime, nullable=True, index=True)
