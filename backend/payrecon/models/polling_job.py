"""
PhonePe Polling Job Model — Persisted state of the reconciliation poller.
One row per payment under active polling; survives process restarts.
"""
from datetime import datetime
from sqlalchemy import Column, String, Integer, DateTime, Text, UniqueConstraint

from payrecon.database import Base


class PhonePePollingJob(Base):
    __tablename__ = "phonepe_polling_jobs"
    __table_args__ = (
        UniqueConstraint("tenant_id", "payment_id", name="phonepe_polling_payment_unique"),
    )

    id = Column(String(36), primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, default="default")
    order_id = Column(String(36), nullable=False, index=True)
    payment_id = Column(String(36), nullable=False)
    merchant_transaction_id = Column(String(64), nullable=False)

    status = Column(String(16), nullable=False, default="pending", index=True)
    # pending → completed | failed | expired
    attempt = Column(Integer, nullable=False, default=0)
    next_poll_at = Column(DateTime, nullable=False)
    expire_at = Column(DateTime, nullable=False)

    last_polled_at = Column(DateTime, nullable=True)
    last_status = Column(String(50))
    last_response_code = Column(String(50))
    last_error = Column(Text)
    completed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)
