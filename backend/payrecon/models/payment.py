"""
Payment & Refund Models — One row per collection attempt and per refund.
Payment rows are never deleted; they are the audit trail for an order's money.
"""
from datetime import datetime
from sqlalchemy import Column, String, Integer, DateTime, Text, UniqueConstraint

from payrecon.database import Base


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        UniqueConstraint("provider", "provider_payment_id", name="payments_provider_payment_unique"),
    )

    id = Column(String(36), primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, default="default", index=True)
    order_id = Column(String(36), nullable=False, index=True)

    provider = Column(String(24), nullable=False)     # phonepe | razorpay | cashfree | ...
    environment = Column(String(8), nullable=False, default="test")

    # Opaque provider-side references, null until the provider answers
    provider_payment_id = Column(String(64))          # PhonePe merchantTransactionId
    provider_order_id = Column(String(64))
    provider_transaction_id = Column(String(64))

    # Money, always in minor units (paise)
    amount_authorized_minor = Column(Integer)
    amount_captured_minor = Column(Integer)
    amount_refunded_minor = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="INR")

    status = Column(String(24), nullable=False, default="created", index=True)
    # created → processing → captured | failed | cancelled; captured → partially_refunded | refunded

    method_kind = Column(String(16))                  # upi | card | netbanking

    # UPI-specific, masked before storage
    upi_payer_handle = Column(String(128))
    upi_utr = Column(String(64))
    upi_instrument_variant = Column(String(32))       # UPI_COLLECT | UPI_INTENT | UPI_QR

    failure_code = Column(String(64))
    failure_message = Column(Text)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)


class Refund(Base):
    __tablename__ = "refunds"

    id = Column(String(36), primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, default="default", index=True)
    payment_id = Column(String(36), nullable=False, index=True)
    order_id = Column(String(36), nullable=False, index=True)

    provider = Column(String(24), nullable=False)
    provider_refund_id = Column(String(64))
    merchant_refund_id = Column(String(64))

    amount_minor = Column(Integer, nullable=False)
    status = Column(String(16), nullable=False, default="pending")  # pending | completed | failed
    reason = Column(String(255))
    upi_utr = Column(String(64))

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)
