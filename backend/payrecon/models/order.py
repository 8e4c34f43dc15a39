"""
Order Model — The slice of the storefront order that payment reconciliation owns.
Maps to the 'orders' table.
"""
from datetime import datetime
from sqlalchemy import Column, String, Integer, DateTime

from payrecon.database import Base


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, default="default", index=True)

    status = Column(String(24), nullable=False, default="pending")
    # Statuses: pending → confirmed → shipped → delivered | cancelled

    # Derived from payments; never written from client input
    payment_status = Column(String(24), nullable=False, default="pending")
    # pending | paid | partially_refunded | refunded | failed
    payment_method = Column(String(24))
    payment_failed_at = Column(DateTime, nullable=True)

    total = Column(String(32))                    # Decimal string, e.g. "499.00"
    amount_minor = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="INR")

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
