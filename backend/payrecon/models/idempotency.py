"""
Idempotency Key Model — Cached responses for at-most-once operations.
"""
from datetime import datetime
from sqlalchemy import Column, String, Integer, DateTime, JSON, UniqueConstraint

from payrecon.database import Base


class IdempotencyKey(Base):
    __tablename__ = "idempotency_keys"
    __table_args__ = (
        UniqueConstraint("key", "scope", name="idempotency_key_scope_unique"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    key = Column(String(128), nullable=False)
    scope = Column(String(64), nullable=False, index=True)

    request_hash = Column(String(64), nullable=False)
    response = Column(JSON)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
