"""
Audit Service — Manages the append-only payment event log.
"""
import uuid
from datetime import datetime
from typing import Optional, Dict

from sqlalchemy.orm import Session

from payrecon.models.payment_event import PaymentEvent
from payrecon.utils.hashing import generate_hash


class AuditService:
    """Creates tamper-evident payment event entries."""

    @staticmethod
    def log(
        db: Session,
        tenant_id: str,
        event_type: str,
        payment_id: Optional[str] = None,
        order_id: Optional[str] = None,
        provider: Optional[str] = None,
        source: str = "api",
        data: Optional[Dict] = None,
        occurred_at: Optional[datetime] = None,
    ) -> PaymentEvent:
        """Append a payment event inside the caller's transaction.

        Args:
            db: Database session; the caller owns commit/rollback.
            tenant_id: Tenant the payment belongs to.
            event_type: Event identifier (e.g. payment.created, webhook.amount_mismatch).
            payment_id: Payment this event concerns, if any.
            order_id: Order this event concerns, if any.
            provider: Gateway name.
            source: api, webhook or poller.
            data: Free-form payload; None values are dropped.
            occurred_at: Event time, defaults to now.

        Returns:
            The pending PaymentEvent row.
        """
        payload = {k: v for k, v in (data or {}).items() if v is not None}

        entry = PaymentEvent(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            payment_id=payment_id,
            order_id=order_id,
            provider=provider,
            type=event_type,
            source=source,
            data=payload,
            payload_hash=generate_hash(payload),
            occurred_at=occurred_at or datetime.utcnow(),
        )
        db.add(entry)
        db.flush()
        return entry

    @staticmethod
    def get_trail(db: Session, payment_id: str, tenant_id: str) -> list[PaymentEvent]:
        """Get the full event trail for a payment, ordered chronologically."""
        return (
            db.query(PaymentEvent)
            .filter(PaymentEvent.payment_id == payment_id, PaymentEvent.tenant_id == tenant_id)
            .order_by(PaymentEvent.occurred_at.asc())
            .all()
        )

    @staticmethod
    def list_by_type(db: Session, event_type: str, tenant_id: str, limit: int = 100) -> list[PaymentEvent]:
        return (
            db.query(PaymentEvent)
            .filter(PaymentEvent.type == event_type, PaymentEvent.tenant_id == tenant_id)
            .order_by(PaymentEvent.occurred_at.desc())
            .limit(limit)
            .all()
        )

    @staticmethod
    def verify_integrity(db: Session, payment_id: str, tenant_id: str) -> dict:
        """Recompute each event's hash and report the first row that no longer matches.

        Returns:
            dict with 'valid' (bool), 'total_entries', and 'broken_at' (if invalid).
        """
        entries = AuditService.get_trail(db, payment_id, tenant_id)

        for entry in entries:
            if entry.payload_hash != generate_hash(entry.data or {}):
                return {
                    "valid": False,
                    "total_entries": len(entries),
                    "broken_at": entry.id,
                    "message": f"Event {entry.id} ({entry.type}) does not match its hash",
                }

        return {"valid": True, "total_entries": len(entries), "broken_at": None}
