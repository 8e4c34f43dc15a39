"""
PhonePe Polling Store — SQLAlchemy persistence for polling jobs.
Every method runs in its own short transaction and returns detached snapshots.
"""
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError

from payrecon.models.polling_job import PhonePePollingJob
from payrecon.services.polling_worker import PollingJob


def _to_job(row: PhonePePollingJob) -> PollingJob:
    return PollingJob(
        id=row.id,
        tenant_id=row.tenant_id,
        order_id=row.order_id,
        payment_id=row.payment_id,
        merchant_transaction_id=row.merchant_transaction_id,
        status=row.status,
        attempt=row.attempt or 0,
        next_poll_at=row.next_poll_at,
        expire_at=row.expire_at,
        last_polled_at=row.last_polled_at,
        last_status=row.last_status,
        last_response_code=row.last_response_code,
        last_error=row.last_error,
        completed_at=row.completed_at,
        created_at=row.created_at,
    )


class PhonePePollingStore:
    def __init__(self, session_factory):
        self._session_factory = session_factory

    def list_pending_jobs(self) -> list[PollingJob]:
        with self._session_factory() as db:
            rows = (
                db.query(PhonePePollingJob)
                .filter(PhonePePollingJob.status == "pending")
                .order_by(PhonePePollingJob.next_poll_at.asc())
                .all()
            )
            return [_to_job(row) for row in rows]

    def ensure_job(
        self,
        tenant_id: str,
        order_id: str,
        payment_id: str,
        merchant_transaction_id: str,
        next_poll_at: datetime,
        expire_at: datetime,
        created_at: Optional[datetime] = None,
    ) -> PollingJob:
        """Create the payment's polling job, or return the one that already exists."""
        existing = self._find_for_payment(tenant_id, payment_id)
        if existing is not None:
            return existing

        created_at = created_at or datetime.utcnow()
        try:
            with self._session_factory.begin() as db:
                row = PhonePePollingJob(
                    id=str(uuid.uuid4()),
                    tenant_id=tenant_id,
                    order_id=order_id,
                    payment_id=payment_id,
                    merchant_transaction_id=merchant_transaction_id,
                    status="pending",
                    attempt=0,
                    next_poll_at=next_poll_at,
                    expire_at=expire_at,
                    created_at=created_at,
                    updated_at=created_at,
                )
                db.add(row)
                db.flush()
                return _to_job(row)
        except IntegrityError:
            return self._find_for_payment(tenant_id, payment_id)

    def get_job_by_id(self, job_id: str) -> Optional[PollingJob]:
        with self._session_factory() as db:
            row = db.query(PhonePePollingJob).filter(PhonePePollingJob.id == job_id).first()
            return _to_job(row) if row else None

    def record_polling_attempt(
        self,
        job_id: str,
        polled_at: datetime,
        next_poll_at: datetime,
        last_status: Optional[str] = None,
        last_response_code: Optional[str] = None,
        last_error: Optional[str] = None,
    ) -> Optional[PollingJob]:
        """Bump ``attempt`` on a still-pending job. Returns None if the job was settled meanwhile."""
        with self._session_factory.begin() as db:
            affected = (
                db.query(PhonePePollingJob)
                .filter(PhonePePollingJob.id == job_id, PhonePePollingJob.status == "pending")
                .update(
                    {
                        PhonePePollingJob.attempt: PhonePePollingJob.attempt + 1,
                        PhonePePollingJob.next_poll_at: next_poll_at,
                        PhonePePollingJob.last_polled_at: polled_at,
                        PhonePePollingJob.last_status: last_status,
                        PhonePePollingJob.last_response_code: last_response_code,
                        PhonePePollingJob.last_error: last_error,
                        PhonePePollingJob.updated_at: polled_at,
                    },
                    synchronize_session=False,
                )
            )
        if affected != 1:
            return None
        return self.get_job_by_id(job_id)

    def mark_completed(
        self,
        job_id: str,
        final_status: str,
        last_status: Optional[str],
        last_response_code: Optional[str],
        completed_at: datetime,
    ) -> Optional[PollingJob]:
        with self._session_factory.begin() as db:
            db.query(PhonePePollingJob).filter(PhonePePollingJob.id == job_id).update(
                {
                    PhonePePollingJob.status: final_status,
                    PhonePePollingJob.attempt: PhonePePollingJob.attempt + 1,
                    PhonePePollingJob.last_polled_at: completed_at,
                    PhonePePollingJob.last_status: last_status,
                    PhonePePollingJob.last_response_code: last_response_code,
                    PhonePePollingJob.last_error: None,
                    PhonePePollingJob.completed_at: completed_at,
                    PhonePePollingJob.updated_at: completed_at,
                },
                synchronize_session=False,
            )
        return self.get_job_by_id(job_id)

    def mark_expired(self, job_id: str, expired_at: datetime) -> Optional[PollingJob]:
        with self._session_factory.begin() as db:
            db.query(PhonePePollingJob).filter(
                PhonePePollingJob.id == job_id,
                PhonePePollingJob.status == "pending",
            ).update(
                {
                    PhonePePollingJob.status: "expired",
                    PhonePePollingJob.completed_at: expired_at,
                    PhonePePollingJob.updated_at: expired_at,
                },
                synchronize_session=False,
            )
        return self.get_job_by_id(job_id)

    def get_latest_job_for_order(self, tenant_id: str, order_id: str) -> Optional[PollingJob]:
        with self._session_factory() as db:
            row = (
                db.query(PhonePePollingJob)
                .filter(PhonePePollingJob.tenant_id == tenant_id, PhonePePollingJob.order_id == order_id)
                .order_by(PhonePePollingJob.created_at.desc())
                .first()
            )
            return _to_job(row) if row else None

    def list_jobs(self, status: Optional[str] = None, tenant_id: Optional[str] = None, limit: int = 100) -> list[PollingJob]:
        with self._session_factory() as db:
            query = db.query(PhonePePollingJob)
            if status:
                query = query.filter(PhonePePollingJob.status == status)
            if tenant_id:
                query = query.filter(PhonePePollingJob.tenant_id == tenant_id)
            rows = query.order_by(PhonePePollingJob.created_at.desc()).limit(limit).all()
            return [_to_job(row) for row in rows]

    def _find_for_payment(self, tenant_id: str, payment_id: str) -> Optional[PollingJob]:
        with self._session_factory() as db:
            row = (
                db.query(PhonePePollingJob)
                .filter(PhonePePollingJob.tenant_id == tenant_id, PhonePePollingJob.payment_id == payment_id)
                .first()
            )
            return _to_job(row) if row else None
