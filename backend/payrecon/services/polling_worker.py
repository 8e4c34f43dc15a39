"""
PhonePe Polling Worker — Re-verifies pending UPI payments on a back-off schedule.

PhonePe collect and intent flows can settle without ever calling us back, so
every PhonePe payment gets a persisted polling job. One timer per job; the
timer map is rebuilt from ``next_poll_at`` on ``start()``.
"""
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Sequence

from payrecon.adapters.base import VerifyPaymentParams

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVALS = (15, 30, 60, 120, 240)
DEFAULT_EXPIRE_AFTER_SECONDS = 1200

SUCCESS_STATUSES = frozenset({"captured", "completed", "paid", "succeeded", "success"})
FAILURE_STATUSES = frozenset({"failed", "cancelled", "canceled", "timedout", "expired"})


@dataclass
class PollingJob:
    """Detached snapshot of a ``phonepe_polling_jobs`` row."""

    id: str
    tenant_id: str
    order_id: str
    payment_id: str
    merchant_transaction_id: str
    status: str
    attempt: int
    next_poll_at: datetime
    expire_at: datetime
    last_polled_at: Optional[datetime] = None
    last_status: Optional[str] = None
    last_response_code: Optional[str] = None
    last_error: Optional[str] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


@dataclass
class RegisterJobParams:
    tenant_id: str
    order_id: str
    payment_id: str
    merchant_transaction_id: str
    created_at: Optional[datetime] = None
    expire_after_seconds: Optional[int] = None


def default_timer_factory(delay: float, callback: Callable[[], None]):
    timer = threading.Timer(delay, callback)
    timer.daemon = True
    return timer


class PhonePePollingWorker:
    def __init__(
        self,
        store,
        get_verification_service: Callable[[], object],
        poll_intervals: Optional[Sequence[int]] = None,
        expire_after_seconds: int = DEFAULT_EXPIRE_AFTER_SECONDS,
        now: Callable[[], datetime] = datetime.utcnow,
        timer_factory: Callable = default_timer_factory,
    ):
        self.store = store
        self._get_verification_service = get_verification_service
        self.poll_intervals = list(poll_intervals or DEFAULT_POLL_INTERVALS)
        self.expire_after_seconds = expire_after_seconds
        self._now = now
        self._timer_factory = timer_factory
        self._timers: Dict[str, object] = {}
        self._lock = threading.Lock()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def scheduled_job_ids(self) -> list[str]:
        with self._lock:
            return list(self._timers)

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True

        jobs = self.store.list_pending_jobs()
        for job in jobs:
            self._schedule(job)
        logger.info("PhonePe polling worker started with %d pending job(s)", len(jobs))

    def stop(self) -> None:
        """Cancel in-memory timers. Persisted jobs are left untouched."""
        with self._lock:
            self._running = False
            timers = list(self._timers.values())
            self._timers.clear()

        for timer in timers:
            timer.cancel()
        logger.info("PhonePe polling worker stopped (%d timer(s) cancelled)", len(timers))

    def register_job(self, params: RegisterJobParams) -> PollingJob:
        created_at = params.created_at or self._now()
        expire_at = created_at + timedelta(seconds=params.expire_after_seconds or self.expire_after_seconds)
        next_poll_at = min(created_at + timedelta(seconds=self.poll_intervals[0]), expire_at)

        job = self.store.ensure_job(
            tenant_id=params.tenant_id,
            order_id=params.order_id,
            payment_id=params.payment_id,
            merchant_transaction_id=params.merchant_transaction_id,
            next_poll_at=next_poll_at,
            expire_at=expire_at,
            created_at=created_at,
        )
        if self._running and job.status == "pending":
            self._schedule(job)
        return job

    def process_job(self, job_id: str) -> None:
        job = self.store.get_job_by_id(job_id)
        if job is None or job.status != "pending":
            return

        now = self._now()
        if now >= job.expire_at:
            self.store.mark_expired(job.id, now)
            logger.info("polling job %s for payment %s expired", job.id, job.payment_id)
            return

        try:
            service = self._get_verification_service()
            result = service.verify_payment(
                VerifyPaymentParams(
                    payment_id=job.payment_id,
                    provider_payment_id=job.merchant_transaction_id,
                    provider_data={"merchantTransactionId": job.merchant_transaction_id},
                    source="poller",
                ),
                job.tenant_id,
            )
        except Exception as exc:
            logger.warning("polling attempt for payment %s failed: %s", job.payment_id, exc)
            # Keep the last provider observation; only the error is new
            self._schedule_next(
                job, now, last_status=job.last_status, response_code=job.last_response_code, error=str(exc),
            )
            return

        status = str(result.get("status") or "").lower()
        response_code = result.get("response_code")

        if status in SUCCESS_STATUSES:
            self.store.mark_completed(job.id, "completed", status, response_code, now)
            logger.info("polling job %s completed: payment %s is %s", job.id, job.payment_id, status)
        elif status in FAILURE_STATUSES:
            self.store.mark_completed(job.id, "failed", status, response_code, now)
            logger.info("polling job %s closed: payment %s is %s", job.id, job.payment_id, status)
        else:
            self._schedule_next(job, now, last_status=status, response_code=response_code, error=None)

    def _schedule_next(
        self, job: PollingJob, now: datetime, last_status: Optional[str],
        response_code: Optional[str], error: Optional[str],
    ) -> None:
        # The final interval repeats until expire_at
        attempt = job.attempt + 1
        interval = self.poll_intervals[min(attempt, len(self.poll_intervals) - 1)]
        next_poll_at = min(now + timedelta(seconds=interval), job.expire_at)

        if (next_poll_at - now).total_seconds() <= 0:
            self.store.mark_expired(job.id, now)
            return

        updated = self.store.record_polling_attempt(
            job.id,
            polled_at=now,
            next_poll_at=next_poll_at,
            last_status=last_status,
            last_response_code=response_code,
            last_error=error,
        )
        if updated is not None and updated.status == "pending":
            self._schedule(updated)

    def _schedule(self, job: PollingJob) -> None:
        delay = max((job.next_poll_at - self._now()).total_seconds(), 0.0)
        timer = self._timer_factory(delay, lambda: self._fire(job.id))

        with self._lock:
            if not self._running:
                return
            previous = self._timers.pop(job.id, None)
            self._timers[job.id] = timer

        if previous is not None:
            previous.cancel()
        timer.start()

    def _fire(self, job_id: str) -> None:
        with self._lock:
            self._timers.pop(job_id, None)
        try:
            self.process_job(job_id)
        except Exception:
            logger.exception("polling job %s crashed", job_id)
