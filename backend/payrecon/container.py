"""
Service Container — Builds the process-wide service graph once at startup.

Routes reach these through ``app.state`` (see ``payrecon.dependencies``), and
tests build their own graph against an in-memory database.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from payrecon.adapters.factory import AdapterFactory
from payrecon.config import Settings
from payrecon.services.idempotency_service import IdempotencyService
from payrecon.services.payments_service import PaymentsService
from payrecon.services.polling_store import PhonePePollingStore
from payrecon.services.polling_worker import PhonePePollingWorker, default_timer_factory
from payrecon.services.webhook_router import WebhookRouter


@dataclass
class Services:
    adapters: AdapterFactory
    idempotency: IdempotencyService
    payments: PaymentsService
    webhooks: WebhookRouter
    polling_store: PhonePePollingStore
    polling_worker: PhonePePollingWorker


def build_services(
    settings: Settings,
    session_factory,
    adapter_factory: Optional[AdapterFactory] = None,
    timer_factory: Callable = default_timer_factory,
    now: Callable[[], datetime] = datetime.utcnow,
) -> Services:
    adapters = adapter_factory or AdapterFactory.from_settings(settings)

    idempotency = IdempotencyService(
        session_factory, retention_days=settings.IDEMPOTENCY_RETENTION_DAYS, now=now,
    )
    payments = PaymentsService(
        session_factory, adapters, idempotency,
        environment=settings.PAYMENT_ENVIRONMENT, now=now,
    )

    polling_store = PhonePePollingStore(session_factory)
    # The worker verifies through the same service that registers its jobs
    polling_worker = PhonePePollingWorker(
        polling_store,
        lambda: payments,
        poll_intervals=settings.POLL_INTERVALS_SECONDS,
        expire_after_seconds=settings.POLL_EXPIRE_AFTER_SECONDS,
        now=now,
        timer_factory=timer_factory,
    )
    payments.polling_worker = polling_worker

    webhooks = WebhookRouter(
        session_factory, adapters, retention_days=settings.WEBHOOK_RETENTION_DAYS, now=now,
    )

    return Services(
        adapters=adapters,
        idempotency=idempotency,
        payments=payments,
        webhooks=webhooks,
        polling_store=polling_store,
        polling_worker=polling_worker,
    )
