from payrecon.services.audit_service import AuditService
from payrecon.services.idempotency_service import IdempotencyService
from payrecon.services.payments_service import PaymentsService
from payrecon.services.webhook_router import WebhookRouter
from payrecon.services.polling_worker import PhonePePollingWorker
from payrecon.services.polling_store import PhonePePollingStore

__all__ = [
    "AuditService", "IdempotencyService", "PaymentsService",
    "WebhookRouter", "PhonePePollingWorker", "PhonePePollingStore",
]
