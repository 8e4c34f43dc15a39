from payrecon.models.order import Order
from payrecon.models.payment import Payment, Refund
from payrecon.models.payment_event import PaymentEvent
from payrecon.models.idempotency import IdempotencyKey
from payrecon.models.polling_job import PhonePePollingJob
from payrecon.models.webhook_inbox import WebhookInbox

__all__ = [
    "Order", "Payment", "Refund", "PaymentEvent",
    "IdempotencyKey", "PhonePePollingJob", "WebhookInbox",
]
