from payrecon.adapters.base import (
    PaymentAdapter,
    PaymentStatus,
    RefundStatus,
    PaymentResult,
    RefundResult,
    CreatePaymentParams,
    VerifyPaymentParams,
    CapturePaymentParams,
    CreateRefundParams,
    RefundStatusParams,
    WebhookRequest,
    WebhookVerifyResult,
    WebhookEvent,
    PaymentCapturedEvent,
    PaymentCancelledEvent,
    PaymentExpiredEvent,
    PaymentFailedEvent,
    PaymentPendingEvent,
    RefundStatusEvent,
)
from payrecon.adapters.factory import AdapterFactory, SUPPORTED_PROVIDERS

__all__ = [
    "PaymentAdapter", "PaymentStatus", "RefundStatus", "PaymentResult", "RefundResult",
    "CreatePaymentParams", "VerifyPaymentParams", "CapturePaymentParams", "CreateRefundParams", "RefundStatusParams",
    "WebhookRequest", "WebhookVerifyResult", "WebhookEvent",
    "PaymentCapturedEvent", "PaymentCancelledEvent", "PaymentExpiredEvent",
    "PaymentFailedEvent", "PaymentPendingEvent", "RefundStatusEvent",
    "AdapterFactory", "SUPPORTED_PROVIDERS",
]
