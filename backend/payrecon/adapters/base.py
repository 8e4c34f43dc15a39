"""
Abstract payment provider adapter.

Every gateway (PhonePe, Razorpay, Cashfree, ...) implements this interface and
returns the normalized types below, so the reconciliation core never touches a
provider's wire format.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import ClassVar, Dict, Optional, Union


class PaymentStatus(str, Enum):
    CREATED = "created"
    PROCESSING = "processing"
    CAPTURED = "captured"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class RefundStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class CreatePaymentParams:
    """Request to open a payment with the provider."""

    payment_id: str                  # Internal payment id, generated by the service
    order_id: str
    amount_minor: int
    currency: str = "INR"
    tenant_id: str = "default"
    customer_id: Optional[str] = None
    customer_phone: Optional[str] = None
    payer_vpa: Optional[str] = None
    instrument: Optional[str] = None  # UPI_COLLECT | UPI_INTENT | UPI_QR | PAY_PAGE
    target_app: Optional[str] = None
    redirect_url: Optional[str] = None
    callback_url: Optional[str] = None
    metadata: Dict = field(default_factory=dict)


@dataclass
class VerifyPaymentParams:
    payment_id: str
    provider_payment_id: Optional[str] = None
    provider_data: Dict = field(default_factory=dict)
    source: str = "api"              # api | poller


@dataclass
class CapturePaymentParams:
    payment_id: str
    provider_payment_id: str
    amount_minor: Optional[int] = None


@dataclass
class CreateRefundParams:
    refund_id: str
    payment_id: str
    provider_payment_id: str
    amount_minor: int
    merchant_refund_id: str
    reason: Optional[str] = None


@dataclass
class RefundStatusParams:
    refund_id: str
    payment_id: str
    merchant_refund_id: Optional[str] = None
    provider_refund_id: Optional[str] = None


@dataclass
class PaymentResult:
    """Normalized view of a payment as the provider reports it."""

    payment_id: str
    status: PaymentStatus
    provider: str
    amount_minor: Optional[int] = None
    currency: str = "INR"
    provider_payment_id: Optional[str] = None
    provider_order_id: Optional[str] = None
    provider_transaction_id: Optional[str] = None
    method_kind: Optional[str] = None
    payer_handle: Optional[str] = None
    utr: Optional[str] = None
    instrument_type: Optional[str] = None
    response_code: Optional[str] = None
    redirect_url: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    provider_data: Dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        data["created_at"] = self.created_at.isoformat()
        data["updated_at"] = self.updated_at.isoformat()
        return data


@dataclass
class RefundResult:
    refund_id: str
    payment_id: str
    status: RefundStatus
    provider: str
    amount_minor: int
    provider_refund_id: Optional[str] = None
    merchant_refund_id: Optional[str] = None
    reason: Optional[str] = None
    utr: Optional[str] = None
    provider_data: Dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        data["created_at"] = self.created_at.isoformat()
        return data


# ─── Webhook events (tagged union) ───────────────────────────────────

@dataclass
class _PaymentWebhookEvent:
    payment_id: str
    amount_minor: Optional[int] = None
    utr: Optional[str] = None
    payer_handle: Optional[str] = None
    merchant_transaction_id: Optional[str] = None
    provider_transaction_id: Optional[str] = None
    instrument_type: Optional[str] = None
    response_code: Optional[str] = None
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None
    event_id: Optional[str] = None
    data: Dict = field(default_factory=dict)

    type: ClassVar[str] = ""
    status: ClassVar[PaymentStatus] = PaymentStatus.PROCESSING


@dataclass
class PaymentCapturedEvent(_PaymentWebhookEvent):
    type: ClassVar[str] = "payment.captured"
    status: ClassVar[PaymentStatus] = PaymentStatus.CAPTURED


@dataclass
class PaymentCancelledEvent(_PaymentWebhookEvent):
    type: ClassVar[str] = "payment.cancelled"
    status: ClassVar[PaymentStatus] = PaymentStatus.CANCELLED


@dataclass
class PaymentExpiredEvent(_PaymentWebhookEvent):
    # Expiry settles the payment exactly like a cancellation
    type: ClassVar[str] = "payment.expired"
    status: ClassVar[PaymentStatus] = PaymentStatus.CANCELLED


@dataclass
class PaymentFailedEvent(_PaymentWebhookEvent):
    type: ClassVar[str] = "payment.failed"
    status: ClassVar[PaymentStatus] = PaymentStatus.FAILED


@dataclass
class PaymentPendingEvent(_PaymentWebhookEvent):
    type: ClassVar[str] = "payment.pending"
    status: ClassVar[PaymentStatus] = PaymentStatus.PROCESSING


@dataclass
class RefundStatusEvent:
    """A refund settling on the provider side. ``refund_id`` is the merchant refund id we sent."""

    refund_id: str
    status: RefundStatus
    amount_minor: Optional[int] = None
    original_transaction_id: Optional[str] = None
    provider_refund_id: Optional[str] = None
    utr: Optional[str] = None
    response_code: Optional[str] = None
    event_id: Optional[str] = None
    data: Dict = field(default_factory=dict)

    type: ClassVar[str] = "refund.updated"


WebhookEvent = Union[
    PaymentCapturedEvent,
    PaymentCancelledEvent,
    PaymentExpiredEvent,
    PaymentFailedEvent,
    PaymentPendingEvent,
    RefundStatusEvent,
]


@dataclass
class WebhookRequest:
    """Raw inbound webhook as received over HTTP."""

    provider: str
    headers: Dict[str, str]          # Lower-cased header names
    body: bytes
    tenant_id: str = "default"


@dataclass
class WebhookVerifyResult:
    verified: bool
    event: Optional[WebhookEvent] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None


class PaymentAdapter(ABC):
    """Abstract base class for payment providers."""

    provider: str = ""
    # Providers whose UPI flows can settle without any callback need the poller
    requires_polling: bool = False

    @abstractmethod
    def create_payment(self, params: CreatePaymentParams) -> PaymentResult:
        """
        Open a payment with the provider.

        Raises:
            Exception: Any transport or provider error; the caller wraps it.
        """
        ...

    @abstractmethod
    def verify_payment(self, params: VerifyPaymentParams) -> PaymentResult:
        """Fetch the provider's current view of a payment."""
        ...

    @abstractmethod
    def capture_payment(self, params: CapturePaymentParams) -> PaymentResult:
        ...

    @abstractmethod
    def create_refund(self, params: CreateRefundParams) -> RefundResult:
        ...

    @abstractmethod
    def get_refund_status(self, params: RefundStatusParams) -> RefundResult:
        """Fetch the provider's current view of a refund."""
        ...

    @abstractmethod
    def verify_webhook(self, request: WebhookRequest) -> WebhookVerifyResult:
        """Authenticate a webhook and normalize it into a ``WebhookEvent``."""
        ...
