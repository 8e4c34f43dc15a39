"""
Pydantic Schemas — Request & Response models for API validation.
"""
from datetime import datetime
from typing import Optional, Dict, List
from pydantic import BaseModel, Field


# ──────────────── Payments ────────────────

class PaymentCreateRequest(BaseModel):
    order_id: str
    amount_minor: Optional[int] = Field(None, gt=0, description="Amount in paise; defaults to the order amount")
    currency: str = "INR"
    provider: Optional[str] = Field(None, description="Gateway name; defaults to DEFAULT_PROVIDER")
    customer_id: Optional[str] = None
    customer_phone: Optional[str] = None
    payer_vpa: Optional[str] = None   # For UPI collect
    instrument: Optional[str] = Field(None, description="UPI_COLLECT | UPI_INTENT | UPI_QR | PAY_PAGE")
    target_app: Optional[str] = None
    redirect_url: Optional[str] = None
    idempotency_key: Optional[str] = None


class PaymentResponse(BaseModel):
    payment_id: str
    order_id: str
    status: str
    provider: str
    amount_minor: Optional[int] = None
    amount_captured_minor: Optional[int] = None
    amount_refunded_minor: Optional[int] = None
    currency: str = "INR"
    provider_payment_id: Optional[str] = None
    redirect_url: Optional[str] = None       # Pay page / intent URL
    instrument_type: Optional[str] = None
    upi_payer_handle: Optional[str] = None   # Masked VPA
    upi_utr: Optional[str] = None            # Masked UTR
    failure_code: Optional[str] = None
    applied: Optional[bool] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class VerifyPaymentRequest(BaseModel):
    provider_payment_id: Optional[str] = None
    provider_data: Dict = {}


class CancelPaymentRequest(BaseModel):
    order_id: Optional[str] = None
    reason: Optional[str] = None


class CapturePaymentRequest(BaseModel):
    amount_minor: Optional[int] = Field(None, gt=0)


# ──────────────── Refunds ────────────────

class RefundCreateRequest(BaseModel):
    amount_minor: Optional[int] = Field(None, gt=0, description="Defaults to the remaining captured amount")
    reason: Optional[str] = None
    merchant_refund_id: Optional[str] = None
    idempotency_key: Optional[str] = None


class RefundResponse(BaseModel):
    refund_id: str
    payment_id: str
    order_id: str
    status: str   # pending | completed | failed
    provider: str
    amount_minor: int
    provider_refund_id: Optional[str] = None
    merchant_refund_id: Optional[str] = None
    reason: Optional[str] = None
    upi_utr: Optional[str] = None
    applied: Optional[bool] = None
    created_at: Optional[str] = None


# ──────────────── Order Summary ────────────────

class OrderSummaryInfo(BaseModel):
    id: str
    status: str
    payment_status: str
    payment_method: str
    total: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class TransactionSummary(BaseModel):
    id: str
    status: str
    amount: str
    merchant_transaction_id: str
    provider: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class OrderPaymentSummary(BaseModel):
    order: OrderSummaryInfo
    transactions: List[TransactionSummary] = []
    latest_transaction: Optional[TransactionSummary] = None
    total_paid: float = 0.0
    total_refunded: float = 0.0


# ──────────────── Admin / Audit ────────────────

class PaymentEventEntry(BaseModel):
    id: str
    payment_id: Optional[str] = None
    order_id: Optional[str] = None
    provider: Optional[str] = None
    type: str
    source: str
    data: Optional[Dict] = None
    payload_hash: Optional[str] = None
    occurred_at: datetime

    class Config:
        from_attributes = True


class IntegrityReport(BaseModel):
    valid: bool
    total_entries: int
    broken_at: Optional[str] = None
    message: Optional[str] = None


class PollingJobEntry(BaseModel):
    id: str
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

    class Config:
        from_attributes = True


class IdempotencyStatsResponse(BaseModel):
    total_keys: int
    keys_by_scope: Dict[str, int]
    oldest_key: Optional[str] = None
    newest_key: Optional[str] = None


class WebhookStatsResponse(BaseModel):
    total: int
    processed: int
    by_provider: Dict[str, int]
    oldest_received_at: Optional[str] = None
    newest_received_at: Optional[str] = None


class CleanupRequest(BaseModel):
    older_than_days: Optional[int] = Field(None, ge=0, description="Defaults to the configured retention window")


class CleanupResponse(BaseModel):
    deleted: int
    older_than_days: int


# ──────────────── Generic ────────────────

class HealthResponse(BaseModel):
    status: str
    service: str
    version: str
    docs: str
    uptime_seconds: float
    providers: List[str] = []
    polling: bool = False
