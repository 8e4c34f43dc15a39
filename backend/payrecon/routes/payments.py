"""
Payment Routes — Create, verify, cancel and capture payments, and issue or re-check refunds.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException

from payrecon.adapters.base import VerifyPaymentParams
from payrecon.dependencies import get_payments_service, get_tenant_id
from payrecon.errors import PaymentsCoreError
from payrecon.schemas.schemas import (
    PaymentCreateRequest, PaymentResponse, VerifyPaymentRequest,
    CancelPaymentRequest, CapturePaymentRequest,
    RefundCreateRequest, RefundResponse,
)
from payrecon.services.payments_service import (
    CreatePaymentInput, CreateRefundInput, PaymentsService,
)

router = APIRouter(prefix="/api/payments", tags=["Payments"])


@router.post("", response_model=PaymentResponse, status_code=201)
def create_payment(
    payload: PaymentCreateRequest,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    tenant_id: str = Depends(get_tenant_id),
    service: PaymentsService = Depends(get_payments_service),
):
    """Open a payment for an order. Retries with the same Idempotency-Key replay the first response."""
    data = CreatePaymentInput(**payload.model_dump(exclude={"idempotency_key"}))
    data.idempotency_key = idempotency_key or payload.idempotency_key

    try:
        return service.create_payment(data, tenant_id)
    except PaymentsCoreError as exc:
        raise HTTPException(status_code=exc.http_status, detail=exc.to_detail())


@router.post("/{payment_id}/verify", response_model=PaymentResponse)
def verify_payment(
    payment_id: str,
    payload: Optional[VerifyPaymentRequest] = None,
    tenant_id: str = Depends(get_tenant_id),
    service: PaymentsService = Depends(get_payments_service),
):
    """Check the payment with the provider (client return / callback)."""
    payload = payload or VerifyPaymentRequest()
    try:
        return service.verify_payment(
            VerifyPaymentParams(
                payment_id=payment_id,
                provider_payment_id=payload.provider_payment_id,
                provider_data=payload.provider_data,
                source="api",
            ),
            tenant_id,
        )
    except PaymentsCoreError as exc:
        raise HTTPException(status_code=exc.http_status, detail=exc.to_detail())


@router.post("/{payment_id}/cancel", response_model=PaymentResponse)
def cancel_payment(
    payment_id: str,
    payload: Optional[CancelPaymentRequest] = None,
    tenant_id: str = Depends(get_tenant_id),
    service: PaymentsService = Depends(get_payments_service),
):
    payload = payload or CancelPaymentRequest()
    try:
        return service.cancel_payment(payment_id, tenant_id, order_id=payload.order_id, reason=payload.reason)
    except PaymentsCoreError as exc:
        raise HTTPException(status_code=exc.http_status, detail=exc.to_detail())


@router.post("/{payment_id}/capture", response_model=PaymentResponse)
def capture_payment(
    payment_id: str,
    payload: Optional[CapturePaymentRequest] = None,
    tenant_id: str = Depends(get_tenant_id),
    service: PaymentsService = Depends(get_payments_service),
):
    payload = payload or CapturePaymentRequest()
    try:
        return service.capture_payment(payment_id, tenant_id, amount_minor=payload.amount_minor)
    except PaymentsCoreError as exc:
        raise HTTPException(status_code=exc.http_status, detail=exc.to_detail())


@router.post("/{payment_id}/refunds", response_model=RefundResponse, status_code=201)
def create_refund(
    payment_id: str,
    payload: RefundCreateRequest,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    tenant_id: str = Depends(get_tenant_id),
    service: PaymentsService = Depends(get_payments_service),
):
    """Refund all or part of a captured payment."""
    data = CreateRefundInput(
        payment_id=payment_id,
        amount_minor=payload.amount_minor,
        reason=payload.reason,
        merchant_refund_id=payload.merchant_refund_id,
        idempotency_key=idempotency_key or payload.idempotency_key,
    )
    try:
        return service.create_refund(data, tenant_id)
    except PaymentsCoreError as exc:
        raise HTTPException(status_code=exc.http_status, detail=exc.to_detail())


@router.get("/refunds/{refund_id}", response_model=RefundResponse)
def get_refund_status(
    refund_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: PaymentsService = Depends(get_payments_service),
):
    """Re-check a pending refund with the provider. Settled refunds are returned as stored."""
    try:
        return service.get_refund_status(refund_id, tenant_id)
    except PaymentsCoreError as exc:
        raise HTTPException(status_code=exc.http_status, detail=exc.to_detail())
