"""
Order Routes — Read-only payment summary for customer and admin order views.
"""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from payrecon.database import get_db
from payrecon.dependencies import get_tenant_id
from payrecon.errors import PaymentsCoreError
from payrecon.schemas.schemas import OrderPaymentSummary
from payrecon.services.order_summary import get_order_payment_summary

router = APIRouter(prefix="/api/orders", tags=["Orders"])


@router.get("/{order_id}/payment-summary", response_model=OrderPaymentSummary)
def payment_summary(
    order_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    try:
        return get_order_payment_summary(db, order_id, tenant_id)
    except PaymentsCoreError as exc:
        raise HTTPException(status_code=exc.http_status, detail=exc.to_detail())
