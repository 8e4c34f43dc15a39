"""
Admin Routes — Payment audit trail, anomaly review and maintenance jobs.
"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from payrecon.database import get_db
from payrecon.dependencies import (
    get_idempotency_service, get_polling_store, get_tenant_id, get_webhook_router,
)
from payrecon.schemas.schemas import (
    PaymentEventEntry, IntegrityReport, PollingJobEntry,
    IdempotencyStatsResponse, WebhookStatsResponse,
    CleanupRequest, CleanupResponse,
)
from payrecon.services.audit_service import AuditService

router = APIRouter(prefix="/api/admin", tags=["Admin"])


@router.get("/payments/{payment_id}/events", response_model=list[PaymentEventEntry])
def get_payment_events(
    payment_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    """Get the full event trail for a payment."""
    events = AuditService.get_trail(db, payment_id, tenant_id)
    if not events:
        raise HTTPException(status_code=404, detail="No events found for this payment")
    return events


@router.get("/payments/{payment_id}/events/verify", response_model=IntegrityReport)
def verify_payment_events(
    payment_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    """Recompute event hashes to detect tampering."""
    return AuditService.verify_integrity(db, payment_id, tenant_id)


@router.get("/anomalies/amount-mismatch", response_model=list[PaymentEventEntry])
def list_amount_mismatches(
    limit: int = Query(100, ge=1, le=1000),
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    """Webhook and verify amount mismatches, newest first."""
    events = AuditService.list_by_type(db, "webhook.amount_mismatch", tenant_id, limit)
    events += AuditService.list_by_type(db, "payment.amount_mismatch", tenant_id, limit)
    events.sort(key=lambda e: e.occurred_at, reverse=True)
    return events[:limit]


@router.get("/idempotency/stats", response_model=IdempotencyStatsResponse)
def idempotency_stats(idempotency=Depends(get_idempotency_service)):
    return idempotency.get_stats()


@router.post("/idempotency/cleanup", response_model=CleanupResponse)
def idempotency_cleanup(
    payload: Optional[CleanupRequest] = None,
    idempotency=Depends(get_idempotency_service),
):
    days = payload.older_than_days if payload and payload.older_than_days is not None else idempotency.retention_days
    return CleanupResponse(deleted=idempotency.cleanup_expired(days), older_than_days=days)


@router.get("/polling/jobs", response_model=list[PollingJobEntry])
def list_polling_jobs(
    status: Optional[str] = Query(None, description="pending | completed | failed | expired"),
    limit: int = Query(100, ge=1, le=1000),
    tenant_id: str = Depends(get_tenant_id),
    store=Depends(get_polling_store),
):
    return store.list_jobs(status=status, tenant_id=tenant_id, limit=limit)


@router.get("/webhooks/stats", response_model=WebhookStatsResponse)
def webhook_stats(
    tenant_id: str = Depends(get_tenant_id),
    webhook_router=Depends(get_webhook_router),
):
    return webhook_router.get_stats(tenant_id)


@router.post("/webhooks/cleanup", response_model=CleanupResponse)
def webhook_cleanup(
    payload: Optional[CleanupRequest] = None,
    webhook_router=Depends(get_webhook_router),
):
    days = payload.older_than_days if payload and payload.older_than_days is not None else webhook_router.retention_days
    return CleanupResponse(deleted=webhook_router.cleanup_old_webhooks(days), older_than_days=days)
