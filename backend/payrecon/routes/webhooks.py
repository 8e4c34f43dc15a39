"""
Webhook Routes — Provider server-to-server callbacks.
"""
from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from payrecon.adapters.base import WebhookRequest
from payrecon.dependencies import get_tenant_id, get_webhook_router
from payrecon.services.webhook_router import WebhookRouter

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post("/{provider}")
async def receive_webhook(
    provider: str,
    request: Request,
    tenant_id: str = Depends(get_tenant_id),
    webhook_router: WebhookRouter = Depends(get_webhook_router),
):
    """Signature checks need the exact raw body, so it is read before any parsing."""
    body = await request.body()
    inbound = WebhookRequest(
        provider=provider,
        headers={k.lower(): v for k, v in request.headers.items()},
        body=body,
        tenant_id=tenant_id,
    )

    result = await run_in_threadpool(webhook_router.process_webhook, provider, inbound)
    return JSONResponse(status_code=result.status_code, content=result.body)
