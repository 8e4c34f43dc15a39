"""
FastAPI Dependencies — Service getters backed by ``app.state`` and tenant resolution.
"""
from typing import Optional

from fastapi import Header, Request

from payrecon.config import get_settings
from payrecon.container import Services


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_payments_service(request: Request):
    return get_services(request).payments


def get_webhook_router(request: Request):
    return get_services(request).webhooks


def get_idempotency_service(request: Request):
    return get_services(request).idempotency


def get_polling_store(request: Request):
    return get_services(request).polling_store


def get_tenant_id(x_tenant_id: Optional[str] = Header(None)) -> str:
    """Tenant from the X-Tenant-Id header, falling back to DEFAULT_TENANT_ID."""
    return (x_tenant_id or "").strip() or get_settings().DEFAULT_TENANT_ID
