"""
Webhook Router — Dedupes, authenticates and applies provider webhooks.

Replays are answered from the inbox before the adapter sees them. The inbox
row, the audit event and the state transition commit together, so a delivery
that fails halfway is redelivered by the provider and processed again.
Replays and rejected deliveries are recorded as audit events in their own
transaction.
"""
import base64
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from sqlalchemy import and_, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from payrecon.adapters.base import (
    PaymentCancelledEvent,
    PaymentCapturedEvent,
    PaymentExpiredEvent,
    PaymentFailedEvent,
    PaymentStatus,
    RefundStatus,
    RefundStatusEvent,
    WebhookRequest,
)
from payrecon.adapters.factory import AdapterFactory
from payrecon.models.payment import Payment, Refund
from payrecon.models.webhook_inbox import WebhookInbox
from payrecon.services.audit_service import AuditService
from payrecon.services.state_machine import apply_completed_refunds, apply_payment_status, settle_refund
from payrecon.utils.hashing import sha256_hex
from payrecon.utils.upi import mask_upi_identifier, normalize_upi_instrument_variant

logger = logging.getLogger(__name__)


@dataclass
class WebhookResponse:
    status_code: int
    body: Dict = field(default_factory=dict)


def status_for_event(event) -> PaymentStatus:
    if isinstance(event, PaymentCapturedEvent):
        return PaymentStatus.CAPTURED
    if isinstance(event, (PaymentCancelledEvent, PaymentExpiredEvent)):
        return PaymentStatus.CANCELLED
    if isinstance(event, PaymentFailedEvent):
        return PaymentStatus.FAILED
    return PaymentStatus.PROCESSING


def _decode_body(body: bytes) -> dict:
    try:
        payload = json.loads(body.decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        return {}
    if not isinstance(payload, dict):
        return {}

    # PhonePe wraps the callback in {"response": <base64 JSON>}
    encoded = payload.get("response")
    if isinstance(encoded, str):
        try:
            decoded = json.loads(base64.b64decode(encoded))
            if isinstance(decoded, dict):
                return decoded
        except ValueError:
            pass
    return payload


def compute_dedupe_key(tenant_id: str, provider: str, body: bytes) -> str:
    """Explicit event id when the payload carries one, otherwise the payment identifiers plus a body hash."""
    payload = _decode_body(body)
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    envelope = payload.get("payload") if isinstance(payload.get("payload"), dict) else {}

    event_id = (
        payload.get("eventId") or payload.get("event_id")
        or data.get("eventId") or envelope.get("eventId")
    )
    if event_id:
        return sha256_hex(f"{tenant_id}|{provider}|event:{event_id}")

    source = {**payload, **envelope, **data}
    instrument = source.get("paymentInstrument") if isinstance(source.get("paymentInstrument"), dict) else {}
    parts = [
        tenant_id,
        provider,
        str(source.get("merchantOrderId") or source.get("orderId") or ""),
        str(source.get("merchantTransactionId") or source.get("transactionId") or ""),
        str(instrument.get("utr") or source.get("utr") or ""),
        str(source.get("providerReferenceId") or source.get("referenceId") or ""),
        sha256_hex(body),
    ]
    return sha256_hex("|".join(parts))


def _event_reference(event) -> Optional[str]:
    if isinstance(event, RefundStatusEvent):
        return event.original_transaction_id
    return event.payment_id


def _inbox_payload(event, body: bytes) -> dict:
    payload = {
        "type": event.type,
        "amount_minor": event.amount_minor,
        "response_code": event.response_code,
        "body_sha256": sha256_hex(body),
    }
    if isinstance(event, RefundStatusEvent):
        payload["merchant_refund_id"] = event.refund_id
        payload["status"] = event.status.value
    else:
        payload["merchant_transaction_id"] = event.merchant_transaction_id
    return payload


class WebhookRouter:
    def __init__(
        self,
        session_factory,
        adapter_factory: AdapterFactory,
        retention_days: int = 30,
        now: Callable[[], datetime] = datetime.utcnow,
    ):
        self._session_factory = session_factory
        self.adapters = adapter_factory
        self.retention_days = retention_days
        self._now = now

    def process_webhook(self, provider: str, request: WebhookRequest) -> WebhookResponse:
        name = (provider or "").lower()
        if not self.adapters.is_enabled(name):
            logger.warning("webhook for unavailable provider %s", name)
            return WebhookResponse(404, {"error": "provider_not_available", "provider": name})

        adapter = self.adapters.get_adapter(name)
        tenant_id = request.tenant_id
        dedupe_key = compute_dedupe_key(tenant_id, name, request.body)

        with self._session_factory() as db:
            replayed = self._inbox_exists(db, tenant_id, name, dedupe_key)
        if replayed:
            logger.info("duplicate %s webhook %s ignored", name, dedupe_key[:12])
            self._log_rejection(tenant_id, name, "webhook.replayed", dedupe_key)
            return WebhookResponse(200, {"status": "already_processed"})

        verification = adapter.verify_webhook(request)
        if not verification.verified or verification.event is None:
            logger.warning("%s webhook rejected: %s", name, verification.error_code)
            if verification.error_code == "INVALID_AUTHORIZATION":
                self._log_rejection(tenant_id, name, "webhook.auth_failed", dedupe_key, verification.error_code)
                return WebhookResponse(403, {"error": "authorization_invalid", "code": verification.error_code})
            self._log_rejection(tenant_id, name, "webhook.signature_failed", dedupe_key, verification.error_code)
            return WebhookResponse(401, {"error": "signature_invalid", "code": verification.error_code})

        event = verification.event
        now = self._now()

        try:
            with self._session_factory.begin() as db:
                inbox = WebhookInbox(
                    tenant_id=tenant_id,
                    provider=name,
                    dedupe_key=dedupe_key,
                    event_type=event.type,
                    payment_id=_event_reference(event),
                    signature_verified=True,
                    payload=_inbox_payload(event, request.body),
                    received_at=now,
                )
                db.add(inbox)
                db.flush()

                if isinstance(event, RefundStatusEvent):
                    outcome = self._apply_refund_event(db, name, tenant_id, event, now)
                else:
                    outcome = self._apply_event(db, name, tenant_id, event, now)
                inbox.processed_at = now
        except IntegrityError:
            logger.info("%s webhook %s processed by a concurrent delivery", name, dedupe_key[:12])
            self._log_rejection(tenant_id, name, "webhook.replayed", dedupe_key)
            return WebhookResponse(200, {"status": "already_processed"})
        except Exception:
            logger.exception("%s webhook processing failed", name)
            return WebhookResponse(500, {"error": "processing_failed"})

        return WebhookResponse(200, {"status": "processed", "event_id": dedupe_key, **outcome})

    def _apply_event(self, db: Session, provider: str, tenant_id: str, event, now: datetime) -> dict:
        reference = event.merchant_transaction_id or event.payment_id
        payment = (
            db.query(Payment)
            .filter(
                Payment.tenant_id == tenant_id,
                or_(
                    Payment.id == reference,
                    and_(Payment.provider == provider, Payment.provider_payment_id == reference),
                ),
            )
            .first()
        )
        if payment is None:
            logger.warning("%s webhook %s references unknown payment %s", provider, event.type, reference)
            return {"payment_updated": False, "payment_id": None}

        next_status = status_for_event(event)

        if (
            next_status == PaymentStatus.CAPTURED
            and event.amount_minor is not None
            and payment.amount_authorized_minor is not None
            and event.amount_minor != payment.amount_authorized_minor
        ):
            AuditService.log(
                db, tenant_id, "webhook.amount_mismatch",
                payment_id=payment.id, order_id=payment.order_id, provider=provider, source="webhook",
                data={
                    "payment_id": payment.id,
                    "order_id": payment.order_id,
                    "expected_amount_minor": payment.amount_authorized_minor,
                    "received_amount_minor": event.amount_minor,
                    "utr": mask_upi_identifier(provider, event.utr, "utr"),
                },
                occurred_at=now,
            )
            logger.warning(
                "webhook amount mismatch for payment %s: expected %s, received %s",
                payment.id, payment.amount_authorized_minor, event.amount_minor,
            )
            return {"payment_updated": False, "payment_id": payment.id, "amount_mismatch": True}

        AuditService.log(
            db, tenant_id, event.type,
            payment_id=payment.id, order_id=payment.order_id, provider=provider, source="webhook",
            data={
                "status": next_status.value,
                "amount_minor": event.amount_minor,
                "response_code": event.response_code,
                "provider_transaction_id": event.provider_transaction_id,
                "utr": mask_upi_identifier(provider, event.utr, "utr"),
                "failure_code": event.failure_code,
            },
            occurred_at=now,
        )

        values = {
            "provider_transaction_id": event.provider_transaction_id,
            "upi_payer_handle": mask_upi_identifier(provider, event.payer_handle, "vpa"),
            "upi_utr": mask_upi_identifier(provider, event.utr, "utr"),
            "upi_instrument_variant": normalize_upi_instrument_variant(event.instrument_type),
        }
        if next_status == PaymentStatus.CAPTURED:
            values["amount_captured_minor"] = (
                event.amount_minor if event.amount_minor is not None else payment.amount_authorized_minor
            )
        elif next_status in (PaymentStatus.FAILED, PaymentStatus.CANCELLED):
            values["failure_code"] = event.failure_code or event.response_code
            values["failure_message"] = event.failure_message
        values = {k: v for k, v in values.items() if v is not None}

        applied = apply_payment_status(db, payment, next_status, values, now)
        return {"payment_updated": applied, "payment_id": payment.id}

    def _apply_refund_event(self, db: Session, provider: str, tenant_id: str, event: RefundStatusEvent,
                            now: datetime) -> dict:
        refund = (
            db.query(Refund)
            .filter(
                Refund.tenant_id == tenant_id,
                Refund.provider == provider,
                or_(Refund.merchant_refund_id == event.refund_id, Refund.id == event.refund_id),
            )
            .first()
        )
        if refund is None:
            logger.warning("%s refund webhook references unknown refund %s", provider, event.refund_id)
            return {"refund_updated": False, "refund_id": None}

        AuditService.log(
            db, tenant_id, event.type,
            payment_id=refund.payment_id, order_id=refund.order_id, provider=provider, source="webhook",
            data={
                "refund_id": refund.id,
                "status": event.status.value,
                "amount_minor": event.amount_minor,
                "response_code": event.response_code,
                "provider_refund_id": event.provider_refund_id,
                "utr": mask_upi_identifier(provider, event.utr, "utr"),
            },
            occurred_at=now,
        )

        applied = settle_refund(
            db, refund.id, tenant_id, event.status,
            {
                "provider_refund_id": event.provider_refund_id,
                "upi_utr": mask_upi_identifier(provider, event.utr, "utr"),
            },
            now,
        )
        if applied:
            AuditService.log(
                db, tenant_id, "refund.status_changed",
                payment_id=refund.payment_id, order_id=refund.order_id, provider=provider, source="webhook",
                data={
                    "refund_id": refund.id,
                    "previous_status": RefundStatus.PENDING.value,
                    "new_status": event.status.value,
                },
                occurred_at=now,
            )
            if event.status == RefundStatus.COMPLETED:
                apply_completed_refunds(db, refund.payment_id, tenant_id, now)
            logger.info("refund %s settled as %s by webhook", refund.id, event.status.value)

        return {"refund_updated": applied, "refund_id": refund.id, "payment_id": refund.payment_id}

    def _log_rejection(
        self, tenant_id: str, provider: str, event_type: str, dedupe_key: str,
        error_code: Optional[str] = None,
    ) -> None:
        """Record a webhook that was not applied. It has its own transaction since no inbox row is written."""
        with self._session_factory.begin() as db:
            AuditService.log(
                db, tenant_id, event_type, provider=provider, source="webhook",
                data={"dedupe_key": dedupe_key[:16], "error_code": error_code, "provider": provider},
                occurred_at=self._now(),
            )

    def get_stats(self, tenant_id: Optional[str] = None) -> dict:
        with self._session_factory() as db:
            query = db.query(WebhookInbox)
            if tenant_id:
                query = query.filter(WebhookInbox.tenant_id == tenant_id)

            total = query.count()
            processed = query.filter(WebhookInbox.processed_at.isnot(None)).count()

            grouped = db.query(WebhookInbox.provider, func.count(WebhookInbox.id))
            if tenant_id:
                grouped = grouped.filter(WebhookInbox.tenant_id == tenant_id)
            by_provider = {provider: count for provider, count in grouped.group_by(WebhookInbox.provider).all()}

            bounds = db.query(func.min(WebhookInbox.received_at), func.max(WebhookInbox.received_at))
            if tenant_id:
                bounds = bounds.filter(WebhookInbox.tenant_id == tenant_id)
            oldest, newest = bounds.one()

        return {
            "total": total,
            "processed": processed,
            "by_provider": by_provider,
            "oldest_received_at": oldest.isoformat() if oldest else None,
            "newest_received_at": newest.isoformat() if newest else None,
        }

    def cleanup_old_webhooks(self, older_than_days: Optional[int] = None) -> int:
        days = self.retention_days if older_than_days is None else older_than_days
        cutoff = self._now() - timedelta(days=days)

        with self._session_factory.begin() as db:
            deleted = (
                db.query(WebhookInbox)
                .filter(WebhookInbox.received_at < cutoff)
                .delete(synchronize_session=False)
            )

        logger.info("removed %d webhook inbox rows older than %d days", deleted, days)
        return deleted

    @staticmethod
    def _inbox_exists(db: Session, tenant_id: str, provider: str, dedupe_key: str) -> bool:
        return (
            db.query(WebhookInbox.id)
            .filter(
                WebhookInbox.tenant_id == tenant_id,
                WebhookInbox.provider == provider,
                WebhookInbox.dedupe_key == dedupe_key,
            )
            .first()
            is not None
        )
