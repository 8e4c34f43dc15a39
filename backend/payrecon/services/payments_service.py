"""
Payments Service — Creates payments, reconciles their status and issues refunds.

Provider calls happen outside any transaction. Every write afterwards is one
``session_factory.begin()`` block built on the conditional updates in
``state_machine``, so verify, webhook and poller can race on the same payment.
"""
import logging
import uuid
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Callable, Optional

from payrecon.adapters.base import (
    CapturePaymentParams,
    CreatePaymentParams,
    CreateRefundParams,
    PaymentResult,
    PaymentStatus,
    RefundStatus,
    RefundStatusParams,
    VerifyPaymentParams,
)
from payrecon.adapters.factory import AdapterFactory
from payrecon.errors import PaymentError, PaymentsCoreError, RefundError
from payrecon.models.order import Order
from payrecon.models.payment import Payment, Refund
from payrecon.services.audit_service import AuditService
from payrecon.services.idempotency_service import IdempotencyService
from payrecon.services.polling_worker import RegisterJobParams
from payrecon.services.state_machine import (
    CAPTURED_STATUSES,
    SETTLED_STATUSES,
    apply_completed_refunds,
    apply_payment_status,
    coerce_status,
    refunded_total,
    settle_refund,
)
from payrecon.utils.upi import mask_upi_identifier, normalize_upi_instrument_variant

logger = logging.getLogger(__name__)

CREATE_SCOPE = "payments.create"
REFUND_SCOPE = "refunds.create"


@dataclass
class CreatePaymentInput:
    order_id: str
    amount_minor: Optional[int] = None
    currency: str = "INR"
    provider: Optional[str] = None
    customer_id: Optional[str] = None
    customer_phone: Optional[str] = None
    payer_vpa: Optional[str] = None
    instrument: Optional[str] = None
    target_app: Optional[str] = None
    redirect_url: Optional[str] = None
    idempotency_key: Optional[str] = None


@dataclass
class CreateRefundInput:
    payment_id: str
    amount_minor: Optional[int] = None
    reason: Optional[str] = None
    merchant_refund_id: Optional[str] = None
    idempotency_key: Optional[str] = None


def serialize_payment(payment: Payment, **extra) -> dict:
    data = {
        "payment_id": payment.id,
        "order_id": payment.order_id,
        "status": payment.status,
        "provider": payment.provider,
        "amount_minor": payment.amount_authorized_minor,
        "amount_captured_minor": payment.amount_captured_minor,
        "amount_refunded_minor": payment.amount_refunded_minor,
        "currency": payment.currency,
        "provider_payment_id": payment.provider_payment_id,
        "upi_payer_handle": payment.upi_payer_handle,
        "upi_utr": payment.upi_utr,
        "instrument_type": payment.upi_instrument_variant,
        "failure_code": payment.failure_code,
        "created_at": payment.created_at.isoformat() if payment.created_at else None,
        "updated_at": payment.updated_at.isoformat() if payment.updated_at else None,
    }
    data.update(extra)
    return data


def serialize_refund(refund: Refund, **extra) -> dict:
    data = {
        "refund_id": refund.id,
        "payment_id": refund.payment_id,
        "order_id": refund.order_id,
        "status": refund.status,
        "provider": refund.provider,
        "amount_minor": refund.amount_minor,
        "provider_refund_id": refund.provider_refund_id,
        "merchant_refund_id": refund.merchant_refund_id,
        "reason": refund.reason,
        "upi_utr": refund.upi_utr,
        "created_at": refund.created_at.isoformat() if refund.created_at else None,
    }
    data.update(extra)
    return data


def observed_values(provider: str, result: PaymentResult, authorized_minor: Optional[int] = None) -> dict:
    """Column updates carried by a provider observation. Unknown fields are left alone."""
    values = {
        "provider_transaction_id": result.provider_transaction_id,
        "upi_payer_handle": mask_upi_identifier(provider, result.payer_handle, "vpa"),
        "upi_utr": mask_upi_identifier(provider, result.utr, "utr"),
        "upi_instrument_variant": normalize_upi_instrument_variant(result.instrument_type),
    }
    if result.status == PaymentStatus.CAPTURED:
        values["amount_captured_minor"] = int(result.amount_minor) if result.amount_minor is not None else authorized_minor
    if result.status in (PaymentStatus.FAILED, PaymentStatus.CANCELLED):
        values["failure_code"] = result.error_code or result.response_code
        values["failure_message"] = result.error_message
    return {k: v for k, v in values.items() if v is not None}


class PaymentsService:
    def __init__(
        self,
        session_factory,
        adapter_factory: AdapterFactory,
        idempotency: IdempotencyService,
        environment: str = "test",
        polling_worker=None,
        now: Callable[[], datetime] = datetime.utcnow,
    ):
        self._session_factory = session_factory
        self.adapters = adapter_factory
        self.idempotency = idempotency
        self.environment = environment
        self.polling_worker = polling_worker
        self._now = now

    # ─── Create ─────────────────────────────────────────────────────

    def create_payment(self, data: CreatePaymentInput, tenant_id: str) -> dict:
        key = data.idempotency_key or self.idempotency.generate_key(CREATE_SCOPE)
        request = {k: v for k, v in asdict(data).items() if k != "idempotency_key"}
        request["tenant_id"] = tenant_id

        return self.idempotency.execute_with_idempotency(
            key, CREATE_SCOPE, lambda: self._create_payment(data, tenant_id), request=request,
        )

    def _create_payment(self, data: CreatePaymentInput, tenant_id: str) -> dict:
        adapter = self.adapters.get_adapter(data.provider)

        with self._session_factory() as db:
            order = db.query(Order).filter(Order.id == data.order_id, Order.tenant_id == tenant_id).first()
            if order is None:
                raise PaymentError(f"Order {data.order_id} not found", "ORDER_NOT_FOUND")

            captured = (
                db.query(Payment)
                .filter(
                    Payment.order_id == order.id,
                    Payment.tenant_id == tenant_id,
                    Payment.method_kind == "upi",
                    Payment.status.in_([s.value for s in CAPTURED_STATUSES]),
                )
                .first()
            )
            if captured is not None:
                raise PaymentError(
                    f"Order {order.id} already has a captured UPI payment",
                    "UPI_PAYMENT_ALREADY_CAPTURED",
                    provider=captured.provider,
                )

            amount_minor = data.amount_minor if data.amount_minor is not None else order.amount_minor
            currency = order.currency or data.currency

        if not amount_minor or amount_minor <= 0:
            raise PaymentError("Payment amount must be positive", "INVALID_PAYMENT_AMOUNT")

        payment_id = str(uuid.uuid4())
        try:
            result = adapter.create_payment(CreatePaymentParams(
                payment_id=payment_id,
                order_id=data.order_id,
                amount_minor=amount_minor,
                currency=currency,
                tenant_id=tenant_id,
                customer_id=data.customer_id,
                customer_phone=data.customer_phone,
                payer_vpa=data.payer_vpa,
                instrument=data.instrument,
                target_app=data.target_app,
                redirect_url=data.redirect_url,
            ))
        except Exception as exc:
            logger.error("%s create_payment failed for order %s: %s", adapter.provider, data.order_id, exc)
            raise PaymentError(
                f"Payment creation failed: {exc}", "PAYMENT_CREATION_FAILED",
                provider=adapter.provider, cause=exc,
            ) from exc

        now = self._now()
        provider = adapter.provider
        variant = normalize_upi_instrument_variant(result.instrument_type or data.instrument)

        with self._session_factory.begin() as db:
            payment = Payment(
                id=payment_id,
                tenant_id=tenant_id,
                order_id=data.order_id,
                provider=provider,
                environment=self.environment,
                provider_payment_id=result.provider_payment_id,
                provider_order_id=result.provider_order_id,
                provider_transaction_id=result.provider_transaction_id,
                amount_authorized_minor=amount_minor,
                currency=currency,
                status=PaymentStatus.CREATED.value,
                method_kind=result.method_kind or "upi",
                upi_payer_handle=mask_upi_identifier(provider, result.payer_handle, "vpa"),
                upi_utr=mask_upi_identifier(provider, result.utr, "utr"),
                upi_instrument_variant=variant,
                created_at=now,
                updated_at=now,
            )
            db.add(payment)
            db.flush()

            AuditService.log(
                db, tenant_id, "payment.created",
                payment_id=payment_id, order_id=data.order_id, provider=provider,
                data={
                    "amount_minor": amount_minor,
                    "currency": currency,
                    "provider_payment_id": result.provider_payment_id,
                    "instrument": variant,
                    "status": result.status.value,
                },
                occurred_at=now,
            )

            if result.status != PaymentStatus.CREATED:
                apply_payment_status(db, payment, result.status, observed_values(provider, result, amount_minor), now)
                db.refresh(payment)

            response = serialize_payment(payment, redirect_url=result.redirect_url)
            final_status = coerce_status(payment.status)

        logger.info("payment %s created for order %s via %s (%s)", payment_id, data.order_id, provider, final_status.value)

        if (
            adapter.requires_polling
            and self.polling_worker is not None
            and final_status not in SETTLED_STATUSES
            and result.provider_payment_id
        ):
            self.polling_worker.register_job(RegisterJobParams(
                tenant_id=tenant_id,
                order_id=data.order_id,
                payment_id=payment_id,
                merchant_transaction_id=result.provider_payment_id,
                created_at=now,
            ))

        return response

    # ─── Verify / Capture ───────────────────────────────────────────

    def verify_payment(self, params: VerifyPaymentParams, tenant_id: str) -> dict:
        with self._session_factory.begin() as db:
            payment = self._load_payment(db, params.payment_id, tenant_id)
            provider = payment.provider
            provider_payment_id = params.provider_payment_id or payment.provider_payment_id

            # Nothing to ask the provider about yet; the local state is the observation.
            if not provider_payment_id and not payment.provider_order_id and not params.provider_data:
                AuditService.log(
                    db, tenant_id, "payment.verified",
                    payment_id=payment.id, order_id=payment.order_id, provider=provider, source=params.source,
                    data={
                        "previous_status": payment.status,
                        "observed_status": payment.status,
                        "applied": False,
                    },
                    occurred_at=self._now(),
                )
                return serialize_payment(payment, applied=False)

        adapter = self.adapters.get_adapter(provider)
        try:
            result = adapter.verify_payment(VerifyPaymentParams(
                payment_id=params.payment_id,
                provider_payment_id=provider_payment_id,
                provider_data=params.provider_data,
                source=params.source,
            ))
        except Exception as exc:
            raise PaymentError(
                f"Payment verification failed: {exc}", "PAYMENT_VERIFICATION_FAILED",
                provider=provider, cause=exc,
            ) from exc

        return self._record_observation(params.payment_id, tenant_id, result, params.source, "payment.verified")

    def capture_payment(self, payment_id: str, tenant_id: str, amount_minor: Optional[int] = None) -> dict:
        with self._session_factory() as db:
            payment = self._load_payment(db, payment_id, tenant_id)
            current = coerce_status(payment.status)
            if current in CAPTURED_STATUSES:
                return serialize_payment(payment, applied=False)
            if current in SETTLED_STATUSES:
                raise PaymentError(f"Payment {payment_id} is {current.value}", "PAYMENT_ALREADY_FAILED", provider=payment.provider)
            if not payment.provider_payment_id:
                raise PaymentError(
                    f"Payment {payment_id} has no provider reference yet",
                    "MISSING_PROVIDER_PAYMENT_ID", provider=payment.provider,
                )
            provider = payment.provider
            provider_payment_id = payment.provider_payment_id

        adapter = self.adapters.get_adapter(provider)
        try:
            result = adapter.capture_payment(CapturePaymentParams(
                payment_id=payment_id,
                provider_payment_id=provider_payment_id,
                amount_minor=amount_minor,
            ))
        except Exception as exc:
            raise PaymentError(
                f"Payment capture failed: {exc}", "PAYMENT_CAPTURE_FAILED",
                provider=provider, cause=exc,
            ) from exc

        return self._record_observation(payment_id, tenant_id, result, "api", "payment.capture_requested")

    def _record_observation(
        self, payment_id: str, tenant_id: str, result: PaymentResult, source: str, event_type: str,
    ) -> dict:
        now = self._now()

        with self._session_factory.begin() as db:
            payment = self._load_payment(db, payment_id, tenant_id)
            previous = coerce_status(payment.status)
            observed = result.status
            mismatch = (
                observed == PaymentStatus.CAPTURED
                and result.amount_minor is not None
                and payment.amount_authorized_minor is not None
                and int(result.amount_minor) != payment.amount_authorized_minor
            )

            applied = False
            if mismatch:
                AuditService.log(
                    db, tenant_id, "payment.amount_mismatch",
                    payment_id=payment.id, order_id=payment.order_id, provider=payment.provider,
                    source=source,
                    data={
                        "payment_id": payment.id,
                        "order_id": payment.order_id,
                        "expected_amount_minor": payment.amount_authorized_minor,
                        "received_amount_minor": int(result.amount_minor),
                    },
                    occurred_at=now,
                )
                logger.warning(
                    "amount mismatch on %s for payment %s: expected %s, provider reported %s",
                    source, payment.id, payment.amount_authorized_minor, result.amount_minor,
                )
            else:
                values = observed_values(payment.provider, result, payment.amount_authorized_minor)
                applied = apply_payment_status(db, payment, observed, values, now)

            AuditService.log(
                db, tenant_id, event_type,
                payment_id=payment.id, order_id=payment.order_id, provider=payment.provider,
                source=source,
                data={
                    "previous_status": previous.value,
                    "observed_status": observed.value,
                    "applied": applied,
                    "response_code": result.response_code,
                    "utr": mask_upi_identifier(payment.provider, result.utr, "utr"),
                },
                occurred_at=now,
            )

            db.refresh(payment)
            return serialize_payment(
                payment,
                applied=applied,
                provider_status=observed.value,
                response_code=result.response_code,
            )

    # ─── Cancel ─────────────────────────────────────────────────────

    def cancel_payment(
        self, payment_id: str, tenant_id: str, order_id: Optional[str] = None, reason: Optional[str] = None,
    ) -> dict:
        """Record a checkout the customer abandoned."""
        now = self._now()

        with self._session_factory.begin() as db:
            payment = self._load_payment(db, payment_id, tenant_id)
            if order_id and payment.order_id != order_id:
                raise PaymentError(f"Payment {payment_id} does not belong to order {order_id}", "ORDER_MISMATCH")

            current = coerce_status(payment.status)
            if current == PaymentStatus.CANCELLED:
                return serialize_payment(payment, applied=False)
            if current in CAPTURED_STATUSES:
                raise PaymentError(
                    f"Payment {payment_id} is already {current.value}",
                    "PAYMENT_ALREADY_COMPLETED", provider=payment.provider,
                )
            if current == PaymentStatus.FAILED:
                raise PaymentError(f"Payment {payment_id} already failed", "PAYMENT_ALREADY_FAILED", provider=payment.provider)

            AuditService.log(
                db, tenant_id, "checkout.user_cancelled",
                payment_id=payment.id, order_id=payment.order_id, provider=payment.provider,
                data={"previous_status": current.value, "reason": reason},
                occurred_at=now,
            )
            applied = apply_payment_status(
                db, payment, PaymentStatus.CANCELLED,
                {"failure_code": "USER_CANCELLED", "failure_message": reason or "Checkout cancelled by customer"},
                now,
            )
            db.refresh(payment)
            return serialize_payment(payment, applied=applied)

    # ─── Refunds ────────────────────────────────────────────────────

    def create_refund(self, data: CreateRefundInput, tenant_id: str) -> dict:
        if data.idempotency_key:
            key = data.idempotency_key
        elif data.merchant_refund_id:
            key = f"{data.payment_id}:{data.merchant_refund_id}"
        else:
            key = self.idempotency.generate_key(REFUND_SCOPE)

        request = {k: v for k, v in asdict(data).items() if k != "idempotency_key"}
        request["tenant_id"] = tenant_id
        return self.idempotency.execute_with_idempotency(
            key, REFUND_SCOPE, lambda: self._create_refund(data, tenant_id), request=request,
        )

    def _create_refund(self, data: CreateRefundInput, tenant_id: str) -> dict:
        with self._session_factory() as db:
            payment = self._load_payment(db, data.payment_id, tenant_id)

            if data.merchant_refund_id:
                existing = (
                    db.query(Refund)
                    .filter(
                        Refund.tenant_id == tenant_id,
                        Refund.payment_id == payment.id,
                        Refund.merchant_refund_id == data.merchant_refund_id,
                    )
                    .first()
                )
                if existing is not None:
                    return serialize_refund(existing)

            current = coerce_status(payment.status)
            captured_minor = payment.amount_captured_minor or 0
            if current not in (PaymentStatus.CAPTURED, PaymentStatus.PARTIALLY_REFUNDED) or captured_minor <= 0:
                raise RefundError(
                    f"Payment {payment.id} has no captured amount to refund",
                    "NO_CAPTURED_AMOUNT", provider=payment.provider,
                )

            already_refunded = refunded_total(db, payment.id, ("pending", "completed"))
            amount_minor = data.amount_minor if data.amount_minor is not None else captured_minor - already_refunded
            provider = payment.provider
            order_id = payment.order_id
            provider_payment_id = payment.provider_payment_id

        if amount_minor <= 0:
            raise RefundError("Refund amount must be positive", "INVALID_REFUND_AMOUNT", provider=provider)

        if already_refunded + amount_minor > captured_minor:
            with self._session_factory.begin() as db:
                AuditService.log(
                    db, tenant_id, "refund.attempt_failed",
                    payment_id=data.payment_id, order_id=order_id, provider=provider,
                    data={
                        "requested_amount_minor": amount_minor,
                        "captured_amount_minor": captured_minor,
                        "already_refunded_minor": already_refunded,
                        "reason": "REFUND_EXCEEDS_CAPTURED_AMOUNT",
                    },
                )
            raise RefundError(
                f"Refund of {amount_minor} exceeds refundable amount {captured_minor - already_refunded}",
                "REFUND_EXCEEDS_CAPTURED_AMOUNT", provider=provider,
            )

        refund_id = str(uuid.uuid4())
        merchant_refund_id = data.merchant_refund_id or "R" + uuid.uuid4().hex[:34]
        adapter = self.adapters.get_adapter(provider)
        try:
            result = adapter.create_refund(CreateRefundParams(
                refund_id=refund_id,
                payment_id=data.payment_id,
                provider_payment_id=provider_payment_id,
                amount_minor=amount_minor,
                merchant_refund_id=merchant_refund_id,
                reason=data.reason,
            ))
        except PaymentsCoreError:
            raise
        except Exception as exc:
            raise RefundError(
                f"Refund creation failed: {exc}", "REFUND_CREATION_FAILED",
                provider=provider, cause=exc,
            ) from exc

        now = self._now()
        with self._session_factory.begin() as db:
            refund = Refund(
                id=refund_id,
                tenant_id=tenant_id,
                payment_id=data.payment_id,
                order_id=order_id,
                provider=provider,
                provider_refund_id=result.provider_refund_id,
                merchant_refund_id=merchant_refund_id,
                amount_minor=amount_minor,
                status=result.status.value,
                reason=data.reason,
                upi_utr=mask_upi_identifier(provider, result.utr, "utr"),
                created_at=now,
                updated_at=now,
            )
            db.add(refund)
            db.flush()

            AuditService.log(
                db, tenant_id, "refund.created",
                payment_id=data.payment_id, order_id=order_id, provider=provider,
                data={
                    "refund_id": refund_id,
                    "merchant_refund_id": merchant_refund_id,
                    "amount_minor": amount_minor,
                    "status": result.status.value,
                },
                occurred_at=now,
            )

            if result.status == RefundStatus.COMPLETED:
                apply_completed_refunds(db, data.payment_id, tenant_id, now)

            logger.info("refund %s (%s) for payment %s: %s", refund_id, amount_minor, data.payment_id, result.status.value)
            return serialize_refund(refund)

    def get_refund_status(self, refund_id: str, tenant_id: str) -> dict:
        """Re-check a pending refund with the provider and settle it locally.

        Completed and failed refunds are final and answered from the database.
        """
        with self._session_factory() as db:
            refund = self._load_refund(db, refund_id, tenant_id)
            if refund.status != RefundStatus.PENDING.value:
                return serialize_refund(refund, applied=False)
            params = RefundStatusParams(
                refund_id=refund.id,
                payment_id=refund.payment_id,
                merchant_refund_id=refund.merchant_refund_id,
                provider_refund_id=refund.provider_refund_id,
            )
            provider = refund.provider

        adapter = self.adapters.get_adapter(provider)
        try:
            result = adapter.get_refund_status(params)
        except Exception as exc:
            raise RefundError(
                f"Refund status check failed: {exc}", "REFUND_STATUS_CHECK_FAILED",
                provider=provider, cause=exc,
            ) from exc

        now = self._now()
        with self._session_factory.begin() as db:
            applied = settle_refund(
                db, refund_id, tenant_id, result.status,
                {
                    "provider_refund_id": result.provider_refund_id or params.provider_refund_id,
                    "upi_utr": mask_upi_identifier(provider, result.utr, "utr"),
                },
                now,
            )
            refund = self._load_refund(db, refund_id, tenant_id)
            if applied:
                AuditService.log(
                    db, tenant_id, "refund.status_changed",
                    payment_id=refund.payment_id, order_id=refund.order_id, provider=provider,
                    data={
                        "refund_id": refund_id,
                        "previous_status": RefundStatus.PENDING.value,
                        "new_status": result.status.value,
                    },
                    occurred_at=now,
                )
                if result.status == RefundStatus.COMPLETED:
                    apply_completed_refunds(db, refund.payment_id, tenant_id, now)
                logger.info("refund %s settled as %s", refund_id, result.status.value)

            db.refresh(refund)
            return serialize_refund(refund, applied=applied)

    # ─── Helpers ────────────────────────────────────────────────────

    @staticmethod
    def _load_refund(db, refund_id: str, tenant_id: str) -> Refund:
        refund = (
            db.query(Refund)
            .filter(Refund.id == refund_id, Refund.tenant_id == tenant_id)
            .first()
        )
        if refund is None:
            raise RefundError(f"Refund {refund_id} not found", "REFUND_NOT_FOUND")
        return refund

    @staticmethod
    def _load_payment(db, payment_id: str, tenant_id: str) -> Payment:
        payment = (
            db.query(Payment)
            .filter(Payment.id == payment_id, Payment.tenant_id == tenant_id)
            .first()
        )
        if payment is None:
            raise PaymentError(f"Payment {payment_id} not found", "PAYMENT_NOT_FOUND")
        return payment
