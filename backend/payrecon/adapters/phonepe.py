"""
PhonePe Adapter — PhonePe PG v1 (UPI collect / intent / QR and pay page).

Requests are base64-encoded JSON signed with an ``X-VERIFY`` checksum:
``sha256(payload + path + salt_key) + "###" + salt_index``. Server-to-server
callbacks carry ``{"response": <base64>}`` signed as
``sha256(response + salt_key) + "###" + salt_index``.
"""
import base64
import hashlib
import hmac
import json
import logging
import re
from typing import Dict, Optional

import httpx

from payrecon.adapters.base import (
    CapturePaymentParams,
    CreatePaymentParams,
    CreateRefundParams,
    PaymentAdapter,
    PaymentCancelledEvent,
    PaymentCapturedEvent,
    PaymentExpiredEvent,
    PaymentFailedEvent,
    PaymentPendingEvent,
    PaymentResult,
    PaymentStatus,
    RefundResult,
    RefundStatus,
    RefundStatusEvent,
    RefundStatusParams,
    VerifyPaymentParams,
    WebhookRequest,
    WebhookVerifyResult,
)
from payrecon.errors import PaymentError
from payrecon.utils.hashing import sha256_hex
from payrecon.utils.upi import mask_utr

logger = logging.getLogger(__name__)

PAY_PATH = "/pg/v1/pay"
REFUND_PATH = "/pg/v1/refund"

_STATE_MAP = {
    "PENDING": PaymentStatus.PROCESSING,
    "INITIATED": PaymentStatus.PROCESSING,
    "IN_PROGRESS": PaymentStatus.PROCESSING,
    "AWAITING_PAYMENT": PaymentStatus.PROCESSING,
    "AUTHORIZED": PaymentStatus.PROCESSING,
    "PAYMENT_PENDING": PaymentStatus.PROCESSING,
    "COMPLETED": PaymentStatus.CAPTURED,
    "CAPTURED": PaymentStatus.CAPTURED,
    "SUCCESS": PaymentStatus.CAPTURED,
    "PAYMENT_SUCCESS": PaymentStatus.CAPTURED,
    "FAILED": PaymentStatus.FAILED,
    "DECLINED": PaymentStatus.FAILED,
    "PAYMENT_ERROR": PaymentStatus.FAILED,
    "PAYMENT_DECLINED": PaymentStatus.FAILED,
    "CANCELLED": PaymentStatus.CANCELLED,
    "CANCELED": PaymentStatus.CANCELLED,
    "USER_CANCELLED": PaymentStatus.CANCELLED,
    "PAYMENT_CANCELLED": PaymentStatus.CANCELLED,
    "TIMED_OUT": PaymentStatus.CANCELLED,
    "TIMEDOUT": PaymentStatus.CANCELLED,
    "EXPIRED": PaymentStatus.CANCELLED,
    "CREATED": PaymentStatus.CREATED,
}

_EXPIRY_STATES = {"TIMED_OUT", "TIMEDOUT", "EXPIRED"}
_REFUND_COMPLETED_STATES = {"COMPLETED", "PAYMENT_SUCCESS", "SUCCESS"}
_REFUND_FAILED_STATES = {"FAILED", "PAYMENT_ERROR", "DECLINED"}


def map_phonepe_state(state: Optional[str]) -> PaymentStatus:
    if not state:
        return PaymentStatus.PROCESSING
    return _STATE_MAP.get(state.strip().upper(), PaymentStatus.PROCESSING)


def map_phonepe_refund_state(state: Optional[str], success: bool = True) -> RefundStatus:
    state = (state or "").strip().upper()
    if state in _REFUND_COMPLETED_STATES:
        return RefundStatus.COMPLETED
    if state in _REFUND_FAILED_STATES or not success:
        return RefundStatus.FAILED
    return RefundStatus.PENDING


def merchant_transaction_id_for(payment_id: str) -> str:
    """PhonePe caps merchantTransactionId at 35 chars of [A-Za-z0-9_-]."""
    return "T" + re.sub(r"[^A-Za-z0-9]", "", payment_id)[:34]


class PhonePeAdapter(PaymentAdapter):
    provider = "phonepe"
    requires_polling = True

    def __init__(
        self,
        merchant_id: str,
        salt_key: str,
        salt_index: int = 1,
        base_url: str = "https://api-preprod.phonepe.com/apis/pg-sandbox",
        timeout: float = 30.0,
        redirect_url: Optional[str] = None,
        callback_url: Optional[str] = None,
        webhook_username: str = "",
        webhook_password: str = "",
        client: Optional[httpx.Client] = None,
    ):
        self.merchant_id = merchant_id
        self.salt_key = salt_key
        self.salt_index = salt_index
        self.base_url = base_url.rstrip("/")
        self.redirect_url = redirect_url
        self.callback_url = callback_url
        self.webhook_username = webhook_username
        self.webhook_password = webhook_password
        self._client = client or httpx.Client(base_url=self.base_url, timeout=timeout)

    # ─── Signing ────────────────────────────────────────────────────

    def checksum(self, path: str, payload: str = "") -> str:
        return f"{sha256_hex(payload + path + self.salt_key)}###{self.salt_index}"

    def callback_checksum(self, response: str) -> str:
        return f"{sha256_hex(response + self.salt_key)}###{self.salt_index}"

    def _get_status(self, merchant_transaction_id: str) -> Dict:
        path = f"/pg/v1/status/{self.merchant_id}/{merchant_transaction_id}"
        response = self._client.get(
            path,
            headers={
                "Content-Type": "application/json",
                "X-VERIFY": self.checksum(path),
                "X-MERCHANT-ID": self.merchant_id,
                "accept": "application/json",
            },
        )
        response.raise_for_status()
        return response.json()

    def _post_signed(self, path: str, request: Dict) -> Dict:
        encoded = base64.b64encode(json.dumps(request).encode("utf-8")).decode("ascii")
        response = self._client.post(
            path,
            json={"request": encoded},
            headers={
                "Content-Type": "application/json",
                "X-VERIFY": self.checksum(path, encoded),
                "accept": "application/json",
            },
        )
        response.raise_for_status()
        return response.json()

    # ─── Payments ───────────────────────────────────────────────────

    def create_payment(self, params: CreatePaymentParams) -> PaymentResult:
        merchant_transaction_id = merchant_transaction_id_for(params.payment_id)
        request = {
            "merchantId": self.merchant_id,
            "merchantTransactionId": merchant_transaction_id,
            "merchantUserId": params.customer_id or f"U{params.order_id[:30]}",
            "amount": int(params.amount_minor),
            "redirectUrl": params.redirect_url or self.redirect_url,
            "redirectMode": "POST",
            "callbackUrl": params.callback_url or self.callback_url,
            "paymentInstrument": self._build_instrument(params),
        }
        if params.customer_phone:
            request["mobileNumber"] = params.customer_phone

        body = self._post_signed(PAY_PATH, request)
        if not body.get("success"):
            raise PaymentError(
                f"PhonePe pay error: {body.get('code')} - {body.get('message')}",
                "PAYMENT_CREATION_FAILED",
                provider=self.provider,
            )

        data = body.get("data") or {}
        instrument = data.get("instrumentResponse") or {}
        redirect_info = instrument.get("redirectInfo") or {}

        return PaymentResult(
            payment_id=params.payment_id,
            status=PaymentStatus.CREATED,
            provider=self.provider,
            amount_minor=int(params.amount_minor),
            currency=params.currency,
            provider_payment_id=merchant_transaction_id,
            provider_order_id=data.get("transactionId"),
            method_kind="upi",
            payer_handle=params.payer_vpa,
            instrument_type=instrument.get("type"),
            redirect_url=redirect_info.get("url") or instrument.get("intentUrl"),
            provider_data={
                "merchantTransactionId": merchant_transaction_id,
                "code": body.get("code"),
                "instrumentResponse": instrument,
            },
        )

    def verify_payment(self, params: VerifyPaymentParams) -> PaymentResult:
        merchant_transaction_id = (
            params.provider_data.get("merchantTransactionId")
            or params.provider_payment_id
        )
        if not merchant_transaction_id:
            raise PaymentError(
                "Missing PhonePe merchant transaction ID",
                "MISSING_VERIFICATION_DATA",
                provider=self.provider,
            )

        body = self._get_status(merchant_transaction_id)
        data = body.get("data") or {}
        instrument = data.get("paymentInstrument") or {}

        state = data.get("state") or body.get("code")
        status = map_phonepe_state(state)

        return PaymentResult(
            payment_id=params.payment_id,
            status=status,
            provider=self.provider,
            amount_minor=data.get("amount"),
            provider_payment_id=merchant_transaction_id,
            provider_order_id=data.get("transactionId"),
            provider_transaction_id=data.get("transactionId"),
            method_kind="upi",
            payer_handle=instrument.get("vpa") or instrument.get("payerVpa") or instrument.get("payerAddress"),
            utr=instrument.get("utr"),
            instrument_type=instrument.get("type"),
            response_code=data.get("responseCode"),
            error_code=body.get("code") if status in (PaymentStatus.FAILED, PaymentStatus.CANCELLED) else None,
            error_message=body.get("message") if status in (PaymentStatus.FAILED, PaymentStatus.CANCELLED) else None,
            provider_data={
                "merchantTransactionId": merchant_transaction_id,
                "state": data.get("state"),
                "code": body.get("code"),
                "responseCode": data.get("responseCode"),
            },
        )

    def capture_payment(self, params: CapturePaymentParams) -> PaymentResult:
        # UPI payments are auto-captured; capture is a status re-check.
        return self.verify_payment(
            VerifyPaymentParams(
                payment_id=params.payment_id,
                provider_payment_id=params.provider_payment_id,
                provider_data={"merchantTransactionId": params.provider_payment_id},
            )
        )

    def create_refund(self, params: CreateRefundParams) -> RefundResult:
        request = {
            "merchantId": self.merchant_id,
            "merchantUserId": f"U{params.payment_id[:30]}",
            "originalTransactionId": params.provider_payment_id,
            "merchantTransactionId": params.merchant_refund_id,
            "amount": int(params.amount_minor),
            "callbackUrl": self.callback_url,
        }
        body = self._post_signed(REFUND_PATH, request)
        data = body.get("data") or {}
        status = map_phonepe_refund_state(data.get("state") or body.get("code"), bool(body.get("success")))

        return RefundResult(
            refund_id=params.refund_id,
            payment_id=params.payment_id,
            status=status,
            provider=self.provider,
            amount_minor=data.get("amount") or params.amount_minor,
            provider_refund_id=data.get("transactionId"),
            merchant_refund_id=params.merchant_refund_id,
            reason=params.reason,
            utr=mask_utr((data.get("paymentInstrument") or {}).get("utr")),
            provider_data={"code": body.get("code"), "state": data.get("state")},
        )

    def get_refund_status(self, params: RefundStatusParams) -> RefundResult:
        # Refunds are looked up on the status API by the merchant refund id we sent.
        if not params.merchant_refund_id:
            raise PaymentError(
                "Missing PhonePe merchant refund ID",
                "MISSING_VERIFICATION_DATA",
                provider=self.provider,
            )

        body = self._get_status(params.merchant_refund_id)
        data = body.get("data") or {}
        status = map_phonepe_refund_state(data.get("state") or body.get("code"), bool(body.get("success")))

        return RefundResult(
            refund_id=params.refund_id,
            payment_id=params.payment_id,
            status=status,
            provider=self.provider,
            amount_minor=data.get("amount"),
            provider_refund_id=data.get("transactionId") or params.provider_refund_id,
            merchant_refund_id=params.merchant_refund_id,
            utr=mask_utr((data.get("paymentInstrument") or {}).get("utr")),
            provider_data={
                "code": body.get("code"),
                "state": data.get("state"),
                "responseCode": data.get("responseCode"),
            },
        )

    # ─── Webhooks ───────────────────────────────────────────────────

    def verify_webhook(self, request: WebhookRequest) -> WebhookVerifyResult:
        if self.webhook_username and not self._authorization_matches(request.headers.get("authorization")):
            return WebhookVerifyResult(
                verified=False,
                error_code="INVALID_AUTHORIZATION",
                error_message="Invalid webhook authorization hash",
            )

        signature = request.headers.get("x-verify")
        if not signature:
            return WebhookVerifyResult(
                verified=False, error_code="MISSING_SIGNATURE",
                error_message="Missing PhonePe signature header",
            )

        try:
            envelope = json.loads(request.body.decode("utf-8"))
            encoded = envelope["response"]
        except (ValueError, KeyError, TypeError):
            return WebhookVerifyResult(
                verified=False, error_code="MALFORMED_PAYLOAD",
                error_message="Callback body is not a PhonePe response envelope",
            )

        if not hmac.compare_digest(signature.strip(), self.callback_checksum(encoded)):
            return WebhookVerifyResult(
                verified=False, error_code="INVALID_SIGNATURE",
                error_message="Invalid webhook signature",
            )

        try:
            decoded = json.loads(base64.b64decode(encoded))
        except ValueError:
            return WebhookVerifyResult(
                verified=False, error_code="MALFORMED_PAYLOAD",
                error_message="Callback response is not base64 JSON",
            )

        return WebhookVerifyResult(verified=True, event=self._to_event(decoded))

    def _to_event(self, decoded: Dict):
        data = decoded.get("data") or {}
        instrument = data.get("paymentInstrument") or {}
        state = (data.get("state") or decoded.get("code") or "").upper()
        amount = data.get("amount")

        # Refund callbacks reference the payment they reverse.
        if data.get("originalTransactionId"):
            return RefundStatusEvent(
                refund_id=data.get("merchantTransactionId"),
                status=map_phonepe_refund_state(state, bool(decoded.get("success", True))),
                amount_minor=int(amount) if isinstance(amount, (int, float)) else None,
                original_transaction_id=data.get("originalTransactionId"),
                provider_refund_id=data.get("transactionId"),
                utr=instrument.get("utr"),
                response_code=data.get("responseCode"),
                data=data,
            )

        status = map_phonepe_state(state)

        if status == PaymentStatus.CAPTURED:
            event_cls = PaymentCapturedEvent
        elif status == PaymentStatus.CANCELLED:
            event_cls = PaymentExpiredEvent if state in _EXPIRY_STATES else PaymentCancelledEvent
        elif status == PaymentStatus.FAILED:
            event_cls = PaymentFailedEvent
        else:
            event_cls = PaymentPendingEvent

        merchant_transaction_id = data.get("merchantTransactionId")
        return event_cls(
            payment_id=merchant_transaction_id,
            amount_minor=int(amount) if isinstance(amount, (int, float)) else None,
            utr=instrument.get("utr"),
            payer_handle=instrument.get("vpa") or instrument.get("payerVpa"),
            merchant_transaction_id=merchant_transaction_id,
            provider_transaction_id=data.get("transactionId"),
            instrument_type=instrument.get("type"),
            response_code=data.get("responseCode"),
            failure_code=decoded.get("code") if status != PaymentStatus.CAPTURED else None,
            failure_message=decoded.get("message") if status != PaymentStatus.CAPTURED else None,
            data=data,
        )

    def _authorization_matches(self, header: Optional[str]) -> bool:
        if not header:
            return False
        provided = re.sub(r"^(?:Bearer|Basic)\s+", "", header.strip(), flags=re.IGNORECASE)
        expected = hashlib.sha256(
            f"{self.webhook_username}:{self.webhook_password}".encode("utf-8")
        ).hexdigest()
        return hmac.compare_digest(provided.lower(), expected)

    @staticmethod
    def _build_instrument(params: CreatePaymentParams) -> Dict:
        instrument = (params.instrument or "PAY_PAGE").upper()
        if instrument == "UPI_COLLECT":
            return {"type": "UPI_COLLECT", "vpa": params.payer_vpa}
        if instrument == "UPI_INTENT":
            return {"type": "UPI_INTENT", "targetApp": params.target_app or "com.phonepe.app"}
        if instrument == "UPI_QR":
            return {"type": "UPI_QR"}
        return {"type": "PAY_PAGE"}
