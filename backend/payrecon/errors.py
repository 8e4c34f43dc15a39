"""
Payment Errors — Exception taxonomy for the reconciliation core.
Routes translate these into HTTP responses via ``http_status``.
"""
from typing import Optional


class PaymentsCoreError(Exception):
    """Base error carrying a machine-readable code."""

    default_status = 500

    def __init__(
        self,
        message: str,
        code: str,
        provider: Optional[str] = None,
        cause: Optional[BaseException] = None,
        http_status: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.provider = provider
        self.cause = cause
        self.http_status = http_status or STATUS_BY_CODE.get(code, self.default_status)

    def to_detail(self) -> dict:
        return {"code": self.code, "message": self.message}


class PaymentError(PaymentsCoreError):
    pass


class RefundError(PaymentsCoreError):
    pass


class ConfigurationError(PaymentsCoreError):
    default_status = 503

    def __init__(self, message: str, code: str = "PROVIDER_NOT_CONFIGURED", provider: Optional[str] = None):
        super().__init__(message, code, provider=provider)


STATUS_BY_CODE = {
    "PAYMENT_NOT_FOUND": 404,
    "ORDER_NOT_FOUND": 404,
    "REFUND_NOT_FOUND": 404,
    "UPI_PAYMENT_ALREADY_CAPTURED": 409,
    "PAYMENT_ALREADY_COMPLETED": 409,
    "PAYMENT_ALREADY_FAILED": 409,
    "ORDER_MISMATCH": 409,
    "MISSING_PROVIDER_PAYMENT_ID": 409,
    "PAYMENT_CREATION_FAILED": 502,
    "PAYMENT_VERIFICATION_FAILED": 502,
    "PAYMENT_CAPTURE_FAILED": 502,
    "REFUND_CREATION_FAILED": 502,
    "REFUND_STATUS_CHECK_FAILED": 502,
    "REFUND_EXCEEDS_CAPTURED_AMOUNT": 422,
    "INVALID_REFUND_AMOUNT": 422,
    "NO_CAPTURED_AMOUNT": 422,
    "INVALID_PAYMENT_AMOUNT": 422,
    "MISSING_VERIFICATION_DATA": 422,
    "PROVIDER_NOT_CONFIGURED": 503,
    "UNSUPPORTED_PROVIDER": 404,
}
