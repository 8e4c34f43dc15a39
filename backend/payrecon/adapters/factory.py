"""
Adapter Factory — Resolves the configured adapter for a provider name.
"""
import logging
from typing import Dict, Optional

from payrecon.adapters.base import PaymentAdapter
from payrecon.config import Settings
from payrecon.errors import ConfigurationError

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = (
    "phonepe", "razorpay", "cashfree", "payu",
    "paytm", "ccavenue", "billdesk", "stripe",
)


class AdapterFactory:
    """Holds one adapter instance per configured provider."""

    def __init__(self, default_provider: str = "phonepe", adapters: Optional[Dict[str, PaymentAdapter]] = None):
        self.default_provider = default_provider
        self._adapters: Dict[str, PaymentAdapter] = dict(adapters or {})

    @classmethod
    def from_settings(cls, settings: Settings) -> "AdapterFactory":
        factory = cls(default_provider=settings.DEFAULT_PROVIDER)

        if settings.PHONEPE_MERCHANT_ID and settings.PHONEPE_SALT_KEY:
            from payrecon.adapters.phonepe import PhonePeAdapter

            factory.register(PhonePeAdapter(
                merchant_id=settings.PHONEPE_MERCHANT_ID,
                salt_key=settings.PHONEPE_SALT_KEY,
                salt_index=settings.PHONEPE_SALT_INDEX,
                base_url=settings.PHONEPE_BASE_URL,
                timeout=settings.PHONEPE_TIMEOUT_SECONDS,
                redirect_url=f"{settings.BASE_URL}/payment-success",
                callback_url=f"{settings.BASE_URL}/webhooks/phonepe",
                webhook_username=settings.PHONEPE_WEBHOOK_USERNAME,
                webhook_password=settings.PHONEPE_WEBHOOK_PASSWORD,
            ))
        else:
            logger.warning("PhonePe credentials missing; phonepe adapter disabled")

        return factory

    def register(self, adapter: PaymentAdapter) -> None:
        self._adapters[adapter.provider] = adapter

    def is_enabled(self, provider: str) -> bool:
        return provider in self._adapters

    def enabled_providers(self) -> list[str]:
        return sorted(self._adapters)

    def get_adapter(self, provider: Optional[str] = None) -> PaymentAdapter:
        name = (provider or self.default_provider or "").lower()
        if name not in SUPPORTED_PROVIDERS:
            raise ConfigurationError(f"Unsupported payment provider: {name}", code="UNSUPPORTED_PROVIDER", provider=name)

        adapter = self._adapters.get(name)
        if adapter is None:
            raise ConfigurationError(f"Payment provider {name} is not configured", provider=name)
        return adapter
