"""
Application Configuration — Environment & Settings
Centralizes all config from .env with Pydantic Settings for validation.
"""
from pathlib import Path
from functools import lru_cache
from pydantic_settings import BaseSettings

# Resolve paths relative to backend/ directory
BASE_DIR = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # --- Core ---
    APP_NAME: str = "UPI Payment Reconciliation API"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # --- Database ---
    DATABASE_URL: str = f"sqlite:///{BASE_DIR / 'data' / 'payments.db'}"

    # --- HTTP ---
    CORS_ORIGINS: list[str] = ["*"]
    BASE_URL: str = "http://localhost:8000"

    # --- Payments ---
    PAYMENT_ENVIRONMENT: str = "test"   # test | live
    DEFAULT_PROVIDER: str = "phonepe"
    DEFAULT_TENANT_ID: str = "default"

    # --- PhonePe ---
    PHONEPE_MERCHANT_ID: str = ""
    PHONEPE_SALT_KEY: str = ""
    PHONEPE_SALT_INDEX: int = 1
    PHONEPE_BASE_URL: str = "https://api-preprod.phonepe.com/apis/pg-sandbox"
    PHONEPE_TIMEOUT_SECONDS: float = 30.0
    PHONEPE_WEBHOOK_USERNAME: str = ""
    PHONEPE_WEBHOOK_PASSWORD: str = ""

    # --- Retention ---
    IDEMPOTENCY_RETENTION_DAYS: int = 30
    WEBHOOK_RETENTION_DAYS: int = 30

    # --- Polling ---
    POLLING_ENABLED: bool = True
    POLL_INTERVALS_SECONDS: list[int] = [15, 30, 60, 120, 240]
    POLL_EXPIRE_AFTER_SECONDS: int = 1200

    # --- Logging ---
    LOG_DIR: str = str(BASE_DIR / "logs")
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = str(BASE_DIR / ".env")
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()
