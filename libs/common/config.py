from functools import lru_cache
from typing import Literal, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Global application settings."""

    # Application
    ENVIRONMENT: Literal["local", "development", "production", "test"] = "local"
    LOG_LEVEL: str = "INFO"
    TIMEZONE: str = "Africa/Lagos"
    FRONTEND_URL: str = "http://localhost:3000"

    # Database
    DATABASE_URL: str
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 1800

    # Admin authentication. Unset secrets reject every request.
    ADMIN_JWT_SECRET: Optional[str] = None
    ADMIN_API_KEY: Optional[str] = None
    CRON_SECRET: Optional[str] = None

    # Paystack
    PAYSTACK_SECRET_KEY: Optional[str] = None
    PAYSTACK_API_BASE_URL: str = "https://api.paystack.co"

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None

    # NOWPayments
    NOWPAYMENTS_API_KEY: Optional[str] = None
    NOWPAYMENTS_API_BASE_URL: str = "https://api.nowpayments.io"
    NOWPAYMENTS_IPN_SECRET: Optional[str] = None
    NOWPAYMENTS_IPN_URL: Optional[str] = None

    # Tron (manual TRC20 verification)
    TRON_API_ENDPOINTS: list[str] = [
        "https://api.trongrid.io",
        "https://api.tronscan.org/api",
    ]

    # Outbound provider calls
    PROVIDER_TIMEOUT_SECONDS: float = 15.0
    PROVIDER_MAX_RETRIES: int = 1

    # Payment lifecycle windows
    PAYMENT_EXPIRY_HOURS: int = 24
    PAYMENT_LINK_EXPIRY_HOURS: int = 1
    STALE_PAYMENT_RETENTION_DAYS: int = 7

    # Bank transfer instructions shown to clients
    BANK_NAME: str = "First Bank of Nigeria"
    BANK_ACCOUNT_NUMBER: str = "0000000000"
    BANK_ACCOUNT_NAME: str = "Kamisoft Enterprises"

    # Infrastructure
    REDIS_URL: str = "redis://localhost:6379/0"
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_STORAGE_URI: str = "memory://"
    COMMUNICATIONS_SERVICE_URL: Optional[str] = None

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    @field_validator("DATABASE_URL")
    @classmethod
    def assemble_db_connection(cls, v: Optional[str]) -> str:
        if isinstance(v, str):
            if v.startswith("postgresql://"):
                return v.replace("postgresql://", "postgresql+psycopg://", 1)
        return v


@lru_cache
def get_settings() -> Settings:
    """
    Return the global settings instance, cached.
    """
    return Settings()
