from pydantic_settings import BaseSettings
from pydantic import field_validator
from typing import Optional
from decimal import Decimal
from functools import lru_cache
import json


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str

    # Database Connection Pool Settings
    DB_POOL_SIZE: int = 10  # Base number of connections in pool
    DB_MAX_OVERFLOW: int = 20  # Extra connections allowed beyond pool_size
    DB_POOL_TIMEOUT: int = 30  # Seconds to wait for connection from pool
    DB_POOL_RECYCLE: int = 1800  # Recycle connections after 30 minutes
    DB_CREATE_TABLES_ON_STARTUP: bool = False  # Otherwise run `alembic upgrade head`

    # App Settings
    APP_NAME: str = "Rental Billing Engine"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # CORS - accepts JSON string, comma-separated, or list
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    # Service Charge Billing
    AUTOMATED_BILLING_ENABLED: bool = True  # Used when no settings row exists
    MINIMUM_INVOICE_AMOUNT: Decimal = Decimal("10")  # Totals below this produce no invoice
    SERVICE_INVOICE_DUE_DAYS: int = 14
    BILLING_MAX_CONCURRENCY: int = 5  # Landlords billed in parallel
    BILLING_CRON_SECRET: Optional[str] = None  # X-Cron-Secret for the run-monthly trigger
    DEFAULT_CURRENCY: str = "KES"

    # Reconciliation
    MATCH_DATE_WINDOW_DAYS: int = 30  # Probable-match window around the invoice date
    RECONCILE_ON_INGEST: bool = True  # Queue matching as a background task after a webhook
    RECONCILE_INTERVAL_MINUTES: int = 10  # Retry job for unmatched payments

    # Scheduler
    SCHEDULER_ENABLED: bool = True
    SCHEDULER_TIMEZONE: str = "Africa/Nairobi"

    # M-Pesa (platform defaults, used when a landlord has no own configuration)
    MPESA_ENVIRONMENT: str = "sandbox"  # sandbox | production
    MPESA_CONSUMER_KEY: str = ""
    MPESA_CONSUMER_SECRET: str = ""
    MPESA_SHORTCODE: str = ""
    MPESA_PASSKEY: str = ""
    MPESA_CALLBACK_URL: str = ""
    MPESA_VALIDATE_SOURCE_IP: bool = True
    MPESA_ALLOWED_CIDRS: list[str] = [
        "196.201.212.0/24",
        "196.201.214.0/24",
        "196.201.215.0/24",
        "196.201.216.0/24",
        "196.216.152.0/24",
        "41.84.87.0/24",
    ]
    PROVIDER_TIMEOUT_SECONDS: float = 30.0  # Daraja, Jenga and KCB API calls

    # Bank / aggregator webhooks
    JENGA_WEBHOOK_SECRET: Optional[str] = None  # HMAC secret for X-Jenga-Signature
    KCB_WEBHOOK_SECRET: Optional[str] = None  # HMAC secret for X-KCB-Signature

    # Bank STK push (landlord API credentials live in landlord_bank_configs)
    JENGA_PRIVATE_KEY: str = ""  # PEM RSA key signing Jenga checkout requests
    JENGA_CALLBACK_URL: str = ""  # Public URL of /api/v1/webhooks/jenga/ipn
    KCB_CALLBACK_URL: str = ""  # Public URL of /api/v1/webhooks/kcb/ipn
    KCB_ORG_SHORTCODE: str = "522522"  # KCB shared paybill

    # Credential encryption (landlord M-Pesa configs)
    ENCRYPTION_SECRET: Optional[str] = None
    ENCRYPTION_SALT: str = "rental_billing_salt"

    # SMS Gateway
    SMS_API_URL: str = ""  # Provider endpoint, empty disables sending
    SMS_API_KEY: str = ""
    SMS_SENDER_ID: str = "RENTALS"

    @field_validator('CORS_ORIGINS', 'MPESA_ALLOWED_CIDRS', mode='before')
    @classmethod
    def parse_list(cls, v):
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return [item.strip() for item in v.split(',') if item.strip()]
        return v

    @property
    def cors_origins_list(self) -> list[str]:
        return self.CORS_ORIGINS

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
