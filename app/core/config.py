from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    # App Config
    DB_URL: Optional[str] = None
    APP_NAME: str = "Chatbot Billing Service"
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: list[str] = ["*"]
    RATE_LIMIT_ENABLED: bool = True

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_PRICE_STARTER: Optional[str] = None
    STRIPE_PRICE_PROFESSIONAL: Optional[str] = None
    STRIPE_PRICE_BUSINESS: Optional[str] = None

    # Polar
    POLAR_ACCESS_TOKEN: Optional[str] = None
    POLAR_WEBHOOK_SECRET: Optional[str] = None
    POLAR_API_URL: str = "https://api.polar.sh"
    POLAR_PRODUCT_STARTER: Optional[str] = None
    POLAR_PRODUCT_PROFESSIONAL: Optional[str] = None
    POLAR_PRODUCT_BUSINESS: Optional[str] = None

    # Billing behaviour
    DEFAULT_BILLING_PROVIDER: str = "stripe"           # stripe|polar
    TRIAL_DAYS: int = 14
    USAGE_WARNING_PCT: int = 80
    PROVIDER_TIMEOUT_SECONDS: float = 10.0

    # Optimistic concurrency
    CAS_MAX_RETRIES: int = 3
    CAS_BACKOFF_BASE_SECONDS: float = 0.05

    # Reconciliation
    RECONCILIATION_ENABLED: bool = True
    RECONCILIATION_INTERVAL_SECONDS: int = 300
    RECONCILIATION_STALE_AFTER_SECONDS: int = 900
    CHECKOUT_TIMEOUT_SECONDS: int = 600
    CHECKOUT_MAX_AGE_SECONDS: int = 86400

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


@lru_cache()
def get_settings():
    return Settings()
