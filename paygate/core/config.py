import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import List, Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_API_VERSION: str = "2024-11-20.acacia"  # ephemeral keys are pinned to the mobile SDK version

    # CORS (comma-separated, "*" wildcards allowed)
    ALLOWED_ORIGINS: str = "http://localhost:8081"

    # Payment-intent rate limiting
    RATE_LIMIT_WINDOW_SECONDS: int = 60
    RATE_LIMIT_MAX_REQUESTS: int = 5

    # Payment validation (minor currency units)
    PAYMENT_MIN_AMOUNT: int = 50
    PAYMENT_MAX_AMOUNT: int = 100000
    SUPPORTED_CURRENCIES: str = "eur"

    # Reconciliation
    WEBHOOK_ASSIGN_CHAT_ID: bool = False

    # Client purchase polling
    PURCHASE_POLL_ATTEMPTS: int = 10
    PURCHASE_POLL_FIRST_DELAY_MS: int = 500
    PURCHASE_POLL_INTERVAL_MS: int = 1000

    # Price catalogue fallback (major units)
    PRICE_FALLBACK_CURRENCY: str = "EUR"
    PRICE_FALLBACK_ONE_TIME: float = 2.99
    PRICE_FALLBACK_WEEKLY: float = 4.99
    PRICE_FALLBACK_MONTHLY: float = 9.99

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def supported_currencies(self) -> List[str]:
        return [c.strip().lower() for c in self.SUPPORTED_CURRENCIES.split(",") if c.strip()]

    def allowed_origins(self) -> List[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",") if o.strip()]


settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("paygate")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
