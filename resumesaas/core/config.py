import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False
    APP_URL: str = "http://localhost:3000"

    # LLM (feature generation)
    GROQ_API_KEY: Optional[str] = None
    GROQ_MODEL: str = "llama-3.1-8b-instant"

    # Clerk Auth
    CLERK_SECRET_KEY: Optional[str] = None
    CLERK_ISSUER: Optional[str] = None
    CLERK_AUDIENCE: Optional[str] = None
    ALLOW_HEADER_AUTH: bool = True  # X-User-Id fallback, never honored in production

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_WEBHOOK_TOLERANCE: int = 300  # seconds
    STRIPE_PRICE_BASIC: Optional[str] = None
    STRIPE_PRICE_STANDARD: Optional[str] = None
    STRIPE_PRICE_PRO: Optional[str] = None

    # Credit accounting
    CREDIT_MAX_RETRIES: int = 3
    CREDIT_BYPASS_ENABLED: bool = False  # test/staging only, rejected in production

    # Admin access
    ADMIN_API_KEY: Optional[str] = None

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def is_production(settings_obj: Optional[Settings] = None) -> bool:
    cfg = settings_obj or settings
    return (getattr(cfg, "ENV", "") or "").lower() == "production"


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("resumesaas")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "CLERK_SECRET_KEY",
        "GROQ_API_KEY",
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    if getattr(cfg, "CREDIT_BYPASS_ENABLED", False):
        log.warning("CREDIT_BYPASS_ENABLED is set: feature access is granted without debiting credits")

    return True
