import logging
from typing import Optional

from pydantic import ConfigDict
from pydantic_settings import BaseSettings


# Needed before the service can accept production traffic
REQUIRED_SETTINGS = (
    "DATABASE_URL",
    "CLERK_SECRET_KEY",
    "STRIPE_SECRET_KEY",
    "STRIPE_WEBHOOK_SECRET",
    "GOCARDLESS_ACCESS_TOKEN",
    "GOCARDLESS_WEBHOOK_SECRET",
)


class Settings(BaseSettings):
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    DATABASE_URL: Optional[str] = None

    # Clerk
    CLERK_SECRET_KEY: Optional[str] = None
    CLERK_API_BASE: str = "https://api.clerk.com/v1"
    CLERK_ISSUER: Optional[str] = None
    CLERK_JWKS_URL: Optional[str] = None

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_PRICE_SCHOOL: Optional[str] = None
    STRIPE_PRICE_PARENT: Optional[str] = None
    STRIPE_SIGNATURE_TOLERANCE_SECONDS: int = 300

    # GoCardless
    GOCARDLESS_ACCESS_TOKEN: Optional[str] = None
    GOCARDLESS_WEBHOOK_SECRET: Optional[str] = None
    GOCARDLESS_ENVIRONMENT: str = "sandbox"  # sandbox | live

    RECONCILE_MAX_ATTEMPTS: int = 3
    SCHOOL_MONTHLY_QUOTA: int = 100
    PARENT_MONTHLY_QUOTA: int = 25

    HTTP_TIMEOUT_SECONDS: float = 10.0

    model_config = ConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """
    Check that provider secrets and the database are configured.

    Missing keys are named, never their values. Strict mode (CONFIG_STRICT or
    `strict=True`) raises RuntimeError instead of warning. A retry budget
    below one is always an error.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("loujo")
    if strict is None:
        strict = cfg.CONFIG_STRICT

    if cfg.RECONCILE_MAX_ATTEMPTS < 1:
        raise RuntimeError("RECONCILE_MAX_ATTEMPTS must be at least 1")

    missing = [name for name in REQUIRED_SETTINGS if not getattr(cfg, name)]
    if not missing:
        return True

    message = "Missing required configuration: " + ", ".join(missing)
    if strict:
        raise RuntimeError(message)
    log.warning(message)
    return True
