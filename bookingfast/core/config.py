import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

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

    # App URLs (checkout redirects)
    APP_BASE_URL: str = "http://localhost:5173"

    # Plugin trials
    TRIAL_PERIOD_DAYS: int = 7

    # Team size caps
    TEAM_MEMBER_LIMIT: int = 10
    TEAM_MEMBER_LIMIT_ENTERPRISE: int = 50
    TEAM_UPSELL_THRESHOLD: int = 8
    ENTERPRISE_PLUGIN_SLUG: str = "entreprisepack"

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("bookingfast")
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

    if cfg.TEAM_MEMBER_LIMIT_ENTERPRISE < cfg.TEAM_MEMBER_LIMIT:
        message = "TEAM_MEMBER_LIMIT_ENTERPRISE is lower than TEAM_MEMBER_LIMIT"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
