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

    # Quota enforcement
    QUOTA_PERIOD_ANCHOR: str = "calendar"  # calendar | signup
    QUOTA_PLAN_CACHE_TTL_SECONDS: float = 60.0
    QUOTA_APPROACHING_THRESHOLD: int = 80  # percent
    QUOTA_AUTO_CREATE_TABLES: bool = True

    CORS_ORIGINS: str = "http://localhost:3000"  # comma-separated

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
    log = logger or logging.getLogger("gymquota")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    anchor = (getattr(cfg, "QUOTA_PERIOD_ANCHOR", "calendar") or "calendar").lower()
    if anchor not in ("calendar", "signup"):
        message = f"QUOTA_PERIOD_ANCHOR must be 'calendar' or 'signup', got {anchor!r}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
