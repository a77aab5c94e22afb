import logging
from dataclasses import dataclass
from functools import lru_cache
from os import getenv
from typing import Literal

logger = logging.getLogger(__name__)


@dataclass
class Settings:
    app_name: str = "masix"
    app_env: Literal["dev", "test", "prod"] = "dev"
    app_version: str = "0.1.0"
    app_host: str = "0.0.0.0"
    app_port: int = 8080

    database_url: str = "sqlite:///./masix.db"
    config_path: str = "config/masix.yaml"
    log_level: str = "INFO"

    cron_tick_seconds: float = 30.0
    provider_timeout_seconds: float = 120.0
    tool_timeout_seconds: float = 30.0
    delivery_max_attempts: int = 3
    telegram_poll_timeout_seconds: int = 30


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    app_env = getenv("APP_ENV", "dev")
    if app_env not in ("dev", "test", "prod"):
        logger.warning("Unknown APP_ENV %r, falling back to dev", app_env)
        app_env = "dev"

    return Settings(
        app_name=getenv("APP_NAME", "masix"),
        app_env=app_env,
        app_version=getenv("APP_VERSION", "0.1.0"),
        app_host=getenv("APP_HOST", "0.0.0.0"),
        app_port=int(getenv("APP_PORT", "8080")),
        database_url=getenv("DATABASE_URL", "sqlite:///./masix.db"),
        config_path=getenv("MASIX_CONFIG", "config/masix.yaml"),
        log_level=getenv("LOG_LEVEL", "INFO").upper(),
        cron_tick_seconds=float(getenv("CRON_TICK_SECONDS", "30")),
        provider_timeout_seconds=float(getenv("PROVIDER_TIMEOUT_SECONDS", "120")),
        tool_timeout_seconds=float(getenv("TOOL_TIMEOUT_SECONDS", "30")),
        delivery_max_attempts=int(getenv("DELIVERY_MAX_ATTEMPTS", "3")),
        telegram_poll_timeout_seconds=int(getenv("TELEGRAM_POLL_TIMEOUT_SECONDS", "30")),
    )
