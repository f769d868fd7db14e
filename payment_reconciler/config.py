import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Force-load .env from the project root (reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")

PRODUCTION = "production"

_TRUTHY = {"1", "true", "yes", "on"}


def _flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUTHY


@dataclass(frozen=True)
class Settings:
    database_url: str
    app_env: str = "development"
    database_timeout: float = 5.0
    stripe_secret_key: Optional[str] = None
    stripe_publishable_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    skip_webhook_verification: bool = False
    jwt_secret: Optional[str] = None
    gateway_timeout: float = 10.0
    gateway_max_retries: int = 2
    default_currency: str = "INR"
    log_level: str = "INFO"
    log_json: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        database_url = os.getenv("DATABASE_URL")
        if not database_url:
            raise RuntimeError("DATABASE_URL is not set. Check your .env file.")

        app_env = os.getenv("APP_ENV", "development").strip().lower()
        return cls(
            database_url=database_url,
            app_env=app_env,
            database_timeout=float(os.getenv("DATABASE_TIMEOUT", "5")),
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY"),
            stripe_publishable_key=os.getenv("STRIPE_PUBLISHABLE_KEY"),
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET"),
            skip_webhook_verification=_flag("SKIP_WEBHOOK_VERIFICATION"),
            jwt_secret=os.getenv("JWT_SECRET"),
            gateway_timeout=float(os.getenv("GATEWAY_TIMEOUT", "10")),
            gateway_max_retries=int(os.getenv("GATEWAY_MAX_RETRIES", "2")),
            default_currency=os.getenv("DEFAULT_CURRENCY", "INR").upper(),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_json=_flag("LOG_JSON", default=app_env == PRODUCTION),
        )

    @property
    def is_production(self) -> bool:
        return self.app_env == PRODUCTION

    @property
    def gateway_configured(self) -> bool:
        return bool(self.stripe_secret_key and self.stripe_publishable_key)

    @property
    def verify_webhooks(self) -> bool:
        """Production always verifies; other profiles may opt out explicitly."""
        if self.is_production:
            return True
        return not self.skip_webhook_verification


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()
