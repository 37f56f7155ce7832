from functools import lru_cache
from typing import Any, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_CORS = ["http://localhost:3000", "http://localhost:5173"]


def _parse_cors_origins(v: Any) -> List[str]:
    try:
        if v is None or v == "":
            return _DEFAULT_CORS.copy()
        if isinstance(v, list):
            return [x for x in v if isinstance(x, str) and x.strip()]
        s = str(v).strip()
        if not s:
            return _DEFAULT_CORS.copy()
        if s.startswith("["):
            import json
            out = json.loads(s)
            return [x for x in out if isinstance(x, str) and x.strip()] or _DEFAULT_CORS.copy()
        return [x.strip() for x in s.split(",") if x.strip()] or _DEFAULT_CORS.copy()
    except ValueError:
        return _DEFAULT_CORS.copy()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # App
    env: str = Field(default="development", description="ENV")
    debug: bool = Field(default=False, description="DEBUG")
    secret_key: str = Field(default="change-me-in-production-min-32-chars")
    token_max_age_seconds: int = 7 * 24 * 3600

    # MongoDB
    mongodb_uri: str = Field(default="mongodb://localhost:27017", alias="MONGODB_URI")
    mongodb_db_name: str = Field(default="magnetic", alias="MONGODB_DB_NAME")

    # Redis (ARQ worker)
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")

    # Hotmart webhook: HMAC secret is preferred, hottok is the legacy fallback
    hotmart_webhook_secret: str = Field(default="", alias="HOTMART_WEBHOOK_SECRET")
    hotmart_hottok: str = Field(default="", alias="HOTMART_HOTTOK")

    # Shared secret for scheduler-triggered endpoints
    cron_secret: str = Field(default="", alias="CRON_SECRET")

    # ActiveCampaign
    activecampaign_api_url: str = Field(default="", alias="ACTIVECAMPAIGN_API_URL")
    activecampaign_api_key: str = Field(default="", alias="ACTIVECAMPAIGN_API_KEY")
    activecampaign_timeout_seconds: float = 10.0

    # Sentry
    sentry_dsn: str | None = Field(default=None, alias="SENTRY_DSN")

    # CORS: env as string, exposed as list
    cors_origins_raw: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        alias="CORS_ORIGINS",
        description="Comma-separated or JSON list",
    )

    @property
    def cors_origins(self) -> List[str]:
        return _parse_cors_origins(getattr(self, "cors_origins_raw", None))

    # Pricing (credits per action)
    credits_per_script_generation: int = 3
    credits_per_script_adjustment: int = 1
    credits_per_chat_messages: int = 1
    default_message_package_size: int = 5

    # Cycles
    cycle_days: int = 30
    subscription_renewal_days: int = 30

    # Optimistic concurrency on balance rows
    balance_max_retries: int = 5


@lru_cache
def get_settings() -> Settings:
    return Settings()
