from functools import lru_cache
from typing import Any, List, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_CORS = ["http://localhost:3000"]


def _parse_cors_origins(v: Any) -> List[str]:
    if v is None or v == "":
        return _DEFAULT_CORS.copy()
    if isinstance(v, list):
        return [x for x in v if isinstance(x, str) and x.strip()]
    s = str(v).strip()
    if s.startswith("["):
        import json
        try:
            out = json.loads(s)
        except ValueError:
            return _DEFAULT_CORS.copy()
        return [x for x in out if isinstance(x, str) and x.strip()] or _DEFAULT_CORS.copy()
    return [x.strip() for x in s.split(",") if x.strip()] or _DEFAULT_CORS.copy()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # App
    env: str = Field(default="development", description="ENV")
    debug: bool = Field(default=False, description="DEBUG")

    # MongoDB
    mongodb_uri: str = Field(default="mongodb://localhost:27017", alias="MONGODB_URI")
    mongodb_db_name: str = Field(default="promptflow_ledger", alias="MONGODB_DB_NAME")

    # Redis (arq broker, distributed ledger locks)
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")

    # Shared secrets for the web layer and the cron caller
    service_token: str = Field(default="", alias="LEDGER_SERVICE_TOKEN")
    cron_secret: str = Field(default="", alias="CRON_SECRET")

    # Sentry
    sentry_dsn: str | None = Field(default=None, alias="SENTRY_DSN")

    cors_origins_raw: str = Field(
        default="http://localhost:3000",
        alias="CORS_ORIGINS",
        description="Comma-separated or JSON list",
    )

    @property
    def cors_origins(self) -> List[str]:
        return _parse_cors_origins(getattr(self, "cors_origins_raw", None))

    # Per-user serialization of debits
    lock_backend: Literal["local", "redis"] = Field(default="local", alias="LEDGER_LOCK_BACKEND")
    lock_timeout_seconds: float = 10.0
    lock_wait_seconds: float = 5.0
    charge_max_attempts: int = 3

    # Bucket expiry (days); None = never expires
    purchase_expiry_days: int | None = None
    purchase_bonus_expiry_days: int | None = None
    creator_payout_expiry_days: int = 90
    automation_bonus_expiry_days: int = 30

    # Creator fee settlement: share paid to the creator, rest retained
    creator_share_percent: int = 80

    # Referral program defaults (overridden by the referralProgram config record)
    referral_inviter_bonus: int = 50_000
    referral_invitee_bonus: int = 20_000
    referral_min_spend: int = 10_000
    referral_welcome_bonus: int = 0
    referral_inviter_expiry_days: int = 180
    referral_invitee_expiry_days: int = 90

    # Automation tier
    automation_window_days: int = 30

    # Sweeper / history paging
    sweep_batch_size: int = 500
    history_max_limit: int = 200


@lru_cache
def get_settings() -> Settings:
    return Settings()
