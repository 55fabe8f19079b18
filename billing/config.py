"""QueryStudio billing service configuration."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Environment-driven settings for the billing service."""

    # Provider webhooks
    polar_webhook_secret: str = ""
    webhook_tolerance_seconds: int = 300
    event_retention_seconds: int = 72 * 3600

    # Session collaborator (HS256 JWT, sub = account id)
    session_secret: str = "CHANGE_ME_IN_PRODUCTION_64_CHAR_SECRET"
    session_cookie_name: str = "studio_session"

    # Empty REDIS_URL keeps entitlement records and the event ledger in-process
    redis_url: str = ""
    store_timeout_seconds: float = 2.0

    # Admission control
    rate_limit_storage_uri: str = "memory://"
    admission_timeout_seconds: float = 0.25
    ingestion_rate_limit: int = 300
    ingestion_rate_window_seconds: int = 60
    ingestion_fail_open: bool = True
    realtime_rate_limit: int = 30
    realtime_rate_window_seconds: int = 60
    realtime_fail_open: bool = False
    api_rate_limit: str = "300/minute"

    trusted_proxies: str = ""
    cors_allowed_origins: list[str] = ["http://localhost:3000"]
    log_level: str = "INFO"

    model_config = {"env_file": ".env", "extra": "ignore"}


settings = Settings()
