from __future__ import annotations
from pydantic_settings import BaseSettings
from pydantic import Field, field_validator

class Settings(BaseSettings):
    database_url: str = Field(..., alias="DATABASE_URL")

    auth_jwks_url: str = Field(..., alias="AUTH_JWKS_URL")
    token_issuer: str = Field("authentication-svc", alias="TOKEN_ISSUER")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Check-in window
    checkin_lead_minutes: int = Field(default=30, alias="CHECKIN_LEAD_MINUTES")
    checkin_url_base: str = Field("/kids/checkin-requests/token", alias="CHECKIN_URL_BASE")

    # Expiry sweep
    sweep_enabled: bool = Field(default=True, alias="SWEEP_ENABLED")
    sweep_interval_seconds: int = Field(default=300, alias="SWEEP_INTERVAL_SECONDS")

    # Notifications: websocket | nats | none
    notification_backend: str = Field(default="websocket", alias="NOTIFICATION_BACKEND")
    notify_timeout_seconds: float = Field(default=2.0, alias="NOTIFY_TIMEOUT_SECONDS")

    # Redis
    redis_url: str = Field("redis://127.0.0.1:6379/0", alias="REDIS_URL")
    rl_enabled: bool = Field(default=True, alias="RL_ENABLED")
    rl_window_seconds: int = Field(default=60, alias="RL_WINDOW_SECONDS")
    rl_max_reqs: int = Field(default=60, alias="RL_MAX_REQS")

    # NATS
    nats_urls: str = Field("nats://127.0.0.1:4222", alias="NATS_URLS")
    nats_subject_checkin_status: str = Field("kids.checkin.status", alias="NATS_SUBJECT_CHECKIN_STATUS")

    @field_validator("notification_backend")
    @classmethod
    def _backend_lower(cls, v: str) -> str:
        return v.strip().lower()

    class Config:
        env_file = ".env"
        env_prefix = ""
        case_sensitive = False

_settings: Settings | None = None
def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
