from __future__ import annotations

from typing import List, Optional

from pydantic import AnyUrl, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="ESYGRAB_", env_file=".env", extra="ignore")

    SERVICE_NAME: str = Field(default="session-service")
    PORT: int = Field(default=8040)
    LOG_LEVEL: str = Field(default="INFO")
    # JSON list in the env, e.g. ESYGRAB_CORS_ALLOW_ORIGINS='["http://localhost:8080"]'
    CORS_ALLOW_ORIGINS: List[str] = Field(default_factory=list)

    # Role sessions: one TTL for every role, measured from sign-in
    ROLE_SESSION_TTL_SECONDS: int = Field(default=24 * 60 * 60)
    # Idle cutoff on lastActivity; never longer than the TTL
    IDLE_TIMEOUT_SECONDS: int = Field(default=24 * 60 * 60)

    # Activity tracking
    ACTIVITY_DEBOUNCE_SECONDS: float = Field(default=60.0)
    ACTIVITY_HEARTBEAT_SECONDS: float = Field(default=5 * 60.0)
    TOKEN_REFRESH_MARGIN_SECONDS: int = Field(default=5 * 60)

    # Device-local key/value storage
    STORE_BACKEND: str = Field(default="memory")  # memory | file (file is single-process / dev only)
    STORE_PATH: str = Field(default="./data/device_storage.json")
    # Per device, like a browser's localStorage limit
    STORE_QUOTA_BYTES: Optional[int] = Field(default=5 * 1024 * 1024)

    # Providers for devices with no signed-in user are dropped after this long without a request
    PROVIDER_IDLE_SECONDS: int = Field(default=15 * 60)

    # Device cookie
    DEVICE_COOKIE_NAME: str = Field(default="esygrab_device")
    COOKIE_DOMAIN: Optional[str] = Field(default=None)
    COOKIE_SECURE: bool = Field(default=False)
    COOKIE_SAMESITE: str = Field(default="lax")
    COOKIE_MAX_AGE_SECONDS: int = Field(default=365 * 24 * 60 * 60)
    SIGNING_SECRET: str = Field(default="change-me")

    # Identity provider (GoTrue / PostgREST compatible)
    IDP_BASE_URL: AnyUrl = Field(default="http://localhost:54321")
    IDP_API_KEY: str = Field(default="")
    # service-role key, only needed for account deletion
    IDP_SERVICE_ROLE_KEY: str = Field(default="")
    IDP_TIMEOUT_SECONDS: float = Field(default=10.0)
    IDP_PROFILES_TABLE: str = Field(default="profiles")
    IDP_ACTIVITY_RPC: str = Field(default="update_user_activity")

    PUBLIC_BASE_URL: AnyUrl = Field(default="http://localhost:8080")
    LOGIN_PATH: str = Field(default="/auth")
    PASSWORD_RESET_PATH: str = Field(default="/auth/reset")

    @property
    def idp_base(self) -> str:
        return str(self.IDP_BASE_URL).rstrip("/")

    @property
    def password_reset_url(self) -> str:
        return f"{str(self.PUBLIC_BASE_URL).rstrip('/')}{self.PASSWORD_RESET_PATH}"


settings = Settings()
