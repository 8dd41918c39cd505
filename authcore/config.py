from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from authcore.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity provider."""

    database_url: str = env_field(
        "postgresql://localhost:5432/authcore", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/authcore", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (runtime reset, relaxed cache requirements).",
    )
    # Issuer and signing key
    oidc_issuer: str = env_field(
        "http://localhost:8000",
        "OIDC_ISSUER",
        description="Public base URL of this identity provider; used as the iss claim",
    )
    signing_key_dir: str | None = env_field(
        None,
        "SIGNING_KEY_DIR",
        description="Directory holding the persisted ES256 key pair (defaults to SHARED_FS_ROOT/keys)",
    )
    signing_key_id: str = env_field("authcore-key-1", "SIGNING_KEY_ID")
    # Token lifetimes
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")
    social_token_ttl_minutes: int = env_field(
        24 * 60,
        "SOCIAL_TOKEN_TTL_MINUTES",
        description="Access token TTL for social sign-in flows",
    )
    oidc_token_ttl_seconds: int = env_field(3600, "OIDC_TOKEN_TTL_SECONDS")
    auth_code_ttl_seconds: int = env_field(600, "AUTH_CODE_TTL_SECONDS")
    clock_skew_seconds: int = env_field(30, "CLOCK_SKEW_SECONDS")
    # Sessions
    session_ttl_minutes: int = env_field(7 * 24 * 60, "SESSION_TTL_MINUTES")
    session_cache_ttl_seconds: int = env_field(3600, "SESSION_CACHE_TTL_SECONDS")
    session_sweep_interval_seconds: int = env_field(
        3600,
        "SESSION_SWEEP_INTERVAL_SECONDS",
        description="Interval between expired-session sweeps; 0 disables the sweep",
    )
    # Social providers
    google_client_id: str | None = env_field(None, "GOOGLE_CLIENT_ID")
    apple_client_id: str | None = env_field(None, "APPLE_CLIENT_ID")
    external_http_timeout_seconds: float = env_field(
        5.0,
        "EXTERNAL_HTTP_TIMEOUT_SECONDS",
        description="Timeout for social-provider verification and discovery probes",
    )
    # Front end and cookies
    frontend_url: str = env_field("http://localhost:3000", "FRONTEND_URL")
    cors_origins: str = env_field(
        "http://localhost:3000",
        "CORS_ORIGINS",
        description="Comma separated list of origins allowed to send credentials",
    )
    access_cookie_name: str = env_field("authcore_token", "ACCESS_COOKIE_NAME")
    refresh_cookie_name: str = env_field("authcore_refresh", "REFRESH_COOKIE_NAME")
    refresh_cookie_path: str = env_field("/v1/auth/refresh", "REFRESH_COOKIE_PATH")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    # Email notifications
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Account Security", "EMAIL_FROM_NAME")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("oidc_issuer", "frontend_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("refresh_cookie_path")
    @classmethod
    def _validate_cookie_path(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError("REFRESH_COOKIE_PATH must be an absolute path")
        return value

    @property
    def key_dir(self) -> Path:
        if self.signing_key_dir:
            return Path(self.signing_key_dir)
        return Path(self.shared_fs_root) / "keys"

    @property
    def allowed_origins(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
