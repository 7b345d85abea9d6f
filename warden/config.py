from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from warden.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential and token lifecycle service."""

    database_url: str = env_field("postgresql://localhost:5432/warden", "DATABASE_URL")
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (ephemeral secrets, runtime resets).",
    )

    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("warden", "JWT_ISSUER")
    jwt_audience: str = env_field("warden-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_days: int = env_field(30, "REFRESH_TOKEN_TTL_DAYS")

    email_verification_expiry_hours: int = env_field(
        24, "EMAIL_VERIFICATION_EXPIRY_HOURS"
    )
    password_reset_expiry_minutes: int = env_field(30, "PASSWORD_RESET_EXPIRY_MINUTES")

    # IP admission control
    rate_limit_enabled: bool = env_field(True, "RATE_LIMIT_ENABLED")
    trusted_proxies: list[str] = env_field(
        [],
        "TRUSTED_PROXIES",
        description="Comma separated proxy addresses allowed to set X-Forwarded-For",
    )
    rate_limit_endpoint_specific: bool = env_field(
        True,
        "RATE_LIMIT_ENDPOINT_SPECIFIC",
        description="Count each endpoint separately per IP instead of one global budget",
    )
    register_rate_limit_requests: int = env_field(5, "REGISTER_RATE_LIMIT_REQUESTS")
    register_rate_limit_window_seconds: int = env_field(
        3600, "REGISTER_RATE_LIMIT_WINDOW_SECONDS"
    )
    login_rate_limit_requests: int = env_field(10, "LOGIN_RATE_LIMIT_REQUESTS")
    login_rate_limit_window_seconds: int = env_field(60, "LOGIN_RATE_LIMIT_WINDOW_SECONDS")
    refresh_rate_limit_requests: int = env_field(30, "REFRESH_RATE_LIMIT_REQUESTS")
    refresh_rate_limit_window_seconds: int = env_field(
        60, "REFRESH_RATE_LIMIT_WINDOW_SECONDS"
    )
    verify_rate_limit_requests: int = env_field(20, "VERIFY_RATE_LIMIT_REQUESTS")
    verify_rate_limit_window_seconds: int = env_field(60, "VERIFY_RATE_LIMIT_WINDOW_SECONDS")
    resend_verification_rate_limit_requests: int = env_field(
        3, "RESEND_VERIFICATION_RATE_LIMIT_REQUESTS"
    )
    resend_verification_rate_limit_window_seconds: int = env_field(
        3600, "RESEND_VERIFICATION_RATE_LIMIT_WINDOW_SECONDS"
    )
    forgot_password_rate_limit_requests: int = env_field(
        3, "FORGOT_PASSWORD_RATE_LIMIT_REQUESTS"
    )
    forgot_password_rate_limit_window_seconds: int = env_field(
        3600, "FORGOT_PASSWORD_RATE_LIMIT_WINDOW_SECONDS"
    )
    reset_password_rate_limit_requests: int = env_field(
        5, "RESET_PASSWORD_RATE_LIMIT_REQUESTS"
    )
    reset_password_rate_limit_window_seconds: int = env_field(
        3600, "RESET_PASSWORD_RATE_LIMIT_WINDOW_SECONDS"
    )
    change_password_rate_limit_requests: int = env_field(
        5, "CHANGE_PASSWORD_RATE_LIMIT_REQUESTS"
    )
    change_password_rate_limit_window_seconds: int = env_field(
        3600, "CHANGE_PASSWORD_RATE_LIMIT_WINDOW_SECONDS"
    )

    # Background jobs and outbound events
    token_cleanup_enabled: bool = env_field(True, "TOKEN_CLEANUP_ENABLED")
    token_cleanup_interval_seconds: int = env_field(
        24 * 60 * 60, "TOKEN_CLEANUP_INTERVAL_SECONDS"
    )
    event_queue_max_size: int = env_field(10_000, "EVENT_QUEUE_MAX_SIZE")
    event_stream_key: str = env_field("events:user", "EVENT_STREAM_KEY")
    event_stream_max_len: int = env_field(100_000, "EVENT_STREAM_MAX_LEN")

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

    @field_validator("trusted_proxies", mode="before")
    @classmethod
    def _split_proxies(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("redis_url", mode="before")
    @classmethod
    def _blank_redis_url(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            if len(value) < 32:
                raise ValueError("JWT_SECRET must be at least 32 characters")
            return value
        if info.data.get("test_mode"):
            logger.warning(
                "jwt_secret_generated",
                message="JWT_SECRET not set; using an ephemeral secret for this process",
            )
            return secrets.token_urlsafe(64)
        raise ValueError("JWT_SECRET must be set outside TEST_MODE")


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
