from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from junicore.logging import get_logger

logger = get_logger(__name__)

MIN_SIGNING_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential and webhook core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/junicore", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/junicore", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors (sync Redis client, relaxed fallbacks)",
    )

    # Token signing
    jwt_access_secret: str | None = env_field(
        None, "JWT_ACCESS_SECRET", validate_default=True
    )
    jwt_refresh_secret: str | None = env_field(
        None, "JWT_REFRESH_SECRET", validate_default=True
    )
    jwt_issuer: str = env_field("junicore", "JWT_ISSUER")
    jwt_audience: str = env_field("junicore-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", gt=0)
    refresh_token_ttl_days: int = env_field(30, "REFRESH_TOKEN_TTL_DAYS", gt=0)

    # Single-use tokens
    email_verify_ttl_hours: int = env_field(24, "EMAIL_VERIFY_TTL_HOURS", gt=0)
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES", gt=0)

    # argon2id cost; defaults are at or above bcrypt cost 12
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST", ge=1)
    password_hash_memory_kib: int = env_field(
        64 * 1024, "PASSWORD_HASH_MEMORY_KIB", ge=32
    )

    # Webhooks
    stripe_webhook_secret: str | None = env_field(None, "STRIPE_WEBHOOK_SECRET")
    checkr_webhook_secret: str | None = env_field(None, "CHECKR_WEBHOOK_SECRET")
    stripe_signature_tolerance_seconds: int = env_field(
        300, "STRIPE_SIGNATURE_TOLERANCE_SECONDS", ge=0
    )
    webhook_queue_size: int = env_field(1000, "WEBHOOK_QUEUE_SIZE", gt=0)
    webhook_worker_count: int = env_field(2, "WEBHOOK_WORKER_COUNT", gt=0)

    # Rate limits
    auth_rate_limit: int = env_field(10, "AUTH_RATE_LIMIT")
    auth_rate_window_seconds: int = env_field(15 * 60, "AUTH_RATE_WINDOW_SECONDS")
    webhook_rate_limit: int = env_field(500, "WEBHOOK_RATE_LIMIT")
    webhook_rate_window_seconds: int = env_field(60, "WEBHOOK_RATE_WINDOW_SECONDS")

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

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

    @field_validator("jwt_access_secret", "jwt_refresh_secret")
    @classmethod
    def _validate_signing_secret(cls, value: str | None, info) -> str:
        env_name = info.field_name.upper()
        if not value:
            raise ValueError(f"{env_name} is required")
        if len(value) < MIN_SIGNING_SECRET_LENGTH:
            raise ValueError(
                f"{env_name} must be at least {MIN_SIGNING_SECRET_LENGTH} characters"
            )
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @model_validator(mode="after")
    def _ensure_distinct_secrets(self) -> "Settings":
        if self.jwt_access_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_ACCESS_SECRET and JWT_REFRESH_SECRET must differ")
        if not self.stripe_webhook_secret or not self.checkr_webhook_secret:
            logger.warning(
                "webhook_secret_missing",
                stripe_configured=bool(self.stripe_webhook_secret),
                checkr_configured=bool(self.checkr_webhook_secret),
            )
        return self


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
