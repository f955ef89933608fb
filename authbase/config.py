from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from authbase.logging import get_logger

logger = get_logger(__name__)

_MIN_SECRET_LENGTH = 32


class OnUnavailable(str, Enum):
    """What a store adapter does when its backend cannot be reached.

    - FAIL_OPEN: treat the call as a no-op / negative answer and log
    - FAIL_CLOSED: abort the operation with ServiceUnavailableError
    """

    FAIL_OPEN = "fail_open"
    FAIL_CLOSED = "fail_closed"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth core, read from the environment and .env."""

    database_url: str = env_field(
        "postgresql://localhost:5432/authbase", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    store_timeout_seconds: float = env_field(5.0, "STORE_TIMEOUT_SECONDS", gt=0)

    redis_enabled: bool = env_field(True, "REDIS_ENABLED")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_timeout_seconds: float = env_field(2.0, "REDIS_TIMEOUT_SECONDS", gt=0)
    revocation_on_unavailable: OnUnavailable = env_field(
        OnUnavailable.FAIL_OPEN, "REVOCATION_ON_UNAVAILABLE"
    )
    revocation_buffer_seconds: int = env_field(300, "REVOCATION_BUFFER_SECONDS", gt=0)
    refresh_on_unavailable: OnUnavailable = env_field(
        OnUnavailable.FAIL_CLOSED, "REFRESH_ON_UNAVAILABLE"
    )

    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("authbase", "JWT_ISSUER")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", gt=0)
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS", gt=0)

    lockout_threshold: int = env_field(5, "LOCKOUT_THRESHOLD", gt=0)
    lockout_minutes: int = env_field(15, "LOCKOUT_MINUTES", gt=0)
    # Tell locked-out users to wait instead of returning the generic failure
    surface_account_lock: bool = env_field(True, "SURFACE_ACCOUNT_LOCK")
    # Only honour X-Forwarded-For when a trusted reverse proxy sets it
    trust_forwarded_for: bool = env_field(False, "TRUST_FORWARDED_FOR")

    sweep_interval_seconds: int = env_field(3600, "SWEEP_INTERVAL_SECONDS", ge=0)
    security_event_retention_days: int = env_field(
        90, "SECURITY_EVENT_RETENTION_DAYS", gt=0
    )

    test_mode: bool = env_field(False, "TEST_MODE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")

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

    @field_validator("revocation_on_unavailable", "refresh_on_unavailable", mode="before")
    @classmethod
    def _validate_policy(cls, value: OnUnavailable | str) -> OnUnavailable:
        if isinstance(value, str):
            value = value.strip().lower()
        return OnUnavailable(value)

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < _MIN_SECRET_LENGTH:
                raise ValueError(
                    f"JWT_SECRET must be at least {_MIN_SECRET_LENGTH} characters"
                )
            return value
        # Tokens signed with a generated secret do not survive a restart
        logger.warning(
            "jwt_secret_generated",
            message="JWT_SECRET not set; using an ephemeral per-process secret",
        )
        return secrets.token_urlsafe(64)


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
