from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, Field, field_validator, model_validator

from timekeeper.logging import get_logger

logger = get_logger(__name__)

MIN_JWT_SECRET_LENGTH = 32


class SameSite(str, Enum):
    """Accepted values for the cookie SameSite attribute."""

    LAX = "lax"
    STRICT = "strict"
    NONE = "none"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity and session core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/timekeeper", "DATABASE_URL"
    )
    read_database_url: str | None = env_field(
        None,
        "READ_DATABASE_URL",
        description="Optional replica used for read-only queries",
    )
    database_pool_min: int = env_field(2, "DATABASE_POOL_MIN", ge=1)
    database_pool_max: int = env_field(10, "DATABASE_POOL_MAX", ge=1)
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets and in-process fallbacks for tests",
    )
    # Cache settings; an unset URL disables caching entirely
    redis_url: str | None = env_field(None, "REDIS_URL")
    redis_pool_size: int = env_field(10, "REDIS_POOL_SIZE", ge=1)
    redis_connect_timeout: float = env_field(5.0, "REDIS_CONNECT_TIMEOUT", gt=0)
    # Token signing
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("timekeeper", "JWT_ISSUER")
    jwt_audience: str = env_field("timekeeper-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        60, "ACCESS_TOKEN_TTL_MINUTES", ge=1, description="Access token lifetime"
    )
    refresh_token_ttl_days: int = env_field(
        7, "REFRESH_TOKEN_TTL_DAYS", ge=1, description="Refresh token lifetime"
    )
    max_concurrent_sessions: int = env_field(
        3,
        "MAX_CONCURRENT_SESSIONS",
        ge=1,
        description="Oldest session is evicted when a new login would exceed this",
    )
    # Account lockout
    account_lockout_threshold: int = env_field(5, "ACCOUNT_LOCKOUT_THRESHOLD", ge=1)
    account_lockout_duration_minutes: int = env_field(
        15, "ACCOUNT_LOCKOUT_DURATION_MINUTES", ge=1
    )
    account_lockout_backoff_enabled: bool = env_field(
        True, "ACCOUNT_LOCKOUT_BACKOFF_ENABLED"
    )
    account_lockout_max_duration_hours: int = env_field(
        24, "ACCOUNT_LOCKOUT_MAX_DURATION_HOURS", ge=1
    )
    # Rate limits (fixed windows)
    rate_limit_ip_max_requests: int = env_field(15, "RATE_LIMIT_IP_MAX_REQUESTS", ge=1)
    rate_limit_ip_window_seconds: int = env_field(
        900, "RATE_LIMIT_IP_WINDOW_SECONDS", ge=1
    )
    rate_limit_user_max_requests: int = env_field(
        20, "RATE_LIMIT_USER_MAX_REQUESTS", ge=1
    )
    rate_limit_user_window_seconds: int = env_field(
        3600, "RATE_LIMIT_USER_WINDOW_SECONDS", ge=1
    )
    # MFA
    mfa_issuer: str = env_field("Timekeeper", "MFA_ISSUER")
    mfa_encryption_key: str | None = env_field(
        None,
        "MFA_ENCRYPTION_KEY",
        description="Key material for MFA secrets at rest; defaults to JWT_SECRET",
    )
    # Cookies
    cookie_secure: bool = env_field(False, "COOKIE_SECURE")
    cookie_same_site: SameSite = env_field(SameSite.LAX, "COOKIE_SAME_SITE")
    # Password policy
    password_min_length: int = env_field(12, "PASSWORD_MIN_LENGTH", ge=8)
    password_require_uppercase: bool = env_field(True, "PASSWORD_REQUIRE_UPPERCASE")
    password_require_lowercase: bool = env_field(True, "PASSWORD_REQUIRE_LOWERCASE")
    password_require_numbers: bool = env_field(True, "PASSWORD_REQUIRE_NUMBERS")
    password_require_symbols: bool = env_field(True, "PASSWORD_REQUIRE_SYMBOLS")
    password_history_count: int = env_field(5, "PASSWORD_HISTORY_COUNT", ge=0)
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES", ge=1)

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

    @field_validator("read_database_url", "redis_url", "mfa_encryption_key", mode="before")
    @classmethod
    def _blank_as_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("cookie_same_site", mode="before")
    @classmethod
    def _parse_same_site(cls, value: Any) -> SameSite:
        if isinstance(value, SameSite):
            return value
        normalized = str(value).strip().lower()
        try:
            return SameSite(normalized)
        except ValueError as exc:
            raise ValueError(
                f"COOKIE_SAME_SITE must be one of lax, strict, none (got {value!r})"
            ) from exc

    @field_validator("jwt_secret")
    @classmethod
    def _validate_jwt_secret(cls, value: str | None) -> str:
        if not value:
            raise ValueError("JWT_SECRET must be set")
        if len(value) < MIN_JWT_SECRET_LENGTH:
            raise ValueError(
                f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters"
            )
        return value

    @model_validator(mode="after")
    def _validate_combinations(self) -> "Settings":
        if self.cookie_same_site == SameSite.NONE and not self.cookie_secure:
            raise ValueError("COOKIE_SAME_SITE=none requires COOKIE_SECURE=true")
        if self.database_pool_min > self.database_pool_max:
            raise ValueError("DATABASE_POOL_MIN cannot exceed DATABASE_POOL_MAX")
        return self

    @property
    def mfa_key_material(self) -> str:
        return self.mfa_encryption_key or str(self.jwt_secret)


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
