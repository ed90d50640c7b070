from __future__ import annotations

import os
import secrets
from typing import Any, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from learnauth.logging import get_logger

logger = get_logger(__name__)

MIN_JWT_SECRET_LENGTH = 32
MIN_HASH_COST = 4
MAX_HASH_COST = 20


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/learnauth", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    database_connect_timeout_seconds: float = env_field(
        5.0,
        "DATABASE_CONNECT_TIMEOUT_SECONDS",
        description="Max wait for a pooled connection before failing the request",
    )
    database_statement_timeout_ms: int = env_field(
        5000,
        "DATABASE_STATEMENT_TIMEOUT_MS",
        description="Postgres statement_timeout applied to every pooled connection",
    )
    database_pool_min_size: int = env_field(2, "DATABASE_POOL_MIN_SIZE")
    database_pool_max_size: int = env_field(10, "DATABASE_POOL_MAX_SIZE")

    jwt_secret: Optional[str] = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("learnauth", "JWT_ISSUER")
    jwt_audience: str = env_field("learnauth-clients", "JWT_AUDIENCE")

    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES"
    )
    session_ttl_minutes: int = env_field(7 * 24 * 60, "SESSION_TTL_MINUTES")
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")
    email_verification_ttl_minutes: int = env_field(
        24 * 60, "EMAIL_VERIFICATION_TTL_MINUTES"
    )

    max_failed_login_attempts: int = env_field(5, "MAX_FAILED_LOGIN_ATTEMPTS")
    account_lock_minutes: int = env_field(30, "ACCOUNT_LOCK_MINUTES")
    password_hash_cost: int = env_field(
        12,
        "PASSWORD_HASH_COST",
        description="Work factor; argon2 memory cost is 2**(cost + 4) KiB",
    )

    log_raw_tokens: bool = env_field(
        False,
        "LOG_RAW_TOKENS",
        description="Log raw verification/reset tokens from the logging delivery channel (local dev only)",
    )

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

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "session_ttl_minutes",
        "password_reset_ttl_minutes",
        "email_verification_ttl_minutes",
        "max_failed_login_attempts",
        "account_lock_minutes",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("password_hash_cost")
    @classmethod
    def _validate_hash_cost(cls, value: int) -> int:
        if not MIN_HASH_COST <= value <= MAX_HASH_COST:
            raise ValueError(
                f"password_hash_cost must be between {MIN_HASH_COST} and {MAX_HASH_COST}"
            )
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < MIN_JWT_SECRET_LENGTH:
                raise ValueError(
                    f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters"
                )
            return value
        # Process-lifetime key; every restart invalidates outstanding tokens
        logger.warning(
            "jwt_secret_generated",
            message="JWT_SECRET not set; tokens will not survive a restart",
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
