from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tenantcrm.logging import get_logger
from tenantcrm.service.errors import SigningKeyError

logger = get_logger(__name__)

MIN_SIGNING_KEY_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the CRM auth service, read from env and ``.env``."""

    database_url: str = env_field(
        "postgresql://localhost:5432/tenantcrm", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/tenantcrm", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors (no Redis required, runtime resets allowed)",
    )

    # Token signing
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("tenantcrm", "JWT_ISSUER")
    jwt_audience: str = env_field("tenantcrm-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "ACCESS_TOKEN_TTL_MINUTES",
        description="Session token lifetime; also used as the auth cookie max-age",
    )
    token_leeway_seconds: int = env_field(0, "TOKEN_LEEWAY_SECONDS")

    # Two-factor
    two_factor_issuer: str = env_field("CRM System", "TWO_FACTOR_ISSUER")
    two_factor_window_steps: int = env_field(
        1,
        "TWO_FACTOR_WINDOW_STEPS",
        description="Adjacent 30s steps accepted on each side of the current one",
    )
    two_factor_enrollment_ttl_minutes: int = env_field(
        10, "TWO_FACTOR_ENROLLMENT_TTL_MINUTES"
    )
    two_factor_max_attempts: int = env_field(5, "TWO_FACTOR_MAX_ATTEMPTS")
    two_factor_lockout_seconds: int = env_field(300, "TWO_FACTOR_LOCKOUT_SECONDS")
    mfa_secret_key: str | None = env_field(
        None,
        "MFA_SECRET_KEY",
        description="Key material for encrypting two-factor secrets at rest; defaults to JWT_SECRET",
    )

    # Login protection
    login_max_attempts: int = env_field(5, "LOGIN_MAX_ATTEMPTS")
    login_lockout_minutes: int = env_field(15, "LOGIN_LOCKOUT_MINUTES")
    login_rate_limit_per_minute: int = env_field(5, "LOGIN_RATE_LIMIT_PER_MINUTE")
    register_rate_limit_per_minute: int = env_field(5, "REGISTER_RATE_LIMIT_PER_MINUTE")
    two_factor_rate_limit_per_minute: int = env_field(
        10, "TWO_FACTOR_RATE_LIMIT_PER_MINUTE"
    )

    # Invitations
    invite_ttl_hours: int = env_field(24, "INVITE_TTL_HOURS")

    # Cookies / HTTP
    auth_cookie_name: str = env_field("token", "AUTH_COOKIE_NAME")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    cors_allow_origins: str = env_field("", "CORS_ALLOW_ORIGINS")

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
        "two_factor_window_steps",
        "two_factor_max_attempts",
        "login_max_attempts",
    )
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must be >= 0")
        return value

    @field_validator(
        "access_token_ttl_minutes", "two_factor_enrollment_ttl_minutes", "invite_ttl_hours"
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be > 0")
        return value

    @model_validator(mode="after")
    def _require_signing_key(self) -> "Settings":
        # Runs for defaults too; a missing key must stop the process.
        secret = (self.jwt_secret or "").strip()
        if not secret:
            logger.error("jwt_secret_missing")
            raise SigningKeyError("JWT_SECRET is not set; refusing to issue tokens")
        if len(secret) < MIN_SIGNING_KEY_LENGTH:
            logger.error("jwt_secret_too_short", length=len(secret))
            raise SigningKeyError(
                f"JWT_SECRET must be at least {MIN_SIGNING_KEY_LENGTH} characters"
            )
        self.jwt_secret = secret
        return self

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()]

    @property
    def access_token_ttl_seconds(self) -> int:
        return self.access_token_ttl_minutes * 60


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
