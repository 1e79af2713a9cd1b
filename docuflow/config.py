from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from docuflow.logging import get_logger

logger = get_logger(__name__)


class SmtpSecurity(str, Enum):
    """Transport security for the outbound SMTP conversation."""

    SSL = "ssl"  # implicit TLS, usually port 465
    STARTTLS = "starttls"
    NONE = "none"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: Any) -> Any:
    if isinstance(value, str):
        return [item.strip().rstrip("/") for item in value.split(",") if item.strip()]
    return value


class Settings(BaseModel):
    """Runtime settings for the token service and its HTTP surface."""

    database_url: str = env_field(
        "postgresql://localhost:5432/docuflow", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str | None = env_field(
        None,
        "SHARED_FS_ROOT",
        description="Directory where the in-memory store snapshots its state; unset disables persistence",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow runtime resets",
    )
    environment: str = env_field(
        "development",
        "ENVIRONMENT",
        description="Deployment environment; debug token links are only returned outside production",
    )

    # Link building
    app_base_url: str = env_field("http://localhost:5173", "APP_BASE_URL")
    allowed_link_origins: list[str] = env_field(
        [],
        "ALLOWED_LINK_ORIGINS",
        description="Comma separated origins callers may request links for",
    )
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    # Token lifetimes
    password_reset_ttl_minutes: int = env_field(
        60, "PASSWORD_RESET_TTL_MINUTES", ge=1
    )
    invite_ttl_hours: int = env_field(48, "INVITE_TTL_HOURS", ge=1)
    session_ttl_minutes: int = env_field(7 * 24 * 60, "SESSION_TTL_MINUTES", ge=1)
    token_bytes: int = env_field(
        32,
        "TOKEN_BYTES",
        ge=32,
        description="Entropy per raw token in bytes (256 bits minimum)",
    )
    token_retention_days: int = env_field(
        30,
        "TOKEN_RETENTION_DAYS",
        ge=1,
        description="How long consumed or expired tokens are kept for audit",
    )
    token_purge_interval_seconds: int = env_field(
        3600,
        "TOKEN_PURGE_INTERVAL_SECONDS",
        ge=0,
        description="How often the app purges stale tokens; 0 disables the background sweep",
    )

    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST", description="SMTP server host")
    smtp_port: int = env_field(587, "SMTP_PORT", description="SMTP server port")
    smtp_user: str | None = env_field(None, "SMTP_USER", description="SMTP username")
    smtp_password: str | None = env_field(
        None, "SMTP_PASSWORD", description="SMTP password"
    )
    smtp_security: SmtpSecurity | None = env_field(
        None,
        "SMTP_SECURITY",
        description="ssl, starttls or none; defaults to ssl on port 465 and starttls otherwise",
    )
    smtp_timeout_seconds: float = env_field(15.0, "SMTP_TIMEOUT_SECONDS", gt=0)
    email_from_address: str | None = env_field(
        None, "EMAIL_FROM_ADDRESS", description="Email from address"
    )
    email_from_name: str = env_field("DocuFlow", "EMAIL_FROM_NAME")

    # Rate limits
    reset_rate_limit_per_minute: int = env_field(5, "RESET_RATE_LIMIT_PER_MINUTE")
    reset_confirm_rate_limit: int = env_field(10, "RESET_CONFIRM_RATE_LIMIT")
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")

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

    @field_validator("allowed_link_origins", "cors_allow_origins", mode="before")
    @classmethod
    def _parse_origin_list(cls, value: Any) -> Any:
        return _split_csv(value)

    @field_validator("redis_url", "shared_fs_root", "smtp_host", "smtp_user", "smtp_password", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("smtp_security", mode="before")
    @classmethod
    def _normalize_security(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip().lower()
            if value == "tls":
                return SmtpSecurity.STARTTLS
            return value or None
        return value

    @field_validator("app_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @model_validator(mode="after")
    def _default_smtp_security(self) -> "Settings":
        if self.smtp_security is None:
            self.smtp_security = (
                SmtpSecurity.SSL if self.smtp_port == 465 else SmtpSecurity.STARTTLS
            )
        return self

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() == "production"


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
