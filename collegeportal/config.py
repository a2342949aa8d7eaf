from __future__ import annotations

import os
import secrets
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from collegeportal.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the portal backend."""

    database_url: str = env_field(
        "postgresql://localhost:5432/college_portal", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (generated JWT secret, memory store defaults).",
    )
    # Final session credential
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("college-portal", "JWT_ISSUER")
    jwt_audience: str = env_field("college-portal-clients", "JWT_AUDIENCE")
    session_token_ttl_minutes: int = env_field(
        8 * 60,
        "SESSION_TOKEN_TTL_MINUTES",
        description="Lifetime of the session token minted after OTP verification",
    )
    # OTP second factor
    otp_ttl_seconds: int = env_field(180, "OTP_TTL_SECONDS", ge=1)
    otp_debounce_seconds: int = env_field(
        12,
        "OTP_DEBOUNCE_SECONDS",
        ge=0,
        description="Window in which a repeated login reuses the pending OTP without resending",
    )
    otp_max_attempts: int = env_field(3, "OTP_MAX_ATTEMPTS", ge=1)
    otp_sweep_interval_seconds: int = env_field(
        60,
        "OTP_SWEEP_INTERVAL_SECONDS",
        ge=1,
        description="How often abandoned OTP sessions are evicted from memory",
    )
    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("College Portal MFA", "EMAIL_FROM_NAME")
    email_test_mailbox: bool = env_field(
        False,
        "EMAIL_TEST_MAILBOX",
        description="Deliver through a throwaway Ethereal mailbox when SMTP is not configured",
    )
    test_mailbox_api_url: str = env_field(
        "https://api.nodemailer.com/user", "TEST_MAILBOX_API_URL"
    )
    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")

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

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret:
            return self
        if not self.test_mode:
            raise ValueError("JWT_SECRET must be set outside TEST_MODE")
        self.jwt_secret = secrets.token_urlsafe(48)
        logger.warning("jwt_secret_generated", reason="test_mode")
        return self

    @property
    def email_configured(self) -> bool:
        return bool(self.smtp_host and (self.email_from_address or self.smtp_user))


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
