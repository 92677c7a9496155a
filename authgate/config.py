from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from authgate.logging import get_logger

logger = get_logger(__name__)

# HS256 keys shorter than the digest size weaken the signature
MIN_JWT_SECRET_LENGTH = 32


class SmsProvider(str, Enum):
    """Code delivery backends."""

    LOG = "log"
    TWILIO = "twilio"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication subsystem."""

    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_cache: bool = env_field(
        False,
        "USE_MEMORY_CACHE",
        description="Keep counters and revocation marks in-process (single instance only)",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(False, "TEST_MODE")
    store_operation_timeout_seconds: float = env_field(
        5.0,
        "STORE_OPERATION_TIMEOUT_SECONDS",
        description="Upper bound for a single cache round trip",
    )
    app_name: str = env_field("AuthGate", "APP_NAME")

    # Tokens
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("authgate", "JWT_ISSUER")
    jwt_audience: str = env_field("authgate-clients", "JWT_AUDIENCE")
    access_token_ttl_seconds: int = env_field(15 * 60, "ACCESS_TOKEN_TTL_SECONDS")
    refresh_token_ttl_seconds: int = env_field(
        7 * 24 * 3600, "REFRESH_TOKEN_TTL_SECONDS"
    )
    temp_token_ttl_seconds: int = env_field(10 * 60, "TEMP_TOKEN_TTL_SECONDS")
    token_rate_limit_per_minute: int = env_field(
        60,
        "TOKEN_RATE_LIMIT_PER_MINUTE",
        description="Tokens of one kind a user may be issued per minute; 0 disables",
    )
    token_clock_skew_seconds: int = env_field(30, "TOKEN_CLOCK_SKEW_SECONDS")

    # Login lockout
    login_max_attempts: int = env_field(5, "LOGIN_MAX_ATTEMPTS")
    login_lockout_minutes: int = env_field(15, "LOGIN_LOCKOUT_MINUTES")

    # One-time codes
    sms_code_ttl_minutes: int = env_field(5, "SMS_CODE_TTL_MINUTES")
    sms_code_max_attempts: int = env_field(3, "SMS_CODE_MAX_ATTEMPTS")
    sms_code_cooldown_seconds: int = env_field(60, "SMS_CODE_COOLDOWN_SECONDS")
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")

    # Delivery gateway
    sms_provider: SmsProvider = env_field(SmsProvider.LOG, "SMS_PROVIDER")
    twilio_account_sid: str | None = env_field(None, "TWILIO_ACCOUNT_SID")
    twilio_auth_token: str | None = env_field(None, "TWILIO_AUTH_TOKEN")
    twilio_from_number: str | None = env_field(None, "TWILIO_FROM_NUMBER")
    twilio_base_url: str = env_field(
        "https://api.twilio.com/2010-04-01", "TWILIO_BASE_URL"
    )
    delivery_timeout_seconds: float = env_field(10.0, "DELIVERY_TIMEOUT_SECONDS")
    smtp_host: str | None = env_field(
        None, "SMTP_HOST", description="Password reset mail is only logged when unset"
    )
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")

    log_level: str = env_field("INFO", "LOG_LEVEL")

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

    @field_validator("sms_provider")
    @classmethod
    def _validate_provider(cls, value: SmsProvider) -> SmsProvider:
        return SmsProvider(value)

    @field_validator(
        "access_token_ttl_seconds",
        "refresh_token_ttl_seconds",
        "temp_token_ttl_seconds",
        "login_lockout_minutes",
        "sms_code_ttl_minutes",
        "password_reset_ttl_minutes",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("lifetimes and windows must be positive")
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret:
            if len(self.jwt_secret) < MIN_JWT_SECRET_LENGTH:
                raise ValueError(
                    f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters"
                )
            return self
        if not self.test_mode:
            # Every instance must share one signing key, so a generated one is useless
            raise ValueError("JWT_SECRET is required unless TEST_MODE is enabled")
        logger.warning("jwt_secret_generated_for_test_mode")
        self.jwt_secret = secrets.token_urlsafe(48)
        return self

    @model_validator(mode="after")
    def _check_code_windows(self) -> "Settings":
        if self.sms_code_cooldown_seconds >= self.sms_code_ttl_minutes * 60:
            raise ValueError("SMS cooldown must be shorter than the code lifetime")
        return self

    @property
    def longest_token_ttl_seconds(self) -> int:
        return max(
            self.access_token_ttl_seconds,
            self.refresh_token_ttl_seconds,
            self.temp_token_ttl_seconds,
        )


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
