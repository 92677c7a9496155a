from __future__ import annotations

import re
import unicodedata
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from authgate.service.otc import PHONE_PATTERN, normalize_phone

_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "invalid_credentials",
    "user_inactive",
    "invalid_user_status",
    "too_many_attempts",
    "invalid_verification_code",
    "attempts_exhausted",
    "code_cooldown_active",
    "invalid_token",
    "rate_limited",
    "tenant_access_denied",
    "conflict",
    "delivery_failed",
    "store_unavailable",
    "unauthorized",
    "not_found",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code clients may branch on")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format shared by every endpoint."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC-normalize."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_PATTERN = re.compile(r"^[A-Za-z0-9+_.-]+@(.+)$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if not _EMAIL_PATTERN.match(normalized):
        raise ValueError("invalid email address format")
    return normalized


def _validate_phone(value: str) -> str:
    normalized = normalize_phone(value)
    if not PHONE_PATTERN.match(normalized):
        raise ValueError("invalid phone number format")
    return normalized


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=255)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=3, max_length=100)
    email: str
    phone: str
    password: str = Field(..., min_length=6, max_length=255)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("phone")
    @classmethod
    def _validate_register_phone(cls, value: str) -> str:
        return _validate_phone(value)


class VerifyCodeRequest(BaseModel):
    temp_token: str = Field(..., max_length=2048)
    code: str = Field(..., max_length=16)
    active_tenant_id: Optional[str] = Field(default=None, max_length=128)


class TempTokenRequest(BaseModel):
    temp_token: str = Field(..., max_length=2048)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=2048)
    active_tenant_id: Optional[str] = Field(default=None, max_length=128)


class LogoutRequest(BaseModel):
    access_token: str = Field(..., max_length=2048)


class PasswordResetRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_password_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., max_length=256)
    new_password: str = Field(..., min_length=6, max_length=255)


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    refresh_expires_in: int
    roles: List[str] = Field(default_factory=list)
    active_tenant_id: Optional[str] = None


class LoginResponse(BaseModel):
    state: str
    requires_verification: bool
    temp_token: Optional[str] = None
    expires_in: Optional[int] = None
    destination: Optional[str] = None
    tokens: Optional[TokenPairResponse] = None


class RegisterResponse(BaseModel):
    user_id: str
    temp_token: str
    expires_in: int
    destination: str


class CodeDispatchResponse(BaseModel):
    destination: str
    expires_in: int


class MeResponse(BaseModel):
    user_id: str
    roles: List[str] = Field(default_factory=list)
    active_tenant_id: Optional[str] = None
