from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries a stable ``error_code`` clients may branch on and
    the HTTP ``status_code`` the API layer answers with.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    default_message: str = "request failed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        message = message or self.default_message
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Malformed input rejected before any store access (400)."""
    status_code = 400
    error_code = "validation_error"
    default_message = "invalid request"


class InvalidCredentialsError(ServiceError):
    status_code = 401
    error_code = "invalid_credentials"
    default_message = "invalid credentials"


class AccountInactiveError(ServiceError):
    status_code = 403
    error_code = "user_inactive"
    default_message = "user inactive"


class InvalidUserStatusError(ServiceError):
    """Operation not allowed for the account's current status (400)."""
    status_code = 400
    error_code = "invalid_user_status"
    default_message = "invalid user status"


class AccountLockedOutError(ServiceError):
    status_code = 429
    error_code = "too_many_attempts"
    default_message = "too many login attempts, try again later"


class InvalidOrExpiredCodeError(ServiceError):
    status_code = 400
    error_code = "invalid_verification_code"
    default_message = "invalid or expired verification code"


class AttemptsExhaustedError(ServiceError):
    status_code = 429
    error_code = "attempts_exhausted"
    default_message = "too many verification attempts, request a new code"


class CodeCooldownActiveError(ServiceError):
    status_code = 429
    error_code = "code_cooldown_active"
    default_message = "wait before requesting a new code"


class InvalidTokenError(ServiceError):
    """Bad signature, wrong kind, expired or revoked; deliberately not distinguished."""
    status_code = 401
    error_code = "invalid_token"
    default_message = "invalid token"


class RateLimitExceededError(ServiceError):
    status_code = 429
    error_code = "rate_limited"
    default_message = "rate limit exceeded"


class TenantAccessDeniedError(ServiceError):
    status_code = 403
    error_code = "tenant_access_denied"
    default_message = "access to tenant denied"


class EmailAlreadyExistsError(ServiceError):
    status_code = 409
    error_code = "conflict"
    default_message = "email already in use"


class DeliveryFailedError(ServiceError):
    status_code = 502
    error_code = "delivery_failed"
    default_message = "could not deliver verification code"


class StoreUnavailableError(ServiceError):
    """The shared cache could not be reached; the operation was denied (503)."""
    status_code = 503
    error_code = "store_unavailable"
    default_message = "authentication temporarily unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidCredentialsError",
    "AccountInactiveError",
    "InvalidUserStatusError",
    "AccountLockedOutError",
    "InvalidOrExpiredCodeError",
    "AttemptsExhaustedError",
    "CodeCooldownActiveError",
    "InvalidTokenError",
    "RateLimitExceededError",
    "TenantAccessDeniedError",
    "EmailAlreadyExistsError",
    "DeliveryFailedError",
    "StoreUnavailableError",
]
