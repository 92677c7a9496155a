"""Common storage utilities shared between the redis and memory caches.

Both backends implement :class:`CounterStore`; services only depend on the
protocol and on the key builders below so the two stay interchangeable.
"""

from __future__ import annotations

import hashlib
from typing import Protocol, Set


class CounterStore(Protocol):
    """Shared counter/flag store with per-key TTL and atomic increments."""

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool: ...

    async def get(self, key: str) -> str | None: ...

    async def exists(self, key: str) -> bool: ...

    async def delete(self, *keys: str) -> int: ...

    async def increment(
        self, key: str, ttl_seconds: int, *, refresh_ttl: bool = False
    ) -> int: ...

    async def add_to_set(self, key: str, member: str, ttl_seconds: int) -> None: ...

    async def is_member(self, key: str, member: str) -> bool: ...

    async def members(self, key: str) -> Set[str]: ...

    async def ttl(self, key: str) -> int: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


# Redis TTL sentinels
TTL_MISSING = -2
TTL_PERSISTENT = -1


# ============================================================================
# KEY NAMESPACE
# ============================================================================

RATE_LIMIT_PREFIX = "rate_limit:"
LOGIN_ATTEMPTS_PREFIX = "login_attempts:"
LOGIN_LOCKOUT_PREFIX = "login_lockout:"
SMS_CODE_PREFIX = "sms_code:"
SMS_ATTEMPTS_PREFIX = "sms_attempts:"
REVOKED_TOKEN_PREFIX = "revoked_token:"
TOKEN_FAMILY_PREFIX = "token_family:"
TOKEN_FAMILY_ISSUED_PREFIX = "token_family_issued:"
PASSWORD_RESET_PREFIX = "password_reset:"


def token_digest(token: str) -> str:
    """Stable, fixed-length identifier for a token string.

    Raw tokens are never written to the cache.
    """
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def rate_limit_key(key: str) -> str:
    return RATE_LIMIT_PREFIX + key


def login_attempts_key(email: str) -> str:
    return LOGIN_ATTEMPTS_PREFIX + email


def login_lockout_key(email: str) -> str:
    return LOGIN_LOCKOUT_PREFIX + email


def sms_code_key(phone: str) -> str:
    return SMS_CODE_PREFIX + phone


def sms_attempts_key(phone: str) -> str:
    return SMS_ATTEMPTS_PREFIX + phone


def revoked_token_key(token: str) -> str:
    return REVOKED_TOKEN_PREFIX + token_digest(token)


def token_family_key(user_id: str) -> str:
    return TOKEN_FAMILY_PREFIX + str(user_id)


def issued_families_key(user_id: str) -> str:
    return TOKEN_FAMILY_ISSUED_PREFIX + str(user_id)


def password_reset_key(token: str) -> str:
    return PASSWORD_RESET_PREFIX + token_digest(token)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()
