from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from authgate.storage.common import TTL_MISSING, TTL_PERSISTENT, normalize_email
from authgate.storage.errors import ConstraintViolation
from authgate.storage.models import Credential, Membership, Role


class MemoryCache:
    """In-process counter/flag store for tests and single-instance dev runs.

    Mirrors the RedisCache contract including TTL semantics. State lives in
    this process only, so it must not back a multi-instance deployment.
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None) -> None:
        self._clock = clock or time.monotonic
        self._lock = threading.Lock()
        self._values: Dict[str, str] = {}
        self._sets: Dict[str, Set[str]] = {}
        self._expiry: Dict[str, float] = {}

    def _purge(self, key: str) -> None:
        deadline = self._expiry.get(key)
        if deadline is not None and deadline <= self._clock():
            self._values.pop(key, None)
            self._sets.pop(key, None)
            self._expiry.pop(key, None)

    def _present(self, key: str) -> bool:
        self._purge(key)
        return key in self._values or key in self._sets

    def _expire(self, key: str, ttl_seconds: int) -> None:
        self._expiry[key] = self._clock() + max(1, int(ttl_seconds))

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._sets.pop(key, None)
            self._values[key] = str(value)
            self._expire(key, ttl_seconds)

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        with self._lock:
            if self._present(key):
                return False
            self._values[key] = str(value)
            self._expire(key, ttl_seconds)
            return True

    async def get(self, key: str) -> str | None:
        with self._lock:
            self._purge(key)
            return self._values.get(key)

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._present(key)

    async def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._present(key):
                    removed += 1
                self._values.pop(key, None)
                self._sets.pop(key, None)
                self._expiry.pop(key, None)
        return removed

    async def increment(
        self, key: str, ttl_seconds: int, *, refresh_ttl: bool = False
    ) -> int:
        with self._lock:
            self._purge(key)
            value = int(self._values.get(key, "0")) + 1
            self._values[key] = str(value)
            if value == 1 or refresh_ttl:
                self._expire(key, ttl_seconds)
            return value

    async def add_to_set(self, key: str, member: str, ttl_seconds: int) -> None:
        with self._lock:
            self._purge(key)
            self._sets.setdefault(key, set()).add(member)
            wanted = self._clock() + max(1, int(ttl_seconds))
            if self._expiry.get(key, 0.0) < wanted:
                self._expiry[key] = wanted

    async def is_member(self, key: str, member: str) -> bool:
        with self._lock:
            self._purge(key)
            return member in self._sets.get(key, set())

    async def members(self, key: str) -> Set[str]:
        with self._lock:
            self._purge(key)
            return set(self._sets.get(key, set()))

    async def ttl(self, key: str) -> int:
        with self._lock:
            if not self._present(key):
                return TTL_MISSING
            if key not in self._expiry:
                return TTL_PERSISTENT
            remaining = self._expiry[key] - self._clock()
            # Redis rounds the remaining lifetime up to whole seconds
            return max(0, int(remaining + 0.999))

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        with self._lock:
            self._values.clear()
            self._sets.clear()
            self._expiry.clear()


class MemoryIdentityStore:
    """Minimal in-memory identity store keyed by user id and email."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.credentials: Dict[str, Credential] = {}
        self._by_email: Dict[str, str] = {}

    def find_by_email(self, email: str) -> Optional[Credential]:
        with self._lock:
            user_id = self._by_email.get(normalize_email(email))
            return self.credentials.get(user_id) if user_id else None

    def find_by_id(self, user_id: str) -> Optional[Credential]:
        with self._lock:
            return self.credentials.get(user_id)

    def exists_by_email(self, email: str) -> bool:
        return self.find_by_email(email) is not None

    def save(self, credential: Credential) -> Credential:
        email = normalize_email(credential.email)
        with self._lock:
            owner = self._by_email.get(email)
            if owner and owner != credential.id:
                raise ConstraintViolation("email already registered", {"field": "email"})
            credential.email = email
            self.credentials[credential.id] = credential
            self._by_email[email] = credential.id
        return credential


class MemoryMembershipResolver:
    """Tenant memberships held in memory."""

    def __init__(self, memberships: Iterable[Membership] = ()) -> None:
        self._lock = threading.Lock()
        self._memberships: Dict[Tuple[str, str], Membership] = {}
        for membership in memberships:
            self.add(membership)

    def add(self, membership: Membership) -> Membership:
        with self._lock:
            self._memberships[(membership.user_id, membership.tenant_id)] = membership
        return membership

    def remove(self, user_id: str, tenant_id: str) -> None:
        with self._lock:
            self._memberships.pop((user_id, tenant_id), None)

    def _for_user(self, user_id: str) -> List[Membership]:
        with self._lock:
            return [m for (uid, _), m in self._memberships.items() if uid == user_id]

    def roles_for_user(self, user_id: str) -> Set[Role]:
        return {m.role for m in self._for_user(user_id)}

    def default_tenant_for_user(self, user_id: str) -> Optional[str]:
        for membership in self._for_user(user_id):
            if membership.is_default:
                return membership.tenant_id
        return None

    def has_access(self, user_id: str, tenant_id: str) -> bool:
        with self._lock:
            return (user_id, tenant_id) in self._memberships
