from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class AccountStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    SUPERUSER = "SUPERUSER"


class Role(str, Enum):
    """Role a user holds inside a tenant."""

    SUPER_USER = "SUPER_USER"
    OWNER = "OWNER"
    ADMIN = "ADMIN"
    MANAGER = "MANAGER"
    EMPLOYEE = "EMPLOYEE"
    CLIENT = "CLIENT"
    SUPPLIER = "SUPPLIER"
    GUEST = "GUEST"


# Granted when a user belongs to no tenant yet
BASELINE_ROLE = Role.EMPLOYEE
# Skips the one-time-code step at login
BYPASS_ROLE = Role.SUPER_USER


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Credential:
    """Identity record as read by the authentication core."""

    id: str
    email: str
    password_hash: str
    phone: Optional[str] = None
    status: AccountStatus = AccountStatus.PENDING
    name: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        email: str,
        password_hash: str,
        *,
        phone: Optional[str] = None,
        name: Optional[str] = None,
        status: AccountStatus = AccountStatus.PENDING,
    ) -> "Credential":
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            password_hash=password_hash,
            phone=phone,
            name=name,
            status=status,
        )

    @property
    def is_inactive(self) -> bool:
        return self.status == AccountStatus.INACTIVE

    @property
    def has_phone(self) -> bool:
        return bool(self.phone and self.phone.strip())


@dataclass
class Membership:
    user_id: str
    tenant_id: str
    role: Role = BASELINE_ROLE
    is_default: bool = False
