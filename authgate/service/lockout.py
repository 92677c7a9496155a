from __future__ import annotations

from authgate.logging import get_logger, mask_email
from authgate.service.errors import StoreUnavailableError
from authgate.storage.common import (
    CounterStore,
    login_attempts_key,
    login_lockout_key,
    normalize_email,
)
from authgate.storage.errors import StoreUnavailable

logger = get_logger(__name__)


class LockoutTracker:
    """Failed-login counter and lockout flag per account email.

    The counter's TTL slides with every failure; once it reaches
    ``max_attempts`` a separate flag with the same window is written and
    ``is_locked`` only looks at that flag.
    """

    def __init__(
        self, store: CounterStore, *, max_attempts: int = 5, lockout_seconds: int = 900
    ) -> None:
        self.store = store
        self.max_attempts = max_attempts
        self.lockout_seconds = lockout_seconds

    async def record_failure(self, email: str) -> int:
        account = normalize_email(email)
        try:
            failures = await self.store.increment(
                login_attempts_key(account), self.lockout_seconds, refresh_ttl=True
            )
            if failures >= self.max_attempts:
                await self.store.set(
                    login_lockout_key(account), "1", self.lockout_seconds
                )
                logger.warning(
                    "lockout_triggered",
                    email=mask_email(account),
                    failures=failures,
                    lockout_seconds=self.lockout_seconds,
                )
        except StoreUnavailable as exc:
            raise StoreUnavailableError() from exc
        logger.info("login_failure_recorded", email=mask_email(account), failures=failures)
        return failures

    async def is_locked(self, email: str) -> bool:
        try:
            return await self.store.exists(login_lockout_key(normalize_email(email)))
        except StoreUnavailable as exc:
            # Fail closed: treat an unverifiable lockout as locked
            logger.error("lockout_check_failed", error=str(exc))
            raise StoreUnavailableError() from exc

    async def remaining_seconds(self, email: str) -> int:
        try:
            remaining = await self.store.ttl(login_lockout_key(normalize_email(email)))
        except StoreUnavailable as exc:
            raise StoreUnavailableError() from exc
        return max(remaining, 0)

    async def reset(self, email: str) -> None:
        account = normalize_email(email)
        try:
            await self.store.delete(login_attempts_key(account), login_lockout_key(account))
        except StoreUnavailable as exc:
            raise StoreUnavailableError() from exc
        logger.debug("login_attempts_reset", email=mask_email(account))
