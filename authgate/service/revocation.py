from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from authgate.logging import get_logger
from authgate.storage.common import (
    CounterStore,
    issued_families_key,
    revoked_token_key,
    token_digest,
    token_family_key,
)

logger = get_logger(__name__)

# Marks outlive the token they revoke so a revoked token can never become valid again
REVOCATION_TTL_FACTOR = 2


class TokenRevocationStore:
    """Cache-backed revocation marks for single tokens and token families.

    Revoked family members are kept per user in ``token_family:{user_id}``:
    both the token digest and, when known, the family id the token was minted
    under. Store errors propagate as ``StoreUnavailable``; the validator
    decides how to fail.
    """

    def __init__(self, store: CounterStore, *, default_lifetime_seconds: int) -> None:
        self.store = store
        self.default_lifetime_seconds = default_lifetime_seconds

    def _ttl(self, lifetime_seconds: Optional[int]) -> int:
        return REVOCATION_TTL_FACTOR * (lifetime_seconds or self.default_lifetime_seconds)

    async def _mark_family(
        self,
        user_id: str,
        token: str,
        family_id: Optional[str],
        token_ttl: int,
        family_lifetime_seconds: Optional[int],
    ) -> None:
        # A family outlives any single member: the refresh token minted beside
        # a revoked access token must stay rejected for its own full lifetime.
        family_ttl = max(token_ttl, self._ttl(family_lifetime_seconds))
        family_key = token_family_key(user_id)
        await self.store.add_to_set(family_key, token_digest(token), family_ttl)
        if family_id:
            await self.store.add_to_set(family_key, family_id, family_ttl)

    async def revoke(
        self,
        token: str,
        user_id: Optional[str] = None,
        *,
        lifetime_seconds: Optional[int] = None,
        family_id: Optional[str] = None,
        family_lifetime_seconds: Optional[int] = None,
    ) -> None:
        ttl = self._ttl(lifetime_seconds)
        await self.store.set(
            revoked_token_key(token), datetime.now(timezone.utc).isoformat(), ttl
        )
        if user_id is not None:
            await self._mark_family(user_id, token, family_id, ttl, family_lifetime_seconds)
        logger.debug(
            "token_revoked",
            user_id=user_id,
            family_id=family_id,
            ttl_seconds=ttl,
        )

    async def claim(
        self,
        token: str,
        user_id: str,
        *,
        lifetime_seconds: Optional[int] = None,
        family_id: Optional[str] = None,
        family_lifetime_seconds: Optional[int] = None,
    ) -> bool:
        """Revoke a token only if nobody revoked it first.

        Returns True for exactly one caller across every process sharing the
        store; that caller is the one allowed to act on the token.
        """
        ttl = self._ttl(lifetime_seconds)
        created = await self.store.set_if_absent(
            revoked_token_key(token), datetime.now(timezone.utc).isoformat(), ttl
        )
        if not created:
            logger.warning("token_claim_lost", user_id=user_id, family_id=family_id)
            return False
        await self._mark_family(user_id, token, family_id, ttl, family_lifetime_seconds)
        return True

    async def revoke_family(
        self, user_id: str, family_id: str, *, lifetime_seconds: Optional[int] = None
    ) -> None:
        await self.store.add_to_set(
            token_family_key(user_id), family_id, self._ttl(lifetime_seconds)
        )
        logger.debug("token_family_revoked", user_id=user_id, family_id=family_id)

    async def is_revoked(self, token: str) -> bool:
        return await self.store.exists(revoked_token_key(token))

    async def is_family_revoked(
        self, user_id: str, token: str, family_id: Optional[str] = None
    ) -> bool:
        family_key = token_family_key(user_id)
        if await self.store.is_member(family_key, token_digest(token)):
            return True
        if family_id:
            return await self.store.is_member(family_key, family_id)
        return False

    async def register_family(
        self, user_id: str, family_id: str, *, lifetime_seconds: Optional[int] = None
    ) -> None:
        """Remember a freshly minted family so a later bulk revocation can find it."""
        await self.store.add_to_set(
            issued_families_key(user_id), family_id, self._ttl(lifetime_seconds)
        )

    async def revoke_all_for_user(
        self, user_id: str, *, lifetime_seconds: Optional[int] = None
    ) -> int:
        """Revoke every family issued to the user that has not expired yet."""
        ttl = self._ttl(lifetime_seconds)
        families = await self.store.members(issued_families_key(user_id))
        family_key = token_family_key(user_id)
        for family_id in families:
            await self.store.add_to_set(family_key, family_id, ttl)
        await self.store.delete(issued_families_key(user_id))
        logger.info("user_tokens_revoked", user_id=user_id, families=len(families))
        return len(families)
