from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, List, Optional

from authgate.config import Settings
from authgate.logging import get_logger
from authgate.service.errors import (
    InvalidTokenError,
    RateLimitExceededError,
    StoreUnavailableError,
)
from authgate.service.rate_limit import RateLimiter
from authgate.service.revocation import TokenRevocationStore
from authgate.storage.errors import StoreUnavailable

logger = get_logger(__name__)

RATE_LIMIT_WINDOW_SECONDS = 60


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    TEMP = "temp"


@dataclass
class TokenClaims:
    """Verified token payload; the only token contract other code may rely on."""

    subject: str
    token_type: TokenKind
    issued_at: int
    expires_at: int
    roles: List[str] = field(default_factory=list)
    active_tenant_id: Optional[str] = None
    family_id: Optional[str] = None
    jti: Optional[str] = None

    @property
    def lifetime_seconds(self) -> int:
        return max(self.expires_at - self.issued_at, 1)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "TokenClaims":
        return cls(
            subject=str(payload["sub"]),
            token_type=TokenKind(payload["token_type"]),
            issued_at=int(payload["iat"]),
            expires_at=int(payload["exp"]),
            roles=list(payload.get("roles") or []),
            active_tenant_id=payload.get("active_tenant_id"),
            family_id=payload.get("fam"),
            jti=payload.get("jti"),
        )


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    refresh_expires_in: int
    roles: List[str] = field(default_factory=list)
    active_tenant_id: Optional[str] = None
    token_type: str = "bearer"
    family_id: Optional[str] = None


class TokenService:
    """Issues and validates signed access, refresh and temp tokens.

    Tokens are compact HS256 JWTs. Roles and the active tenant are captured
    at issuance and are not re-read on validation; membership changes show
    up only after the next refresh or login.
    """

    def __init__(
        self,
        settings: Settings,
        rate_limiter: RateLimiter,
        revocations: TokenRevocationStore,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.rate_limiter = rate_limiter
        self.revocations = revocations
        self._clock = clock
        self._secret = (settings.jwt_secret or "").encode()
        self._leeway = settings.token_clock_skew_seconds

    def lifetime(self, kind: TokenKind) -> int:
        if kind == TokenKind.ACCESS:
            return self.settings.access_token_ttl_seconds
        if kind == TokenKind.REFRESH:
            return self.settings.refresh_token_ttl_seconds
        return self.settings.temp_token_ttl_seconds

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    async def issue(
        self,
        kind: TokenKind,
        user_id: str,
        extra_claims: Optional[dict[str, Any]] = None,
        lifetime: Optional[int] = None,
        *,
        family_id: Optional[str] = None,
    ) -> str:
        allowed = await self.rate_limiter.allow(
            f"{kind.value}:{user_id}",
            self.settings.token_rate_limit_per_minute,
            RATE_LIMIT_WINDOW_SECONDS,
        )
        if not allowed:
            raise RateLimitExceededError(detail={"token_type": kind.value})
        now = int(self._clock())
        payload: dict[str, Any] = dict(extra_claims or {})
        payload.update(
            {
                "iss": self.settings.jwt_issuer,
                "aud": self.settings.jwt_audience,
                "sub": str(user_id),
                "token_type": kind.value,
                "jti": str(uuid.uuid4()),
                "fam": family_id or str(uuid.uuid4()),
                "iat": now,
                "exp": now + (lifetime or self.lifetime(kind)),
            }
        )
        return self._encode_jwt(payload)

    async def issue_temp(self, user_id: str) -> str:
        return await self.issue(TokenKind.TEMP, user_id)

    async def issue_pair(
        self,
        user_id: str,
        roles: Iterable[str],
        active_tenant_id: Optional[str] = None,
    ) -> TokenPair:
        """Mint an access+refresh pair sharing one family id."""
        family_id = str(uuid.uuid4())
        role_names = sorted({getattr(r, "value", r) for r in roles})
        access_claims: dict[str, Any] = {"roles": role_names}
        if active_tenant_id is not None:
            access_claims["active_tenant_id"] = active_tenant_id
        access_token = await self.issue(
            TokenKind.ACCESS, user_id, access_claims, family_id=family_id
        )
        refresh_token = await self.issue(TokenKind.REFRESH, user_id, family_id=family_id)
        try:
            await self.revocations.register_family(
                user_id, family_id, lifetime_seconds=self.lifetime(TokenKind.REFRESH)
            )
        except StoreUnavailable as exc:
            raise StoreUnavailableError() from exc
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.lifetime(TokenKind.ACCESS),
            refresh_expires_in=self.lifetime(TokenKind.REFRESH),
            roles=role_names,
            active_tenant_id=active_tenant_id,
            family_id=family_id,
        )

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _reject(self, reason: str, expected: TokenKind, **context: Any) -> InvalidTokenError:
        # The reason is for operators only; callers always get the same error
        logger.info("token_rejected", reason=reason, expected_kind=expected.value, **context)
        return InvalidTokenError()

    async def validate(self, token: str, expected_kind: TokenKind) -> TokenClaims:
        payload = self._decode_jwt(token) if token else None
        if payload is None:
            raise self._reject("signature_or_expiry", expected_kind)
        try:
            if await self.revocations.is_revoked(token):
                raise self._reject("revoked", expected_kind, user_id=payload.get("sub"))
            if payload.get("token_type") != expected_kind.value:
                raise self._reject(
                    "wrong_kind", expected_kind, presented=payload.get("token_type")
                )
            try:
                claims = TokenClaims.from_payload(payload)
            except (KeyError, TypeError, ValueError):
                raise self._reject("malformed_claims", expected_kind)
            if await self.revocations.is_family_revoked(
                claims.subject, token, claims.family_id
            ):
                raise self._reject("family_revoked", expected_kind, user_id=claims.subject)
        except StoreUnavailable as exc:
            # Fail closed: a revocation status we cannot read is treated as revoked
            raise self._reject("store_unavailable", expected_kind, error=str(exc)) from exc
        return claims

    async def validate_subject(self, token: str, expected_kind: TokenKind) -> str:
        claims = await self.validate(token, expected_kind)
        return claims.subject

    async def revoke(self, token: str, claims: TokenClaims, *, cascade: bool = True) -> None:
        """Revoke a validated token, and with ``cascade`` its whole family."""
        try:
            await self.revocations.revoke(
                token,
                claims.subject if cascade else None,
                lifetime_seconds=claims.lifetime_seconds,
                family_id=claims.family_id if cascade else None,
                family_lifetime_seconds=self.settings.longest_token_ttl_seconds,
            )
        except StoreUnavailable as exc:
            raise StoreUnavailableError() from exc

    async def redeem(self, token: str, claims: TokenClaims) -> bool:
        """Revoke a validated token and its family, once.

        Only the first caller gets True; concurrent or replayed redemptions
        of the same token get False, on this instance or any other.
        """
        try:
            return await self.revocations.claim(
                token,
                claims.subject,
                lifetime_seconds=claims.lifetime_seconds,
                family_id=claims.family_id,
                family_lifetime_seconds=self.settings.longest_token_ttl_seconds,
            )
        except StoreUnavailable as exc:
            raise StoreUnavailableError() from exc

    async def discard_pair(self, user_id: str, pair: TokenPair) -> None:
        """Revoke a pair that was minted but never handed out."""
        try:
            await self.revocations.revoke_family(
                user_id,
                pair.family_id,
                lifetime_seconds=self.settings.longest_token_ttl_seconds,
            )
        except StoreUnavailable as exc:
            raise StoreUnavailableError() from exc

    async def revoke_all_for_user(self, user_id: str) -> int:
        try:
            return await self.revocations.revoke_all_for_user(
                user_id, lifetime_seconds=self.settings.longest_token_ttl_seconds
            )
        except StoreUnavailable as exc:
            raise StoreUnavailableError() from exc

    # ------------------------------------------------------------------
    # JWS encoding
    # ------------------------------------------------------------------

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        """Verify signature, issuer, audience and expiry; no store access."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Pin the algorithm to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        if payload.get("aud") != self.settings.jwt_audience:
            return None
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return None
        if exp_ts <= self._clock() - self._leeway:
            return None
        return payload
