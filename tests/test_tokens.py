"""Tests for token issuance and validation."""
import asyncio
import base64
import json
from unittest.mock import AsyncMock, patch

import pytest

from authgate.config import Settings
from authgate.service.errors import InvalidTokenError, RateLimitExceededError
from authgate.service.rate_limit import RateLimiter
from authgate.service.revocation import TokenRevocationStore
from authgate.service.tokens import TokenKind, TokenService
from authgate.storage.errors import StoreUnavailable

from conftest import TEST_JWT_SECRET, YieldingCache


def _payload(token: str) -> dict:
    segment = token.split(".")[1]
    return json.loads(base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4)))


def _forge(token: str, **changes) -> str:
    header, payload, sig = token.split(".")
    claims = _payload(token)
    claims.update(changes)
    body = base64.urlsafe_b64encode(json.dumps(claims).encode()).decode().rstrip("=")
    return f"{header}.{body}.{sig}"


class TestIssue:
    async def test_access_token_claims(self, env):
        token = await env.tokens.issue(
            TokenKind.ACCESS, "user-1", {"roles": ["ADMIN"], "active_tenant_id": "t1"}
        )

        claims = await env.tokens.validate(token, TokenKind.ACCESS)

        assert claims.subject == "user-1"
        assert claims.token_type is TokenKind.ACCESS
        assert claims.roles == ["ADMIN"]
        assert claims.active_tenant_id == "t1"
        assert claims.expires_at - claims.issued_at == 900
        assert claims.jti and claims.family_id

    async def test_default_lifetimes(self, env):
        for kind, lifetime in [
            (TokenKind.ACCESS, 900),
            (TokenKind.REFRESH, 7 * 24 * 3600),
            (TokenKind.TEMP, 600),
        ]:
            payload = _payload(await env.tokens.issue(kind, "user-1"))
            assert payload["exp"] - payload["iat"] == lifetime
            assert payload["iss"] == "authgate"
            assert payload["aud"] == "authgate-clients"

    async def test_rate_limited_per_kind_and_user(self, cache, clock):
        settings = Settings(
            test_mode=True, jwt_secret=TEST_JWT_SECRET, token_rate_limit_per_minute=2
        )
        tokens = TokenService(
            settings,
            RateLimiter(cache),
            TokenRevocationStore(cache, default_lifetime_seconds=900),
            clock=clock,
        )
        await tokens.issue(TokenKind.ACCESS, "user-1")
        await tokens.issue(TokenKind.ACCESS, "user-1")

        with pytest.raises(RateLimitExceededError):
            await tokens.issue(TokenKind.ACCESS, "user-1")
        # Other kinds and users have their own windows
        await tokens.issue(TokenKind.REFRESH, "user-1")
        await tokens.issue(TokenKind.ACCESS, "user-2")

        clock.advance(61)
        await tokens.issue(TokenKind.ACCESS, "user-1")

    async def test_pair_shares_family_and_registers_it(self, env, cache):
        pair = await env.tokens.issue_pair("user-1", ["EMPLOYEE"], "t1")

        access = _payload(pair.access_token)
        refresh = _payload(pair.refresh_token)
        assert access["fam"] == refresh["fam"]
        assert "roles" not in refresh
        assert pair.expires_in == 900
        assert access["fam"] in await cache.members("token_family_issued:user-1")


class TestValidate:
    async def test_wrong_kind_rejected(self, env):
        token = await env.tokens.issue(TokenKind.REFRESH, "user-1")

        with pytest.raises(InvalidTokenError):
            await env.tokens.validate(token, TokenKind.ACCESS)

    async def test_expired_token_rejected_after_leeway(self, env, clock):
        token = await env.tokens.issue(TokenKind.TEMP, "user-1")

        clock.advance(600 + 20)
        assert (await env.tokens.validate(token, TokenKind.TEMP)).subject == "user-1"
        clock.advance(20)
        with pytest.raises(InvalidTokenError):
            await env.tokens.validate(token, TokenKind.TEMP)

    async def test_tampered_payload_rejected(self, env):
        token = await env.tokens.issue(TokenKind.ACCESS, "user-1", {"roles": ["EMPLOYEE"]})

        with pytest.raises(InvalidTokenError):
            await env.tokens.validate(_forge(token, roles=["SUPER_USER"]), TokenKind.ACCESS)

    async def test_algorithm_none_rejected(self, env):
        token = await env.tokens.issue(TokenKind.ACCESS, "user-1")
        header = base64.urlsafe_b64encode(b'{"alg":"none","typ":"JWT"}').decode().rstrip("=")
        _, payload, _ = token.split(".")

        with pytest.raises(InvalidTokenError):
            await env.tokens.validate(f"{header}.{payload}.", TokenKind.ACCESS)

    async def test_foreign_secret_rejected(self, env, cache):
        other = TokenService(
            Settings(test_mode=True, jwt_secret="another-secret-that-is-long-enough-0123456789"),
            RateLimiter(cache),
            env.revocations,
        )
        token = await other.issue(TokenKind.ACCESS, "user-1")

        with pytest.raises(InvalidTokenError):
            await env.tokens.validate(token, TokenKind.ACCESS)

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c.d", "x.y.z"])
    async def test_garbage_rejected(self, env, garbage):
        with pytest.raises(InvalidTokenError):
            await env.tokens.validate(garbage, TokenKind.ACCESS)

    async def test_revoked_token_rejected_for_every_kind(self, env):
        token = await env.tokens.issue(TokenKind.ACCESS, "user-1")
        claims = await env.tokens.validate(token, TokenKind.ACCESS)

        await env.tokens.revoke(token, claims, cascade=False)

        for kind in TokenKind:
            with pytest.raises(InvalidTokenError):
                await env.tokens.validate(token, kind)

    async def test_family_cascade_kills_sibling(self, env):
        pair = await env.tokens.issue_pair("user-1", ["EMPLOYEE"])
        claims = await env.tokens.validate(pair.access_token, TokenKind.ACCESS)

        await env.tokens.revoke(pair.access_token, claims)

        with pytest.raises(InvalidTokenError):
            await env.tokens.validate(pair.refresh_token, TokenKind.REFRESH)

    async def test_revoke_all_for_user(self, env):
        first = await env.tokens.issue_pair("user-1", ["EMPLOYEE"])
        second = await env.tokens.issue_pair("user-1", ["EMPLOYEE"])
        other_user = await env.tokens.issue_pair("user-2", ["EMPLOYEE"])

        assert await env.tokens.revoke_all_for_user("user-1") == 2

        for token in (first.access_token, second.refresh_token):
            kind = TokenKind(_payload(token)["token_type"])
            with pytest.raises(InvalidTokenError):
                await env.tokens.validate(token, kind)
        await env.tokens.validate(other_user.access_token, TokenKind.ACCESS)

    async def test_store_failure_fails_closed(self, env):
        token = await env.tokens.issue(TokenKind.ACCESS, "user-1")
        env.tokens.revocations = AsyncMock()
        env.tokens.revocations.is_revoked = AsyncMock(side_effect=StoreUnavailable("exists"))

        with pytest.raises(InvalidTokenError):
            await env.tokens.validate(token, TokenKind.ACCESS)

    async def test_rejection_reason_is_logged_not_raised(self, env):
        token = await env.tokens.issue(TokenKind.REFRESH, "user-1")

        with patch("authgate.service.tokens.logger") as mock_logger:
            with pytest.raises(InvalidTokenError) as exc_info:
                await env.tokens.validate(token, TokenKind.ACCESS)

        assert "wrong_kind" not in str(exc_info.value)
        call_args = mock_logger.info.call_args
        assert call_args[0][0] == "token_rejected"
        assert call_args[1]["reason"] == "wrong_kind"

    async def test_validate_subject(self, env):
        token = await env.tokens.issue(TokenKind.TEMP, "user-9")
        assert await env.tokens.validate_subject(token, TokenKind.TEMP) == "user-9"


class TestRevocationAcrossTime:
    async def test_cascade_holds_until_refresh_expires(self, env, clock):
        pair = await env.tokens.issue_pair("user-1", ["EMPLOYEE"])
        claims = await env.tokens.validate(pair.access_token, TokenKind.ACCESS)

        await env.tokens.revoke(pair.access_token, claims)

        # The access token's own mark is gone by now; the family mark is not
        clock.advance(2 * 900 + 60)
        with pytest.raises(InvalidTokenError):
            await env.tokens.validate(pair.refresh_token, TokenKind.REFRESH)
        clock.advance(7 * 24 * 3600 - 2 * 900 - 120)
        with pytest.raises(InvalidTokenError):
            await env.tokens.validate(pair.refresh_token, TokenKind.REFRESH)

    async def test_revocation_is_shared_between_instances(self, env, cache, clock):
        other = TokenService(
            env.settings,
            RateLimiter(cache),
            TokenRevocationStore(
                cache, default_lifetime_seconds=env.settings.longest_token_ttl_seconds
            ),
            clock=clock,
        )
        pair = await env.tokens.issue_pair("user-1", ["EMPLOYEE"])
        claims = await other.validate(pair.access_token, TokenKind.ACCESS)

        await other.revoke(pair.access_token, claims)

        with pytest.raises(InvalidTokenError):
            await env.tokens.validate(pair.access_token, TokenKind.ACCESS)
        with pytest.raises(InvalidTokenError):
            await env.tokens.validate(pair.refresh_token, TokenKind.REFRESH)


class TestRedeem:
    @pytest.fixture
    def cache(self, clock):
        return YieldingCache(clock=clock)

    async def test_only_one_concurrent_redemption_wins(self, env):
        pair = await env.tokens.issue_pair("user-1", ["EMPLOYEE"])
        claims = await env.tokens.validate(pair.refresh_token, TokenKind.REFRESH)

        outcomes = await asyncio.gather(
            env.tokens.redeem(pair.refresh_token, claims),
            env.tokens.redeem(pair.refresh_token, claims),
        )

        assert sorted(outcomes) == [False, True]
        with pytest.raises(InvalidTokenError):
            await env.tokens.validate(pair.access_token, TokenKind.ACCESS)

    async def test_discarded_pair_is_rejected(self, env):
        pair = await env.tokens.issue_pair("user-1", ["EMPLOYEE"])

        await env.tokens.discard_pair("user-1", pair)

        with pytest.raises(InvalidTokenError):
            await env.tokens.validate(pair.access_token, TokenKind.ACCESS)
        with pytest.raises(InvalidTokenError):
            await env.tokens.validate(pair.refresh_token, TokenKind.REFRESH)
