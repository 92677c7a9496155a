from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Set

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from authgate.logging import get_logger
from authgate.storage.errors import StoreUnavailable

logger = get_logger(__name__)


class RedisCache:
    """Thin Redis wrapper for counters, flags and revocation sets.

    Every command is bounded by ``operation_timeout`` and any driver failure
    surfaces as :class:`StoreUnavailable`.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0  # seconds

    # INCR and EXPIRE in one step so a counter never lives without a TTL.
    # ARGV[2] == "1" refreshes the TTL on every increment (sliding expiry).
    _INCREMENT_SCRIPT = """
local value = redis.call('INCR', KEYS[1])
if value == 1 or ARGV[2] == '1' then
  redis.call('EXPIRE', KEYS[1], tonumber(ARGV[1]))
end
return value
"""

    # Only ever extend a set's TTL: members added earlier may belong to
    # longer-lived tokens than the one being added now.
    _ADD_TO_SET_SCRIPT = """
redis.call('SADD', KEYS[1], ARGV[1])
local ttl = redis.call('TTL', KEYS[1])
local wanted = tonumber(ARGV[2])
if ttl < wanted then
  redis.call('EXPIRE', KEYS[1], wanted)
end
return 1
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        operation_timeout: float | None = None,
    ):
        self.redis_url = redis_url
        self.operation_timeout = operation_timeout or self.DEFAULT_OPERATION_TIMEOUT
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._increment = self.client.register_script(self._INCREMENT_SCRIPT)
        self._add_to_set = self.client.register_script(self._ADD_TO_SET_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async one is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def _run(self, operation: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.operation_timeout)
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            logger.error(
                "cache_operation_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StoreUnavailable(operation, exc) from exc

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._run("set", self.client.set(key, value, ex=max(1, int(ttl_seconds))))

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        created = await self._run(
            "set_if_absent",
            self.client.set(key, value, ex=max(1, int(ttl_seconds)), nx=True),
        )
        return bool(created)

    async def get(self, key: str) -> str | None:
        return await self._run("get", self.client.get(key))

    async def exists(self, key: str) -> bool:
        return bool(await self._run("exists", self.client.exists(key)))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._run("delete", self.client.delete(*keys)))

    async def increment(
        self, key: str, ttl_seconds: int, *, refresh_ttl: bool = False
    ) -> int:
        result = await self._run(
            "increment",
            self._increment(
                keys=[key],
                args=[max(1, int(ttl_seconds)), "1" if refresh_ttl else "0"],
            ),
        )
        return int(result)

    async def add_to_set(self, key: str, member: str, ttl_seconds: int) -> None:
        await self._run(
            "add_to_set",
            self._add_to_set(keys=[key], args=[member, max(1, int(ttl_seconds))]),
        )

    async def is_member(self, key: str, member: str) -> bool:
        return bool(await self._run("is_member", self.client.sismember(key, member)))

    async def members(self, key: str) -> Set[str]:
        return set(await self._run("members", self.client.smembers(key)))

    async def ttl(self, key: str) -> int:
        return int(await self._run("ttl", self.client.ttl(key)))

    async def ping(self) -> bool:
        return bool(await self._run("ping", self.client.ping()))

    async def close(self) -> None:
        await self.client.aclose()
