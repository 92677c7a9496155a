"""Tests for the Redis-backed counter store with a mocked client."""
import asyncio
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from authgate.storage.errors import StoreUnavailable
from authgate.storage.redis_cache import RedisCache


@pytest.fixture
def redis_cache():
    cache = RedisCache("redis://localhost:6379/15", operation_timeout=0.05)
    cache.client = AsyncMock()
    cache._increment = AsyncMock(return_value=3)
    cache._add_to_set = AsyncMock(return_value=1)
    return cache


class TestCommands:
    async def test_set_clamps_ttl_to_one_second(self, redis_cache):
        await redis_cache.set("k", "v", 0)
        redis_cache.client.set.assert_awaited_once_with("k", "v", ex=1)

    async def test_set_if_absent_uses_nx(self, redis_cache):
        redis_cache.client.set.return_value = True

        assert await redis_cache.set_if_absent("k", "v", 30) is True
        redis_cache.client.set.assert_awaited_once_with("k", "v", ex=30, nx=True)

    async def test_set_if_absent_reports_existing_key(self, redis_cache):
        redis_cache.client.set.return_value = None

        assert await redis_cache.set_if_absent("k", "v", 30) is False

    async def test_get_and_exists(self, redis_cache):
        redis_cache.client.get.return_value = "v"
        redis_cache.client.exists.return_value = 1

        assert await redis_cache.get("k") == "v"
        assert await redis_cache.exists("k") is True

    async def test_increment_uses_script(self, redis_cache):
        assert await redis_cache.increment("c", 60, refresh_ttl=True) == 3
        redis_cache._increment.assert_awaited_once_with(keys=["c"], args=[60, "1"])

    async def test_increment_fixed_window(self, redis_cache):
        await redis_cache.increment("c", 60)
        redis_cache._increment.assert_awaited_once_with(keys=["c"], args=[60, "0"])

    async def test_add_to_set_uses_script(self, redis_cache):
        await redis_cache.add_to_set("s", "m", 120)
        redis_cache._add_to_set.assert_awaited_once_with(keys=["s"], args=["m", 120])

    async def test_members(self, redis_cache):
        redis_cache.client.smembers.return_value = {"a", "b"}
        assert await redis_cache.members("s") == {"a", "b"}

    async def test_delete_without_keys_skips_round_trip(self, redis_cache):
        assert await redis_cache.delete() == 0
        redis_cache.client.delete.assert_not_called()


class TestFailures:
    async def test_driver_error_becomes_store_unavailable(self, redis_cache):
        redis_cache.client.get.side_effect = RedisConnectionError("down")

        with pytest.raises(StoreUnavailable) as exc_info:
            await redis_cache.get("k")

        assert exc_info.value.operation == "get"
        assert isinstance(exc_info.value.error, RedisConnectionError)

    async def test_timeout_becomes_store_unavailable(self, redis_cache):
        async def _hang(*args, **kwargs):
            await asyncio.sleep(1)

        redis_cache.client.ttl = _hang

        with pytest.raises(StoreUnavailable):
            await redis_cache.ttl("k")

    async def test_os_error_becomes_store_unavailable(self, redis_cache):
        redis_cache._increment.side_effect = OSError("reset by peer")

        with pytest.raises(StoreUnavailable):
            await redis_cache.increment("c", 60)
