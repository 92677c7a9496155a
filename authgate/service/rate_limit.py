from __future__ import annotations

from authgate.logging import get_logger
from authgate.service.errors import StoreUnavailableError
from authgate.storage.common import CounterStore, rate_limit_key
from authgate.storage.errors import StoreUnavailable

logger = get_logger(__name__)

DEFAULT_WINDOW_SECONDS = 60


class RateLimiter:
    """Fixed-window request counter per logical key.

    The first increment in a window sets the counter's TTL, so a burst that
    straddles a window boundary may admit up to twice the limit.
    """

    def __init__(self, store: CounterStore) -> None:
        self.store = store

    async def allow(
        self, key: str, limit: int, window_seconds: int = DEFAULT_WINDOW_SECONDS
    ) -> bool:
        if limit <= 0:
            return True
        if window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                key=key,
                window_seconds=window_seconds,
                default=DEFAULT_WINDOW_SECONDS,
            )
            window_seconds = DEFAULT_WINDOW_SECONDS
        try:
            count = await self.store.increment(rate_limit_key(key), window_seconds)
        except StoreUnavailable as exc:
            # Fail closed: an unreachable counter never admits the request
            logger.error("rate_limit_check_failed", key=key, error=str(exc))
            raise StoreUnavailableError() from exc
        allowed = count <= limit
        if not allowed:
            logger.warning("rate_limit_exceeded", key=key, count=count, limit=limit)
        return allowed
