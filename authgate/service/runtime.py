from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from authgate.config import Settings, get_settings, reset_settings_cache
from authgate.logging import get_logger
from authgate.service.auth import AuthService, IdentityStore, MembershipResolver
from authgate.service.delivery import CodeDelivery, build_delivery
from authgate.service.email import build_email_delivery
from authgate.service.lockout import LockoutTracker
from authgate.service.otc import CodeDispatcher, OneTimeCodeVerifier
from authgate.service.rate_limit import RateLimiter
from authgate.service.revocation import TokenRevocationStore
from authgate.service.tokens import TokenService
from authgate.storage.common import CounterStore
from authgate.storage.memory import (
    MemoryCache,
    MemoryIdentityStore,
    MemoryMembershipResolver,
)
from authgate.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a connection URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        if parsed.username:
            netloc = f"{parsed.username}:***@{netloc}"
        else:
            netloc = f":***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


def build_cache(settings: Settings) -> CounterStore:
    """Pick the shared counter store: Redis, or the in-process fallback."""
    if settings.use_memory_cache or settings.test_mode:
        logger.info(
            "cache_backend_selected",
            backend="memory",
            reason="TEST_MODE" if settings.test_mode else "USE_MEMORY_CACHE",
        )
        return MemoryCache()

    redis_error: Exception | None = None
    if settings.redis_url:
        cache = RedisCache(
            settings.redis_url,
            socket_timeout=settings.store_operation_timeout_seconds,
            operation_timeout=settings.store_operation_timeout_seconds,
        )
        try:
            cache.verify_connection()
            logger.info(
                "cache_backend_selected",
                backend="redis",
                redis_url=_mask_url_password(settings.redis_url),
            )
            return cache
        except (RedisError, OSError) as exc:
            redis_error = exc

    if not settings.allow_redis_fallback_dev:
        raise RuntimeError(
            "Redis is required for lockout, one-time codes, rate limits and token revocation; "
            "start Redis or set ALLOW_REDIS_FALLBACK_DEV=true for a single-instance fallback."
        ) from redis_error
    logger.warning(
        "redis_disabled_fallback",
        redis_url=_mask_url_password(settings.redis_url),
        error=str(redis_error) if redis_error else "redis_url_missing",
        message=(
            "Running without Redis under ALLOW_REDIS_FALLBACK_DEV; counters and revocation "
            "marks are not shared between instances."
        ),
    )
    return MemoryCache()


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        cache: Optional[CounterStore] = None,
        identities: Optional[IdentityStore] = None,
        memberships: Optional[MembershipResolver] = None,
        delivery: Optional[CodeDelivery] = None,
        reset_delivery: Optional[CodeDelivery] = None,
    ):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_cache=self.settings.use_memory_cache,
            test_mode=self.settings.test_mode,
        )
        self.cache = cache if cache is not None else build_cache(self.settings)
        # Business entities live outside this subsystem; the in-memory
        # stores stand in until a persistent identity backend is wired.
        self.identities = identities if identities is not None else MemoryIdentityStore()
        self.memberships = (
            memberships if memberships is not None else MemoryMembershipResolver()
        )
        self.delivery = delivery if delivery is not None else build_delivery(self.settings)
        self.reset_delivery = (
            reset_delivery if reset_delivery is not None else build_email_delivery(self.settings)
        )

        self.rate_limiter = RateLimiter(self.cache)
        self.lockout = LockoutTracker(
            self.cache,
            max_attempts=self.settings.login_max_attempts,
            lockout_seconds=self.settings.login_lockout_minutes * 60,
        )
        self.codes = OneTimeCodeVerifier(
            self.cache,
            ttl_minutes=self.settings.sms_code_ttl_minutes,
            max_attempts=self.settings.sms_code_max_attempts,
            cooldown_seconds=self.settings.sms_code_cooldown_seconds,
        )
        self.dispatcher = CodeDispatcher(
            self.codes,
            self.delivery,
            app_name=self.settings.app_name,
            timeout=self.settings.delivery_timeout_seconds,
        )
        self.revocations = TokenRevocationStore(
            self.cache, default_lifetime_seconds=self.settings.longest_token_ttl_seconds
        )
        self.tokens = TokenService(self.settings, self.rate_limiter, self.revocations)
        self.auth = AuthService(
            self.settings,
            self.identities,
            self.memberships,
            store=self.cache,
            tokens=self.tokens,
            lockout=self.lockout,
            codes=self.dispatcher,
            reset_delivery=self.reset_delivery,
        )
        logger.info("runtime_init_completed", cache_type=type(self.cache).__name__)

    async def close(self) -> None:
        await self.delivery.close()
        await self.reset_delivery.close()
        await self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: the fast path skips the lock once the
    runtime exists, the slow path re-checks under the lock before creating.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(**overrides) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, RedisCache):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.close())
            except RuntimeError:
                asyncio.run(runtime.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings, **overrides)
        return runtime
