import asyncio
import inspect
import os
import re
import sys
from pathlib import Path
from types import SimpleNamespace

# Configure the environment before any import that might build the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_CACHE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("SMS_PROVIDER", "log")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from authgate.config import Settings  # noqa: E402
from authgate.service.auth import AuthService  # noqa: E402
from authgate.service.delivery import DeliveryError  # noqa: E402
from authgate.service.lockout import LockoutTracker  # noqa: E402
from authgate.service.otc import CodeDispatcher, OneTimeCodeVerifier  # noqa: E402
from authgate.service.rate_limit import RateLimiter  # noqa: E402
from authgate.service.revocation import TokenRevocationStore  # noqa: E402
from authgate.service.runtime import reset_runtime_for_tests  # noqa: E402
from authgate.service.tokens import TokenService  # noqa: E402
from authgate.storage.memory import (  # noqa: E402
    MemoryCache,
    MemoryIdentityStore,
    MemoryMembershipResolver,
)

TEST_JWT_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"
_CODE_IN_MESSAGE = re.compile(r"code: (\d{6})\.")
_RESET_TOKEN_IN_MESSAGE = re.compile(r"password: (\S+)\. Valid")


class FakeClock:
    """Wall clock the tests move by hand."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _yielding(method):
    async def wrapper(self, *args, **kwargs):
        await asyncio.sleep(0)
        return await method(self, *args, **kwargs)

    return wrapper


class YieldingCache(MemoryCache):
    """Memory store that gives up the event loop before every operation.

    Interleaves concurrent coroutines the way round trips to a networked
    store would.
    """

    set = _yielding(MemoryCache.set)
    set_if_absent = _yielding(MemoryCache.set_if_absent)
    get = _yielding(MemoryCache.get)
    exists = _yielding(MemoryCache.exists)
    delete = _yielding(MemoryCache.delete)
    increment = _yielding(MemoryCache.increment)
    add_to_set = _yielding(MemoryCache.add_to_set)
    is_member = _yielding(MemoryCache.is_member)
    members = _yielding(MemoryCache.members)
    ttl = _yielding(MemoryCache.ttl)


class RecordingDelivery:
    """Delivery gateway that keeps every message and can be told to fail."""

    def __init__(self) -> None:
        self.sent = []
        self.fail = False

    async def send(self, destination: str, message: str) -> str:
        if self.fail:
            raise DeliveryError("gateway down")
        self.sent.append((destination, message))
        return f"rec-{len(self.sent)}"

    async def close(self) -> None:
        return None

    def last_code(self) -> str:
        return _CODE_IN_MESSAGE.search(self.sent[-1][1]).group(1)

    def last_reset_token(self) -> str:
        return _RESET_TOKEN_IN_MESSAGE.search(self.sent[-1][1]).group(1)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def settings():
    return Settings(test_mode=True, jwt_secret=TEST_JWT_SECRET)


@pytest.fixture
def env(settings, cache, clock):
    """Fully wired services over an in-memory cache and a fake clock."""
    identities = MemoryIdentityStore()
    memberships = MemoryMembershipResolver()
    delivery = RecordingDelivery()
    reset_delivery = RecordingDelivery()
    rate_limiter = RateLimiter(cache)
    lockout = LockoutTracker(
        cache,
        max_attempts=settings.login_max_attempts,
        lockout_seconds=settings.login_lockout_minutes * 60,
    )
    verifier = OneTimeCodeVerifier(
        cache,
        ttl_minutes=settings.sms_code_ttl_minutes,
        max_attempts=settings.sms_code_max_attempts,
        cooldown_seconds=settings.sms_code_cooldown_seconds,
    )
    dispatcher = CodeDispatcher(verifier, delivery, app_name=settings.app_name, timeout=1.0)
    revocations = TokenRevocationStore(
        cache, default_lifetime_seconds=settings.longest_token_ttl_seconds
    )
    tokens = TokenService(settings, rate_limiter, revocations, clock=clock)
    auth = AuthService(
        settings,
        identities,
        memberships,
        store=cache,
        tokens=tokens,
        lockout=lockout,
        codes=dispatcher,
        reset_delivery=reset_delivery,
    )
    return SimpleNamespace(
        settings=settings,
        clock=clock,
        cache=cache,
        identities=identities,
        memberships=memberships,
        delivery=delivery,
        reset_delivery=reset_delivery,
        rate_limiter=rate_limiter,
        lockout=lockout,
        verifier=verifier,
        dispatcher=dispatcher,
        revocations=revocations,
        tokens=tokens,
        auth=auth,
    )


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
