import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace
from typing import Callable, Optional

# Configure the environment before any import that might build the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("USE_MEMORY_CACHE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("OAUTH_GOOGLE_CLIENT_ID", "test-client-id.apps.example.com")

import httpx  # noqa: E402
import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from fitstack.config import LockoutPolicy  # noqa: E402
from fitstack.service.blacklist import TokenBlacklist  # noqa: E402
from fitstack.service.data_deletion import (  # noqa: E402
    UserDataDeletionService,
    default_repositories,
)
from fitstack.service.oauth import IdentityProviderVerifier  # noqa: E402
from fitstack.service.passwords import CredentialVerifier  # noqa: E402
from fitstack.service.rate_limit import RateLimiter  # noqa: E402
from fitstack.service.refresh_tokens import RefreshTokenStore  # noqa: E402
from fitstack.service.runtime import reset_runtime_for_tests  # noqa: E402
from fitstack.service.session import SessionService  # noqa: E402
from fitstack.service.tokens import TokenCodec  # noqa: E402
from fitstack.storage.memory import MemoryStore  # noqa: E402
from fitstack.storage.memory_cache import MemoryCache  # noqa: E402

TEST_SECRET = os.environ["JWT_SECRET"]
TEST_CLIENT_ID = os.environ["OAUTH_GOOGLE_CLIENT_ID"]


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


class FakeClock:
    """Manually advanced UTC clock injected into time-dependent components."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.current = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


def tokeninfo_handler(
    *, email: str, aud: str = TEST_CLIENT_ID, sub: Optional[str] = None
) -> Callable[[httpx.Request], httpx.Response]:
    def handler(request: httpx.Request) -> httpx.Response:
        payload = {"aud": aud, "azp": aud, "email": email}
        if sub is not None:
            payload["sub"] = sub
        return httpx.Response(200, json=payload)

    return handler


def build_services(
    clock: FakeClock,
    *,
    oauth_handler: Optional[Callable[[httpx.Request], httpx.Response]] = None,
    max_retries: int = 2,
) -> SimpleNamespace:
    store = MemoryStore()
    cache = MemoryCache(now=clock)
    codec = TokenCodec(TEST_SECRET, now=clock)
    refresh_tokens = RefreshTokenStore(store, ttl_minutes=60 * 24 * 7, now=clock)
    blacklist = TokenBlacklist(cache, now=clock)
    rate_limiter = RateLimiter(cache)
    transport = httpx.MockTransport(
        oauth_handler or tokeninfo_handler(email="nobody@example.com")
    )
    oauth = IdentityProviderVerifier(
        TEST_CLIENT_ID,
        max_retries=max_retries,
        client=httpx.Client(transport=transport),
    )
    session = SessionService(
        store,
        codec=codec,
        refresh_tokens=refresh_tokens,
        blacklist=blacklist,
        rate_limiter=rate_limiter,
        credentials=CredentialVerifier.for_tests(),
        oauth=oauth,
        data_deletion=UserDataDeletionService(default_repositories(store)),
        access_ttl=timedelta(hours=24),
        remember_me_ttl=timedelta(days=30),
    )
    return SimpleNamespace(
        store=store,
        cache=cache,
        codec=codec,
        refresh_tokens=refresh_tokens,
        blacklist=blacklist,
        rate_limiter=rate_limiter,
        oauth=oauth,
        session=session,
        clock=clock,
    )


@pytest.fixture
def services(clock):
    return build_services(clock)


@pytest.fixture
def login_policy():
    return LockoutPolicy(threshold=5, lockout_seconds=900)
