from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Callable, Optional, Union
from urllib.parse import urlparse, urlunparse

from argon2 import PasswordHasher, Type

from fitstack.config import Settings, get_settings, reset_settings_cache
from fitstack.logging import get_logger
from fitstack.service.blacklist import TokenBlacklist
from fitstack.service.data_deletion import UserDataDeletionService, default_repositories
from fitstack.service.oauth import IdentityProviderVerifier
from fitstack.service.passwords import CredentialVerifier
from fitstack.service.rate_limit import RateLimiter
from fitstack.service.refresh_tokens import RefreshTokenStore
from fitstack.service.session import SessionService
from fitstack.service.tokens import TokenCodec
from fitstack.storage.memory import MemoryStore
from fitstack.storage.memory_cache import MemoryCache
from fitstack.storage.models import utcnow
from fitstack.storage.postgres import PostgresStore
from fitstack.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a DSN for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings or get_settings()
        self.now = now
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            use_memory_cache=self.settings.use_memory_cache,
            test_mode=self.settings.test_mode,
        )

        # Fails fast on a missing or short signing key before any backend is opened
        self.codec = TokenCodec(
            self.settings.jwt_secret, issuer=self.settings.jwt_issuer, now=now
        )

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info(
            "runtime_store_initialized",
            store_type="memory" if self.settings.use_memory_store else "postgres",
        )

        self.cache = self._init_cache()

        self.rate_limiter = RateLimiter(self.cache, self.settings.lockout_policies())
        self.blacklist = TokenBlacklist(self.cache, now=now)
        self.refresh_tokens = RefreshTokenStore(
            self.store, ttl_minutes=self.settings.refresh_token_ttl_minutes, now=now
        )
        self.credentials = (
            CredentialVerifier.for_tests()
            if self.settings.test_mode
            else CredentialVerifier(PasswordHasher(type=Type.ID))
        )
        self.oauth = IdentityProviderVerifier(
            self.settings.oauth_google_client_id,
            tokeninfo_url=self.settings.oauth_tokeninfo_url,
            timeout_seconds=self.settings.oauth_timeout_seconds,
            max_retries=self.settings.oauth_max_retries,
        )
        self.data_deletion = UserDataDeletionService(default_repositories(self.store))
        self.session = SessionService(
            self.store,
            codec=self.codec,
            refresh_tokens=self.refresh_tokens,
            blacklist=self.blacklist,
            rate_limiter=self.rate_limiter,
            credentials=self.credentials,
            oauth=self.oauth,
            data_deletion=self.data_deletion,
            access_ttl=timedelta(minutes=self.settings.access_token_ttl_minutes),
            remember_me_ttl=timedelta(minutes=self.settings.remember_me_ttl_minutes),
        )
        logger.info("runtime_init_completed")

    def _init_cache(self) -> Union[MemoryCache, RedisCache]:
        if self.settings.use_memory_cache or not self.settings.redis_url:
            if not self.settings.use_memory_cache and not self.settings.test_mode:
                raise RuntimeError(
                    "REDIS_URL is required for rate limits and the token blacklist; "
                    "set USE_MEMORY_CACHE=true to keep them in-process."
                )
            return MemoryCache(now=self.now)
        try:
            cache = RedisCache(self.settings.redis_url)
            cache.verify_connection()
            return cache
        except Exception as exc:
            if not self.settings.test_mode:
                raise RuntimeError(
                    "Redis is unreachable; start Redis or set USE_MEMORY_CACHE=true."
                ) from exc
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(exc),
                mode="TEST_MODE",
            )
            return MemoryCache(now=self.now)

    def sweep(self) -> dict[str, int]:
        """Evict stale limiter records, lapsed blacklist entries and expired refresh tokens."""
        result = {
            "rate_limit_records": self.rate_limiter.sweep(),
            "blacklist_entries": self.blacklist.sweep(),
            "refresh_tokens": self.refresh_tokens.purge_expired(),
        }
        logger.info("runtime_sweep_completed", **result)
        return result

    def close(self) -> None:
        self.oauth.close()
        self.cache.close()
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking pattern for efficiency:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent race condition during creation
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
