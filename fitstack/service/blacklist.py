from __future__ import annotations

import math
from datetime import datetime
from typing import Callable, Iterable, Optional, Protocol

from fitstack.logging import get_logger
from fitstack.storage.errors import BackendUnavailable
from fitstack.storage.models import as_utc, utcnow

logger = get_logger(__name__)


class DenylistBackend(Protocol):
    def denylist_token(self, token_id: str, ttl_seconds: int) -> None: ...

    def is_token_denylisted(self, token_id: str) -> bool: ...

    def denylist_size(self) -> int: ...

    def sweep_denylist(self) -> int: ...


class TokenBlacklist:
    """Revoked access-token ids, each kept until the token would expire anyway."""

    def __init__(
        self, backend: DenylistBackend, *, now: Callable[[], datetime] = utcnow
    ) -> None:
        self.backend = backend
        self._now = now

    def add(self, token_id: Optional[str], natural_expiry: Optional[datetime]) -> bool:
        """Blacklist ``token_id``; returns False when there is nothing to guard."""
        if not token_id or natural_expiry is None:
            return False
        ttl = math.ceil((as_utc(natural_expiry) - self._now()).total_seconds())
        if ttl <= 0:
            return False
        self.backend.denylist_token(token_id, ttl)
        logger.info("token_blacklisted", jti=token_id, ttl_seconds=ttl)
        return True

    def add_many(
        self, token_ids: Iterable[Optional[str]], natural_expiry: Optional[datetime]
    ) -> int:
        added = sum(1 for token_id in token_ids if self.add(token_id, natural_expiry))
        logger.info("tokens_blacklisted_bulk", count=added)
        return added

    def is_blacklisted(self, token_id: Optional[str]) -> bool:
        if not token_id:
            return False
        try:
            return self.backend.is_token_denylisted(token_id)
        except BackendUnavailable as exc:
            # Unknown revocation state: treat the token as revoked
            logger.error("blacklist_lookup_failed_closed", jti=token_id, error=str(exc))
            return True

    def size(self) -> int:
        return self.backend.denylist_size()

    def sweep(self) -> int:
        try:
            return self.backend.sweep_denylist()
        except BackendUnavailable as exc:
            logger.warning("blacklist_sweep_failed", error=str(exc))
            return 0
