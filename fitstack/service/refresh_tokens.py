from __future__ import annotations

from datetime import datetime
from typing import Callable, List, Optional, Protocol

from fitstack.logging import get_logger
from fitstack.service.errors import RefreshTokenExpired, RefreshTokenNotFound
from fitstack.storage.models import RefreshRotation, RefreshToken, utcnow

logger = get_logger(__name__)


class RefreshTokenBackend(Protocol):
    def save_refresh_token(self, token: RefreshToken) -> RefreshToken: ...

    def get_refresh_token(self, token_value: str) -> Optional[RefreshToken]: ...

    def delete_refresh_token(self, token_value: str) -> bool: ...

    def rotate_refresh_token(
        self, token_value: str, ttl_minutes: int, *, now: Optional[datetime] = None
    ) -> RefreshRotation: ...

    def revoke_refresh_tokens(self, user_id: int) -> int: ...

    def delete_refresh_tokens(self, user_id: int) -> int: ...

    def list_refresh_tokens(self, user_id: int) -> List[RefreshToken]: ...

    def purge_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int: ...


class RefreshTokenStore:
    """Opaque rotating refresh tokens; at most one live token per user."""

    def __init__(
        self,
        backend: RefreshTokenBackend,
        *,
        ttl_minutes: int = 60 * 24 * 7,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self.backend = backend
        self.ttl_minutes = ttl_minutes
        self._now = now

    @property
    def ttl_seconds(self) -> int:
        return self.ttl_minutes * 60

    def issue(self, user_id: int) -> RefreshToken:
        token = RefreshToken.new(user_id, self.ttl_minutes, now=self._now())
        # The backend revokes the user's previous tokens in the same step
        return self.backend.save_refresh_token(token)

    def redeem(self, token_value: Optional[str]) -> RefreshToken:
        """Look up a live token without consuming it."""
        if not token_value:
            raise RefreshTokenNotFound()
        token = self.backend.get_refresh_token(token_value)
        if token is None:
            raise RefreshTokenNotFound()
        if token.is_expired(self._now()):
            self.backend.delete_refresh_token(token_value)
            raise RefreshTokenExpired()
        return token

    def rotate(self, token_value: Optional[str]) -> RefreshRotation:
        """Redeem, revoke and reissue as one atomic step.

        Of two concurrent calls with the same token exactly one succeeds; the
        other raises RefreshTokenNotFound.
        """
        if not token_value:
            raise RefreshTokenNotFound()
        rotation = self.backend.rotate_refresh_token(
            token_value, self.ttl_minutes, now=self._now()
        )
        if rotation.outcome == "expired":
            raise RefreshTokenExpired()
        if rotation.outcome != "rotated":
            raise RefreshTokenNotFound()
        logger.info("refresh_token_rotated", user_id=rotation.issued.user_id)
        return rotation

    def revoke_all(self, user_id: int) -> int:
        return self.backend.revoke_refresh_tokens(user_id)

    def delete_all(self, user_id: int) -> int:
        return self.backend.delete_refresh_tokens(user_id)

    def list_for_user(self, user_id: int) -> List[RefreshToken]:
        return self.backend.list_refresh_tokens(user_id)

    def purge_expired(self) -> int:
        return self.backend.purge_expired_refresh_tokens(self._now())
