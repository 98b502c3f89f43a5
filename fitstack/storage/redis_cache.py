from __future__ import annotations

from typing import Optional, Tuple

from redis import Redis
from redis.exceptions import RedisError

from fitstack.config import LockoutPolicy
from fitstack.logging import get_logger
from fitstack.storage.errors import BackendUnavailable

_RATE_LIMIT_PREFIX = "ratelimit:"
_DENYLIST_PREFIX = "token:blacklist:"


class RedisCache:
    """Redis-backed rate-limit counters and access-token denylist."""

    # Atomic failure recording: KEYS[1]=attempts, KEYS[2]=lockout
    # ARGV[1]=threshold, ARGV[2]=lockout seconds, ARGV[3]=counter window seconds
    _RECORD_FAILURE_SCRIPT = """
local lock_ttl = redis.call('TTL', KEYS[2])
if lock_ttl > 0 then
  -- already locked: count the attempt, leave the lockout as it is
  local attempts = redis.call('INCR', KEYS[1])
  if attempts == 1 then
    redis.call('EXPIRE', KEYS[1], ARGV[3])
  end
  return {attempts, lock_ttl}
end

local threshold = tonumber(ARGV[1])
local previous = tonumber(redis.call('GET', KEYS[1]) or '0')
if previous >= threshold then
  -- the earlier lockout lapsed; start a fresh window
  redis.call('DEL', KEYS[1])
end

local attempts = redis.call('INCR', KEYS[1])
if attempts == 1 then
  redis.call('EXPIRE', KEYS[1], ARGV[3])
end

if attempts >= threshold then
  redis.call('SET', KEYS[2], '1', 'EX', ARGV[2], 'NX')
  return {attempts, tonumber(ARGV[2])}
end
return {attempts, 0}
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        client: Optional[Redis] = None,
    ) -> None:
        self.redis_url = redis_url
        self.logger = get_logger(__name__)
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._record_failure = self.client.register_script(self._RECORD_FAILURE_SCRIPT)

    @staticmethod
    def _attempts_key(key: str) -> str:
        return f"{_RATE_LIMIT_PREFIX}{key}:attempts"

    @staticmethod
    def _lockout_key(key: str) -> str:
        return f"{_RATE_LIMIT_PREFIX}{key}:lockout"

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        try:
            self.client.ping()
        except RedisError as exc:
            raise BackendUnavailable(str(exc)) from exc

    # Rate limiting -----------------------------------------------------------

    def record_failure(self, key: str, policy: LockoutPolicy) -> Tuple[int, int]:
        try:
            result = self._record_failure(
                keys=[self._attempts_key(key), self._lockout_key(key)],
                args=[policy.threshold, policy.lockout_seconds, policy.lockout_seconds * 2],
            )
        except RedisError as exc:
            raise BackendUnavailable(str(exc)) from exc
        return int(result[0]), int(result[1])

    def lockout_remaining(self, key: str) -> int:
        try:
            ttl = self.client.ttl(self._lockout_key(key))
        except RedisError as exc:
            raise BackendUnavailable(str(exc)) from exc
        return int(ttl) if ttl is not None and int(ttl) > 0 else 0

    def failed_attempts(self, key: str) -> int:
        try:
            value = self.client.get(self._attempts_key(key))
        except RedisError as exc:
            raise BackendUnavailable(str(exc)) from exc
        return int(value) if value else 0

    def clear_rate_limit(self, key: str) -> None:
        try:
            self.client.delete(self._attempts_key(key), self._lockout_key(key))
        except RedisError as exc:
            raise BackendUnavailable(str(exc)) from exc

    def sweep_rate_limits(self, max_idle_seconds: int) -> int:
        # Redis expires counters and lockouts natively
        return 0

    # Token denylist ----------------------------------------------------------

    def denylist_token(self, token_id: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        try:
            self.client.set(f"{_DENYLIST_PREFIX}{token_id}", "1", ex=ttl_seconds)
        except RedisError as exc:
            raise BackendUnavailable(str(exc)) from exc

    def is_token_denylisted(self, token_id: str) -> bool:
        try:
            return bool(self.client.exists(f"{_DENYLIST_PREFIX}{token_id}"))
        except RedisError as exc:
            raise BackendUnavailable(str(exc)) from exc

    def sweep_denylist(self) -> int:
        return 0

    def denylist_size(self) -> int:
        try:
            return sum(1 for _ in self.client.scan_iter(match=f"{_DENYLIST_PREFIX}*", count=500))
        except RedisError as exc:
            raise BackendUnavailable(str(exc)) from exc

    def close(self) -> None:
        self.client.close()
