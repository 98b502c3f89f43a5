from __future__ import annotations

import math
import threading
import zlib
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Tuple

from fitstack.config import LockoutPolicy
from fitstack.logging import get_logger
from fitstack.storage.models import BlacklistEntry, RateLimitRecord, utcnow

_LOCK_STRIPES = 64


class MemoryCache:
    """In-process rate-limit records and token denylist.

    Rate-limit updates for one key run under that key's stripe lock, so the
    increment, threshold comparison and lockout assignment happen as one step.
    Expired entries are removed by ``sweep_*`` or lazily on read.
    """

    def __init__(self, *, now: Callable[[], datetime] = utcnow) -> None:
        self.logger = get_logger(__name__)
        self._now = now
        self._records: Dict[str, RateLimitRecord] = {}
        self._stripes = [threading.Lock() for _ in range(_LOCK_STRIPES)]
        self._denylist: Dict[str, BlacklistEntry] = {}
        self._denylist_lock = threading.Lock()

    def _lock_for(self, key: str) -> threading.Lock:
        return self._stripes[zlib.crc32(key.encode()) % _LOCK_STRIPES]

    @staticmethod
    def _seconds_until(target: Optional[datetime], now: datetime) -> int:
        if target is None or now >= target:
            return 0
        return max(1, math.ceil((target - now).total_seconds()))

    @staticmethod
    def _is_stale(record: RateLimitRecord, policy: LockoutPolicy, now: datetime) -> bool:
        if record.locked_until is not None:
            return now >= record.locked_until
        window = timedelta(seconds=policy.lockout_seconds * 2)
        return now - record.window_started_at >= window

    # Rate limiting -----------------------------------------------------------

    def record_failure(self, key: str, policy: LockoutPolicy) -> Tuple[int, int]:
        """Count one failure; return (failed_attempts, remaining_lockout_seconds)."""
        with self._lock_for(key):
            now = self._now()
            record = self._records.get(key)
            if record is None or self._is_stale(record, policy, now):
                record = RateLimitRecord(window_started_at=now, last_activity=now)
                self._records[key] = record
            record.failed_attempts += 1
            record.last_activity = now
            # An active lockout is never pushed further out
            if record.failed_attempts >= policy.threshold and not record.is_locked(now):
                record.locked_until = now + timedelta(seconds=policy.lockout_seconds)
            return record.failed_attempts, self._seconds_until(record.locked_until, now)

    def lockout_remaining(self, key: str) -> int:
        with self._lock_for(key):
            record = self._records.get(key)
            if record is None:
                return 0
            return self._seconds_until(record.locked_until, self._now())

    def failed_attempts(self, key: str) -> int:
        with self._lock_for(key):
            record = self._records.get(key)
            return record.failed_attempts if record else 0

    def clear_rate_limit(self, key: str) -> None:
        with self._lock_for(key):
            self._records.pop(key, None)

    def get_record(self, key: str) -> Optional[RateLimitRecord]:
        with self._lock_for(key):
            return self._records.get(key)

    def sweep_rate_limits(self, max_idle_seconds: int) -> int:
        """Drop records with no active lockout and no activity for ``max_idle_seconds``."""
        now = self._now()
        idle = timedelta(seconds=max_idle_seconds)
        evicted = 0
        for key in list(self._records.keys()):
            with self._lock_for(key):
                record = self._records.get(key)
                if record is None or record.is_locked(now):
                    continue
                if now - record.last_activity >= idle or record.locked_until is not None:
                    self._records.pop(key, None)
                    evicted += 1
        return evicted

    # Token denylist ----------------------------------------------------------

    def denylist_token(self, token_id: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        with self._denylist_lock:
            self._denylist[token_id] = BlacklistEntry(
                token_id, self._now() + timedelta(seconds=ttl_seconds)
            )

    def is_token_denylisted(self, token_id: str) -> bool:
        with self._denylist_lock:
            entry = self._denylist.get(token_id)
            if entry is None:
                return False
            if entry.is_expired(self._now()):
                self._denylist.pop(token_id, None)
                return False
            return True

    def sweep_denylist(self) -> int:
        now = self._now()
        with self._denylist_lock:
            expired = [jti for jti, entry in self._denylist.items() if entry.is_expired(now)]
            for jti in expired:
                self._denylist.pop(jti, None)
        return len(expired)

    def denylist_size(self) -> int:
        self.sweep_denylist()
        with self._denylist_lock:
            return len(self._denylist)

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None
