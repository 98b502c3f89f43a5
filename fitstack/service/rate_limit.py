from __future__ import annotations

from typing import Dict, Mapping, Protocol, Tuple

from fitstack.config import EndpointClass, LockoutPolicy
from fitstack.logging import get_logger
from fitstack.service.errors import RateLimitedError
from fitstack.storage.errors import BackendUnavailable

logger = get_logger(__name__)


class RateLimitBackend(Protocol):
    def record_failure(self, key: str, policy: LockoutPolicy) -> Tuple[int, int]: ...

    def lockout_remaining(self, key: str) -> int: ...

    def failed_attempts(self, key: str) -> int: ...

    def clear_rate_limit(self, key: str) -> None: ...

    def sweep_rate_limits(self, max_idle_seconds: int) -> int: ...


DEFAULT_POLICIES: Dict[EndpointClass, LockoutPolicy] = {
    EndpointClass.LOGIN: LockoutPolicy(threshold=5, lockout_seconds=15 * 60),
    EndpointClass.REGISTER: LockoutPolicy(threshold=3, lockout_seconds=60 * 60),
    EndpointClass.REFRESH: LockoutPolicy(threshold=10, lockout_seconds=5 * 60),
    EndpointClass.GENERAL: LockoutPolicy(threshold=100, lockout_seconds=60),
}

_BLOCKED_MESSAGES: Dict[EndpointClass, str] = {
    EndpointClass.LOGIN: "Too many failed attempts. Try again in {minutes} minutes.",
    EndpointClass.REGISTER: "Too many registration attempts. Try again in {minutes} minutes.",
    EndpointClass.REFRESH: "Too many refresh attempts. Try again in {minutes} minutes.",
    EndpointClass.GENERAL: "Too many requests. Try again in {minutes} minutes.",
}


class RateLimiter:
    """Per (caller address, endpoint class) failure counting with lockout.

    Lookups fail open: if the backend cannot be reached the caller is let
    through and a warning is logged. Throttling precision is traded for
    availability; credential checks still run.
    """

    def __init__(
        self,
        backend: RateLimitBackend,
        policies: Mapping[EndpointClass, LockoutPolicy] | None = None,
    ) -> None:
        self.backend = backend
        self.policies: Dict[EndpointClass, LockoutPolicy] = dict(DEFAULT_POLICIES)
        if policies:
            self.policies.update(policies)

    @staticmethod
    def _key(address: str, endpoint_class: EndpointClass) -> str:
        return f"{address}:{endpoint_class.value}"

    def policy(self, endpoint_class: EndpointClass) -> LockoutPolicy:
        return self.policies[endpoint_class]

    def remaining_lockout_seconds(self, address: str, endpoint_class: EndpointClass) -> int:
        try:
            return max(0, self.backend.lockout_remaining(self._key(address, endpoint_class)))
        except BackendUnavailable as exc:
            logger.warning(
                "rate_limit_lookup_failed_open",
                address=address,
                endpoint_class=endpoint_class.value,
                error=str(exc),
            )
            return 0

    def is_blocked(self, address: str, endpoint_class: EndpointClass) -> bool:
        return self.remaining_lockout_seconds(address, endpoint_class) > 0

    def record_failure(self, address: str, endpoint_class: EndpointClass) -> None:
        policy = self.policy(endpoint_class)
        try:
            attempts, remaining = self.backend.record_failure(
                self._key(address, endpoint_class), policy
            )
        except BackendUnavailable as exc:
            logger.warning(
                "rate_limit_record_failed",
                address=address,
                endpoint_class=endpoint_class.value,
                error=str(exc),
            )
            return
        if attempts == policy.threshold:
            logger.warning(
                "rate_limit_lockout_engaged",
                address=address,
                endpoint_class=endpoint_class.value,
                attempts=attempts,
                lockout_seconds=remaining,
            )

    def record_success(self, address: str, endpoint_class: EndpointClass) -> None:
        try:
            self.backend.clear_rate_limit(self._key(address, endpoint_class))
        except BackendUnavailable as exc:
            logger.warning(
                "rate_limit_clear_failed",
                address=address,
                endpoint_class=endpoint_class.value,
                error=str(exc),
            )

    def failed_attempts(self, address: str, endpoint_class: EndpointClass) -> int:
        try:
            return self.backend.failed_attempts(self._key(address, endpoint_class))
        except BackendUnavailable:
            return 0

    def remaining_attempts(self, address: str, endpoint_class: EndpointClass) -> int:
        return max(
            0, self.policy(endpoint_class).threshold - self.failed_attempts(address, endpoint_class)
        )

    def ensure_allowed(self, address: str, endpoint_class: EndpointClass) -> None:
        """Raise RateLimitedError while the address is locked out."""
        remaining = self.remaining_lockout_seconds(address, endpoint_class)
        if remaining <= 0:
            return
        logger.warning(
            "rate_limit_blocked",
            address=address,
            endpoint_class=endpoint_class.value,
            remaining_seconds=remaining,
        )
        message = _BLOCKED_MESSAGES[endpoint_class].format(minutes=remaining // 60 + 1)
        raise RateLimitedError(message, retry_after=remaining)

    def sweep(self) -> int:
        longest_window = max(p.lockout_seconds * 2 for p in self.policies.values())
        try:
            return self.backend.sweep_rate_limits(longest_window)
        except BackendUnavailable as exc:
            logger.warning("rate_limit_sweep_failed", error=str(exc))
            return 0
