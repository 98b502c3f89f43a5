from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalize naive timestamps (older rows, driver defaults) to aware UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class User:
    id: int
    email: str
    password_hash: Optional[str] = None
    provider_subject_id: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_oauth_user(self) -> bool:
        # Accounts created through the identity provider never get a password hash
        return self.password_hash is None


@dataclass
class RefreshToken:
    token: str
    user_id: int
    expiry_date: datetime
    revoked: bool = False
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls, user_id: int, ttl_minutes: int, *, now: Optional[datetime] = None
    ) -> "RefreshToken":
        issued = now or utcnow()
        return cls(
            token=secrets.token_urlsafe(48),
            user_id=user_id,
            expiry_date=issued + timedelta(minutes=ttl_minutes),
            revoked=False,
            created_at=issued,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) > as_utc(self.expiry_date)


@dataclass
class RefreshRotation:
    """Outcome of consuming a refresh token: ``rotated``, ``expired`` or ``not_found``."""

    outcome: str
    previous: Optional[RefreshToken] = None
    issued: Optional[RefreshToken] = None


@dataclass
class BlacklistEntry:
    token_id: str
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= as_utc(self.expires_at)


@dataclass
class RateLimitRecord:
    """Failure counter for one (caller address, endpoint class) pair."""

    failed_attempts: int = 0
    locked_until: Optional[datetime] = None
    window_started_at: datetime = field(default_factory=utcnow)
    last_activity: datetime = field(default_factory=utcnow)

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and now < self.locked_until


# Per-user domain tables in child-before-parent deletion order.
DOMAIN_TABLES: tuple[str, ...] = (
    "workout_set",
    "workout_session",
    "workout_template_exercise",
    "workout_template",
    "workout_plan_day",
    "workout_plan",
    "meal_food",
    "meal",
    "meal_plan",
    "custom_food",
    "body_metric",
    "goal",
    "user_profile",
)
