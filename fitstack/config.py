from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from fitstack.logging import get_logger

logger = get_logger(__name__)


class EndpointClass(str, Enum):
    """Groups of endpoints that share one failure counter per caller address."""

    LOGIN = "LOGIN"
    REGISTER = "REGISTER"
    REFRESH = "REFRESH"
    GENERAL = "GENERAL"


@dataclass(frozen=True)
class LockoutPolicy:
    """Failure threshold and lockout window for one endpoint class."""

    threshold: int
    lockout_seconds: int


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth and throttling core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/fitstack", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    use_memory_cache: bool = env_field(
        False,
        "USE_MEMORY_CACHE",
        description="Keep rate-limit counters and the token denylist in-process instead of Redis",
    )
    test_mode: bool = env_field(False, "TEST_MODE")

    # Token settings
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("fitstack", "JWT_ISSUER")
    access_token_ttl_minutes: int = env_field(
        60 * 24, "ACCESS_TOKEN_TTL_MINUTES", description="Standard access token TTL"
    )
    remember_me_ttl_minutes: int = env_field(
        60 * 24 * 30,
        "REMEMBER_ME_TTL_MINUTES",
        description="Access token TTL when the caller asks to be remembered",
    )
    refresh_token_ttl_minutes: int = env_field(
        60 * 24 * 7, "REFRESH_TOKEN_TTL_MINUTES"
    )

    # Per-endpoint lockout policy
    rate_limit_login_threshold: int = env_field(5, "RATE_LIMIT_LOGIN_THRESHOLD")
    rate_limit_login_lockout_seconds: int = env_field(
        15 * 60, "RATE_LIMIT_LOGIN_LOCKOUT_SECONDS"
    )
    rate_limit_register_threshold: int = env_field(3, "RATE_LIMIT_REGISTER_THRESHOLD")
    rate_limit_register_lockout_seconds: int = env_field(
        60 * 60, "RATE_LIMIT_REGISTER_LOCKOUT_SECONDS"
    )
    rate_limit_refresh_threshold: int = env_field(10, "RATE_LIMIT_REFRESH_THRESHOLD")
    rate_limit_refresh_lockout_seconds: int = env_field(
        5 * 60, "RATE_LIMIT_REFRESH_LOCKOUT_SECONDS"
    )
    rate_limit_general_threshold: int = env_field(100, "RATE_LIMIT_GENERAL_THRESHOLD")
    rate_limit_general_lockout_seconds: int = env_field(
        60, "RATE_LIMIT_GENERAL_LOCKOUT_SECONDS"
    )

    # Identity provider introspection
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_tokeninfo_url: str = env_field(
        "https://www.googleapis.com/oauth2/v3/tokeninfo", "OAUTH_TOKENINFO_URL"
    )
    oauth_timeout_seconds: float = env_field(5.0, "OAUTH_TIMEOUT_SECONDS")
    oauth_max_retries: int = env_field(2, "OAUTH_MAX_RETRIES")

    # Maintenance
    sweep_interval_seconds: int = env_field(
        300,
        "SWEEP_INTERVAL_SECONDS",
        description="How often stale limiter records, denylist entries and expired refresh tokens are purged",
    )

    # HTTP boundary
    trusted_proxy_ips: list[str] = env_field([], "TRUSTED_PROXY_IPS")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("trusted_proxy_ips", "cors_allow_origins", mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator(
        "access_token_ttl_minutes",
        "remember_me_ttl_minutes",
        "refresh_token_ttl_minutes",
        "rate_limit_login_threshold",
        "rate_limit_login_lockout_seconds",
        "rate_limit_register_threshold",
        "rate_limit_register_lockout_seconds",
        "rate_limit_refresh_threshold",
        "rate_limit_refresh_lockout_seconds",
        "rate_limit_general_threshold",
        "rate_limit_general_lockout_seconds",
        "sweep_interval_seconds",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("oauth_max_retries")
    @classmethod
    def _non_negative_retries(cls, value: int) -> int:
        if value < 0:
            raise ValueError("oauth_max_retries cannot be negative")
        return value

    def lockout_policies(self) -> dict[EndpointClass, LockoutPolicy]:
        """Build the endpoint-class policy table from the configured pairs."""
        return {
            endpoint_class: LockoutPolicy(
                threshold=getattr(self, f"rate_limit_{endpoint_class.value.lower()}_threshold"),
                lockout_seconds=getattr(
                    self, f"rate_limit_{endpoint_class.value.lower()}_lockout_seconds"
                ),
            )
            for endpoint_class in EndpointClass
        }


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
