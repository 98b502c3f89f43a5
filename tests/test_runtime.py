"""Tests for runtime wiring and periodic maintenance."""

import pytest

from conftest import TEST_SECRET
from fitstack.config import EndpointClass, Settings
from fitstack.service.errors import ConfigurationError
from fitstack.service.runtime import Runtime, get_runtime, reset_runtime_for_tests
from fitstack.storage.memory import MemoryStore
from fitstack.storage.memory_cache import MemoryCache


def _settings(**overrides):
    values = dict(
        jwt_secret=TEST_SECRET,
        use_memory_store=True,
        use_memory_cache=True,
        test_mode=True,
    )
    values.update(overrides)
    return Settings(**values)


class TestStartup:
    @pytest.mark.parametrize("secret", [None, "", "too-short-secret"])
    def test_bad_signing_key_refuses_to_start(self, secret):
        with pytest.raises(ConfigurationError):
            Runtime(_settings(jwt_secret=secret))

    def test_memory_backends_selected(self):
        runtime = Runtime(_settings())
        assert isinstance(runtime.store, MemoryStore)
        assert isinstance(runtime.cache, MemoryCache)
        runtime.close()

    def test_missing_redis_is_fatal_outside_test_mode(self):
        with pytest.raises(RuntimeError):
            Runtime(_settings(use_memory_cache=False, redis_url=None, test_mode=False))

    def test_singleton(self):
        assert get_runtime() is get_runtime()
        previous = get_runtime()
        assert reset_runtime_for_tests() is not previous


class TestSweep:
    def test_sweep_reports_counts(self, clock):
        runtime = Runtime(_settings(), now=clock)
        user = runtime.store.create_user("a@x.com", "hash")
        runtime.refresh_tokens.issue(user.id)
        runtime.rate_limiter.record_failure("1.2.3.4", EndpointClass.LOGIN)
        result = runtime.sweep()
        assert result == {"rate_limit_records": 0, "blacklist_entries": 0, "refresh_tokens": 0}

        clock.advance(days=8)
        result = runtime.sweep()
        assert result == {"rate_limit_records": 1, "blacklist_entries": 0, "refresh_tokens": 1}
        runtime.close()

    def test_sweep_drops_lapsed_blacklist_entries(self, clock):
        runtime = Runtime(_settings(), now=clock)
        token = runtime.codec.issue(1, "a@x.com", runtime.session.access_ttl)
        runtime.session.logout(token)
        assert runtime.blacklist.size() == 1
        clock.advance(days=2)
        assert runtime.sweep()["blacklist_entries"] == 1
        runtime.close()
