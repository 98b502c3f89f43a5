"""Unit tests for the Redis cache against mocked and in-process clients."""

from unittest.mock import MagicMock

import fakeredis
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from fitstack.config import LockoutPolicy
from fitstack.storage.errors import BackendUnavailable
from fitstack.storage.redis_cache import RedisCache


@pytest.fixture
def client():
    client = MagicMock()
    client.register_script.return_value = MagicMock(return_value=[1, 0])
    return client


@pytest.fixture
def cache(client):
    return RedisCache("redis://unused", client=client)


def test_record_failure_runs_script_with_keys_and_window(cache, client):
    attempts, remaining = cache.record_failure("1.2.3.4:LOGIN", LockoutPolicy(5, 900))
    assert (attempts, remaining) == (1, 0)
    script = client.register_script.return_value
    script.assert_called_once_with(
        keys=["ratelimit:1.2.3.4:LOGIN:attempts", "ratelimit:1.2.3.4:LOGIN:lockout"],
        args=[5, 900, 1800],
    )


def test_record_failure_reports_lockout(cache, client):
    client.register_script.return_value.return_value = [5, 900]
    assert cache.record_failure("k", LockoutPolicy(5, 900)) == (5, 900)


def test_lockout_remaining_reads_ttl(cache, client):
    client.ttl.return_value = 42
    assert cache.lockout_remaining("k") == 42
    client.ttl.assert_called_with("ratelimit:k:lockout")
    # Redis reports -2 for a missing key and -1 for no expiry
    client.ttl.return_value = -2
    assert cache.lockout_remaining("k") == 0


def test_failed_attempts(cache, client):
    client.get.return_value = "3"
    assert cache.failed_attempts("k") == 3
    client.get.return_value = None
    assert cache.failed_attempts("k") == 0


def test_clear_rate_limit_deletes_both_keys(cache, client):
    cache.clear_rate_limit("k")
    client.delete.assert_called_once_with("ratelimit:k:attempts", "ratelimit:k:lockout")


def test_denylist_uses_expiring_key(cache, client):
    cache.denylist_token("jti-1", 120)
    client.set.assert_called_once_with("token:blacklist:jti-1", "1", ex=120)
    client.exists.return_value = 1
    assert cache.is_token_denylisted("jti-1") is True
    client.exists.assert_called_with("token:blacklist:jti-1")


def test_denylist_skips_non_positive_ttl(cache, client):
    cache.denylist_token("jti-1", 0)
    client.set.assert_not_called()


def test_denylist_size_scans_prefix(cache, client):
    client.scan_iter.return_value = iter(["token:blacklist:a", "token:blacklist:b"])
    assert cache.denylist_size() == 2


@pytest.mark.parametrize(
    "call",
    [
        lambda c: c.lockout_remaining("k"),
        lambda c: c.failed_attempts("k"),
        lambda c: c.is_token_denylisted("jti"),
        lambda c: c.denylist_token("jti", 10),
        lambda c: c.verify_connection(),
    ],
)
def test_redis_errors_wrapped(cache, client, call):
    error = RedisConnectionError("connection refused")
    client.ttl.side_effect = error
    client.get.side_effect = error
    client.exists.side_effect = error
    client.set.side_effect = error
    client.ping.side_effect = error
    with pytest.raises(BackendUnavailable):
        call(cache)


def test_script_error_wrapped(cache, client):
    client.register_script.return_value.side_effect = RedisConnectionError("down")
    with pytest.raises(BackendUnavailable):
        cache.record_failure("k", LockoutPolicy(5, 900))


class TestRecordFailureScript:
    """Runs the Lua script against an in-process Redis."""

    @pytest.fixture
    def server(self):
        return fakeredis.FakeRedis(decode_responses=True)

    @pytest.fixture
    def live_cache(self, server):
        return RedisCache("redis://unused", client=server)

    def test_threshold_sets_lockout(self, live_cache, server):
        policy = LockoutPolicy(5, 900)
        for _ in range(4):
            assert live_cache.record_failure("k", policy)[1] == 0
        attempts, remaining = live_cache.record_failure("k", policy)
        assert attempts == 5
        assert remaining == 900
        assert 0 < server.ttl("ratelimit:k:attempts") <= 1800

    def test_counter_recreated_during_lockout_still_expires(self, live_cache, server):
        policy = LockoutPolicy(5, 900)
        for _ in range(5):
            live_cache.record_failure("k", policy)
        server.delete("ratelimit:k:attempts")

        attempts, remaining = live_cache.record_failure("k", policy)
        assert attempts == 1
        assert remaining > 0
        assert 0 < server.ttl("ratelimit:k:attempts") <= 1800

    def test_lapsed_lockout_starts_fresh_window(self, live_cache, server):
        policy = LockoutPolicy(5, 900)
        for _ in range(5):
            live_cache.record_failure("k", policy)
        server.delete("ratelimit:k:lockout")

        assert live_cache.record_failure("k", policy) == (1, 0)
        assert 0 < server.ttl("ratelimit:k:attempts") <= 1800
