"""Unit tests for cache/store.py -- RedisCache over fakeredis.

Covers:
- JSON round trip of dict values and TTL handling
- get_and_delete() returns the value exactly once
- incr() starts the window on the first hit and never extends it
- set membership helpers used by the per-user session index
- every redis error surfaces as CacheUnavailableError; ping() never raises
"""

from unittest.mock import MagicMock

import pytest
import redis

from cache.store import RedisCache
from core.errors import CacheUnavailableError


@pytest.fixture
def broken_cache() -> RedisCache:
    """A RedisCache whose client fails every command like a dead server."""
    client = MagicMock()
    for name in ("get", "set", "delete", "exists", "ttl", "pipeline", "srem", "smembers", "ping"):
        getattr(client, name).side_effect = redis.ConnectionError("connection refused")
    return RedisCache(client)


class TestKeyValue:
    def test_set_and_get_dict(self, cache):
        cache.set("session:abc", {"user_id": "u1", "role": "user"}, ttl=60)
        assert cache.get("session:abc") == {"user_id": "u1", "role": "user"}

    def test_missing_key_is_none(self, cache):
        assert cache.get("session:missing") is None
        assert cache.exists("session:missing") is False
        assert cache.delete("session:missing") is False

    def test_ttl_is_applied(self, cache):
        cache.set("denylist:t", "1", ttl=120)
        assert 0 < cache.ttl("denylist:t") <= 120

    def test_non_positive_ttl_rejected(self, cache):
        with pytest.raises(ValueError):
            cache.set("k", "v", ttl=0)


class TestAtomicOps:
    def test_get_and_delete_is_one_time(self, cache):
        cache.set("webauthn:challenge:n1", {"challenge": "abc"}, ttl=60)
        assert cache.get_and_delete("webauthn:challenge:n1") == {"challenge": "abc"}
        assert cache.get_and_delete("webauthn:challenge:n1") is None

    def test_incr_counts_and_keeps_window(self, cache, redis_client):
        assert cache.incr("ratelimit:login:a@x.com", 900) == 1
        first_ttl = redis_client.ttl("ratelimit:login:a@x.com")
        assert cache.incr("ratelimit:login:a@x.com", 900) == 2
        assert cache.incr("ratelimit:login:a@x.com", 900) == 3
        assert 0 < redis_client.ttl("ratelimit:login:a@x.com") <= first_ttl


class TestSetMembers:
    def test_add_remove_members(self, cache, redis_client):
        cache.add_member("user_sessions:u1", "s1", ttl=60)
        cache.add_member("user_sessions:u1", "s2", ttl=60)
        assert cache.members("user_sessions:u1") == {"s1", "s2"}
        assert redis_client.ttl("user_sessions:u1") > 0

        cache.remove_member("user_sessions:u1", "s1")
        assert cache.members("user_sessions:u1") == {"s2"}

    def test_members_of_missing_set_is_empty(self, cache):
        assert cache.members("user_sessions:nobody") == set()


class TestUnavailable:
    @pytest.mark.parametrize(
        "call",
        [
            lambda c: c.get("k"),
            lambda c: c.set("k", "v", ttl=10),
            lambda c: c.delete("k"),
            lambda c: c.exists("k"),
            lambda c: c.get_and_delete("k"),
            lambda c: c.incr("k", 10),
            lambda c: c.members("k"),
        ],
    )
    def test_redis_errors_become_cache_unavailable(self, broken_cache, call):
        with pytest.raises(CacheUnavailableError):
            call(broken_cache)

    def test_ping_reports_false_instead_of_raising(self, broken_cache):
        assert broken_cache.ping() is False

    def test_ping_ok(self, cache):
        assert cache.ping() is True
