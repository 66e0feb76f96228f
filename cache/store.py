"""
cache/store.py -- Redis-backed TTL key-value cache.

One RedisCache is built at startup from Settings.redis_url and handed to every
component that needs it (sessions, denylist, one-time OAuth/WebAuthn state,
login throttle). There is no module-level client.

Values are JSON-encoded on write and decoded on read, so callers pass plain
dicts/strings/ints. Missing keys are not errors: get() returns None, delete()
and exists() return False.

Every redis.RedisError is re-raised as CacheUnavailableError. The cache itself
takes no policy decision on failure -- callers choose to fail open (rate
limits) or fail closed (anything that gates authorization).

Usage:
    cache = RedisCache(redis.Redis.from_url("redis://localhost:6379/0", decode_responses=True))
    cache.set("session:abc", {"user_id": "u1"}, ttl=86400)
    cache.get("session:abc")            # {"user_id": "u1"}
    cache.get_and_delete("oauth:pkce:x")  # atomic one-time read
"""

from __future__ import annotations

import json
import logging
from typing import Any

import redis

from core.errors import CacheUnavailableError

logger = logging.getLogger("validiant.cache")


class RedisCache:
    def __init__(self, client: redis.Redis) -> None:
        # The client must be built with decode_responses=True; values are str.
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> RedisCache:
        return cls(redis.Redis.from_url(url, decode_responses=True))

    # ------------------------------------------------------------------
    # Plain key operations
    # ------------------------------------------------------------------

    def get(self, key: str) -> Any | None:
        """Return the decoded value for key, or None if absent or expired."""
        try:
            raw = self._client.get(key)
        except redis.RedisError as exc:
            raise self._unavailable("get", key, exc) from exc
        return json.loads(raw) if raw is not None else None

    def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        """Store value under key. ttl is in seconds; None means no expiry."""
        if ttl is not None and ttl <= 0:
            raise ValueError(f"ttl must be positive, got {ttl}")
        try:
            self._client.set(key, json.dumps(value), ex=ttl)
        except redis.RedisError as exc:
            raise self._unavailable("set", key, exc) from exc

    def delete(self, key: str) -> bool:
        """Delete key. Returns True if something was removed."""
        try:
            return bool(self._client.delete(key))
        except redis.RedisError as exc:
            raise self._unavailable("delete", key, exc) from exc

    def exists(self, key: str) -> bool:
        try:
            return self._client.exists(key) == 1
        except redis.RedisError as exc:
            raise self._unavailable("exists", key, exc) from exc

    def ttl(self, key: str) -> int:
        """Remaining TTL in seconds. -1 = no expiry, -2 = key does not exist."""
        try:
            return int(self._client.ttl(key))
        except redis.RedisError as exc:
            raise self._unavailable("ttl", key, exc) from exc

    def get_and_delete(self, key: str) -> Any | None:
        """Atomically read and remove key (one-time state).

        GET and DEL run inside one MULTI/EXEC transaction, so two concurrent
        consumers can never both observe the value.
        """
        try:
            with self._client.pipeline(transaction=True) as pipe:
                pipe.get(key)
                pipe.delete(key)
                raw, _deleted = pipe.execute()
        except redis.RedisError as exc:
            raise self._unavailable("get_and_delete", key, exc) from exc
        return json.loads(raw) if raw is not None else None

    def incr(self, key: str, window_seconds: int) -> int:
        """Atomically increment a counter, starting its expiry window on first hit.

        SET NX EX and INCR run in one transaction: the window is created with
        the counter and INCR keeps the existing expiry, so later hits never
        extend it.
        """
        try:
            with self._client.pipeline(transaction=True) as pipe:
                pipe.set(key, 0, ex=window_seconds, nx=True)
                pipe.incr(key)
                _, count = pipe.execute()
        except redis.RedisError as exc:
            raise self._unavailable("incr", key, exc) from exc
        return int(count)

    # ------------------------------------------------------------------
    # Set operations (per-user session index)
    # ------------------------------------------------------------------

    def add_member(self, key: str, member: str, ttl: int) -> None:
        """Add member to a set and reset the set's expiry to ttl.

        Every member is added with the same ttl, so the newest addition always
        outlives the members already present.
        """
        try:
            with self._client.pipeline(transaction=True) as pipe:
                pipe.sadd(key, member)
                pipe.expire(key, ttl)
                pipe.execute()
        except redis.RedisError as exc:
            raise self._unavailable("add_member", key, exc) from exc

    def remove_member(self, key: str, member: str) -> None:
        try:
            self._client.srem(key, member)
        except redis.RedisError as exc:
            raise self._unavailable("remove_member", key, exc) from exc

    def members(self, key: str) -> set[str]:
        try:
            return set(self._client.smembers(key))
        except redis.RedisError as exc:
            raise self._unavailable("members", key, exc) from exc

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        """Return True if Redis answers. Never raises -- used by /health."""
        try:
            return bool(self._client.ping())
        except redis.RedisError:
            logger.warning("Redis ping failed", exc_info=True)
            return False

    def close(self) -> None:
        self._client.close()

    @staticmethod
    def _unavailable(op: str, key: str, exc: Exception) -> CacheUnavailableError:
        # Key prefixes only: full keys may embed token strings.
        logger.error("Cache %s failed for key %s: %s", op, key.split(":", 1)[0] + ":*", exc)
        return CacheUnavailableError(f"cache {op} failed")
