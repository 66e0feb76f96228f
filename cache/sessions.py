"""
cache/sessions.py -- Session, denylist, one-time state, and login throttle.

All four live in the same Redis instance under disjoint key namespaces:

  session:<session_id>         Session JSON, TTL = session lifetime (24h)
  user_sessions:<user_id>      SET of live session ids for that user
  denylist:<token>             "1", TTL = remaining lifetime of the token
  oauth:pkce:<state>           OAuth state + PKCE verifier, TTL 10 min
  webauthn:challenge:<nonce>   WebAuthn challenge, TTL 10 min
  ratelimit:login:<email>      failed-login counter, TTL = throttle window

Failure policy (correctness-critical):
  Fail CLOSED -- Denylist.is_revoked() returns True and
      SessionStore.is_active() returns False when the cache errors. A cache
      outage must never let a revoked token or a dead session through.
  Fail OPEN -- LoginThrottle.hit() allows the attempt when the cache errors.
      Locking every user out because Redis blinked is worse than briefly
      losing brute-force throttling (slowapi's per-IP limit still applies).
  Everything else propagates CacheUnavailableError to the route layer, which
  renders a generic 503.

Layer rule: cache/ imports only core/ and third-party libraries.
"""

from __future__ import annotations

import logging
import secrets
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

from cache.store import RedisCache
from core.errors import CacheUnavailableError
from core.logging import redact

logger = logging.getLogger("validiant.cache")

SESSION_PREFIX = "session:"
USER_SESSIONS_PREFIX = "user_sessions:"
DENYLIST_PREFIX = "denylist:"
OAUTH_PKCE_NAMESPACE = "oauth:pkce"
WEBAUTHN_CHALLENGE_NAMESPACE = "webauthn:challenge"
LOGIN_THROTTLE_PREFIX = "ratelimit:login:"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Session:
    """Server-side record binding a token's sessionId claim to a user."""

    session_id: str
    user_id: str
    email: str
    role: str
    device_info: dict[str, Any] | None = None
    created_at: str = field(default_factory=_now_iso)


class SessionStore:
    """session:<id> records plus the per-user index used for bulk revocation."""

    def __init__(self, cache: RedisCache, ttl_seconds: int) -> None:
        self._cache = cache
        self.ttl_seconds = ttl_seconds

    def create(self, user_id: str, email: str, role: str, device_info: dict[str, Any] | None = None) -> Session:
        """Create a fresh session. One per login, registration, or refresh."""
        session = Session(
            session_id=str(uuid.uuid4()),
            user_id=user_id,
            email=email,
            role=role,
            device_info=device_info,
        )
        self._cache.set(SESSION_PREFIX + session.session_id, asdict(session), ttl=self.ttl_seconds)
        self._cache.add_member(USER_SESSIONS_PREFIX + user_id, session.session_id, ttl=self.ttl_seconds)
        return session

    def get(self, session_id: str) -> Session | None:
        data = self._cache.get(SESSION_PREFIX + session_id)
        return Session(**data) if data else None

    def is_active(self, session_id: str) -> bool:
        """Return True if the session exists. Fails closed on cache errors."""
        try:
            return self._cache.exists(SESSION_PREFIX + session_id)
        except CacheUnavailableError:
            logger.error("Session check failed for %s -- treating as revoked", redact(session_id))
            return False

    def delete(self, session_id: str, user_id: str | None = None) -> bool:
        """Delete a session. Deleting an absent session is not an error."""
        removed = self._cache.delete(SESSION_PREFIX + session_id)
        if user_id:
            self._cache.remove_member(USER_SESSIONS_PREFIX + user_id, session_id)
        return removed

    def list_for_user(self, user_id: str) -> list[Session]:
        """Return the user's live sessions, pruning index entries that expired."""
        sessions: list[Session] = []
        for session_id in sorted(self._cache.members(USER_SESSIONS_PREFIX + user_id)):
            session = self.get(session_id)
            if session is None:
                self._cache.remove_member(USER_SESSIONS_PREFIX + user_id, session_id)
                continue
            sessions.append(session)
        sessions.sort(key=lambda s: s.created_at)
        return sessions

    def delete_all_for_user(self, user_id: str, keep: str | None = None) -> int:
        """Delete every session of a user, optionally keeping one. Returns count removed."""
        removed = 0
        for session_id in self._cache.members(USER_SESSIONS_PREFIX + user_id):
            if session_id == keep:
                continue
            if self._cache.delete(SESSION_PREFIX + session_id):
                removed += 1
            self._cache.remove_member(USER_SESSIONS_PREFIX + user_id, session_id)
        return removed


class Denylist:
    """Explicitly revoked token strings."""

    def __init__(self, cache: RedisCache) -> None:
        self._cache = cache

    def add(self, token: str, ttl_seconds: int) -> None:
        """Deny token for ttl_seconds. A non-positive ttl means it already expired."""
        if ttl_seconds <= 0:
            return
        self._cache.set(DENYLIST_PREFIX + token, "1", ttl=ttl_seconds)

    def is_revoked(self, token: str) -> bool:
        """Return True if token was revoked. Fails closed on cache errors."""
        try:
            return self._cache.exists(DENYLIST_PREFIX + token)
        except CacheUnavailableError:
            logger.error("Denylist check failed for token %s -- treating as revoked", redact(token))
            return True


class OneTimeStateStore:
    """Short-lived state that must be read at most once (PKCE verifiers, challenges)."""

    def __init__(self, cache: RedisCache) -> None:
        self._cache = cache

    def put(self, namespace: str, payload: dict[str, Any], ttl_seconds: int) -> str:
        """Store payload under a fresh random key and return the key."""
        key = secrets.token_urlsafe(32)
        self._cache.set(f"{namespace}:{key}", payload, ttl=ttl_seconds)
        return key

    def consume(self, namespace: str, key: str) -> dict[str, Any] | None:
        """Atomically fetch and delete. A second consume of the same key returns None."""
        if not key:
            return None
        return self._cache.get_and_delete(f"{namespace}:{key}")


class LoginThrottle:
    """Per-account failed-login counter. Fails open."""

    def __init__(self, cache: RedisCache, max_attempts: int, window_seconds: int) -> None:
        self._cache = cache
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds

    def is_blocked(self, email: str) -> bool:
        try:
            count = self._cache.get(LOGIN_THROTTLE_PREFIX + email.lower())
        except CacheUnavailableError:
            logger.warning("Login throttle unavailable -- allowing attempt")
            return False
        return int(count or 0) >= self.max_attempts

    def retry_after(self, email: str) -> int:
        """Seconds until the account's failure window expires."""
        try:
            remaining = self._cache.ttl(LOGIN_THROTTLE_PREFIX + email.lower())
        except CacheUnavailableError:
            return self.window_seconds
        return remaining if remaining > 0 else self.window_seconds

    def hit(self, email: str) -> int:
        """Record a failed attempt and return the running count (0 if unknown)."""
        try:
            return self._cache.incr(LOGIN_THROTTLE_PREFIX + email.lower(), self.window_seconds)
        except CacheUnavailableError:
            logger.warning("Login throttle unavailable -- failed attempt not counted")
            return 0

    def reset(self, email: str) -> None:
        try:
            self._cache.delete(LOGIN_THROTTLE_PREFIX + email.lower())
        except CacheUnavailableError:
            logger.warning("Login throttle unavailable -- counter not reset")
