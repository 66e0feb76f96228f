"""
auth/tokens.py -- JWT access/refresh issuance, verification, and revocation.

Security design decisions:
  JWT: python-jose with HS256. Access and refresh tokens are signed with
       different keys (SECRET_KEY / REFRESH_SECRET_KEY), so one can never be
       replayed as the other even if the "type" claim were ignored.

  Sessions: every issued pair references a fresh server-side Session. A token
       is only honoured while its session exists, so deleting the session
       revokes both tokens at once.

  Refresh is single-use: the old session is deleted before the new pair is
       issued, and the consumed refresh token string is also denylisted for
       its remaining lifetime. Two concurrent refreshes with the same token
       race on the session delete; exactly one wins.

  Logout: the presented tokens are denylisted with TTL = their own remaining
       lifetime (read from the exp claim), so a denylist entry never outlives
       the token it blocks.

  Expired vs invalid: verify() raises TokenExpiredError for a good signature
       with a past exp, and TokenError for everything else, so clients can
       tell "refresh now" apart from "log in again".

Layer rule: no imports from api/. Settings values arrive via the constructor.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from jose import ExpiredSignatureError, JWTError, jwt

from auth.models import Tokens, User
from cache.sessions import Denylist, Session, SessionStore
from core.errors import NotFoundError, TokenError, TokenExpiredError, UnauthorizedError
from core.logging import redact

if TYPE_CHECKING:
    from auth.store import CredentialStore

logger = logging.getLogger("validiant.auth")

_ALGORITHM = "HS256"
_REFRESH_TYPE = "refresh"


@dataclass(frozen=True)
class AccessClaims:
    user_id: str
    email: str
    role: str
    session_id: str
    exp: int


@dataclass(frozen=True)
class RefreshClaims:
    user_id: str
    session_id: str
    exp: int


class TokenIssuer:
    """Signs, verifies, refreshes, and revokes token pairs.

    Usage:
        issuer = TokenIssuer(sessions, denylist, secret_key=..., refresh_secret_key=...)
        tokens = issuer.issue(user)
        claims = issuer.verify_access(tokens.access_token)
        new_tokens = issuer.refresh(tokens.refresh_token, store)
        issuer.logout(new_tokens.access_token, new_tokens.refresh_token)
    """

    def __init__(
        self,
        sessions: SessionStore,
        denylist: Denylist,
        secret_key: str,
        refresh_secret_key: str,
        issuer: str = "validiant-api",
        audience: str = "validiant-client",
        access_ttl_seconds: int = 15 * 60,
        refresh_ttl_seconds: int = 7 * 24 * 3600,
    ) -> None:
        self.sessions = sessions
        self.denylist = denylist
        self._secret_key = secret_key
        self._refresh_secret_key = refresh_secret_key
        self.issuer = issuer
        self.audience = audience
        self.access_ttl_seconds = access_ttl_seconds
        self.refresh_ttl_seconds = refresh_ttl_seconds

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue(self, user: User, device_info: dict[str, Any] | None = None) -> Tokens:
        """Create a new session for user and sign an access/refresh pair for it.

        This is always the terminal step of an authenticator flow: callers run
        every fail-fast check before reaching here.
        """
        user_id = user.require_id()
        session = self.sessions.create(user_id, user.email, user.role, device_info)
        now = int(time.time())
        access_token = jwt.encode(
            {
                "userId": user_id,
                "email": user.email,
                "role": user.role,
                "sessionId": session.session_id,
                "iss": self.issuer,
                "aud": self.audience,
                "iat": now,
                "exp": now + self.access_ttl_seconds,
            },
            self._secret_key,
            algorithm=_ALGORITHM,
        )
        refresh_token = jwt.encode(
            {
                "userId": user_id,
                "sessionId": session.session_id,
                "type": _REFRESH_TYPE,
                "iss": self.issuer,
                "iat": now,
                "exp": now + self.refresh_ttl_seconds,
            },
            self._refresh_secret_key,
            algorithm=_ALGORITHM,
        )
        return Tokens(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.access_ttl_seconds,
            session_id=session.session_id,
        )

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    def verify(self, token: str, secret: str, audience: str | None = None) -> dict[str, Any]:
        """Check signature, issuer, audience, and expiry. Return the raw claims.

        Raises TokenExpiredError if only the expiry is wrong, TokenError for
        any other problem.
        """
        try:
            return jwt.decode(
                token,
                secret,
                algorithms=[_ALGORITHM],
                audience=audience,
                issuer=self.issuer,
            )
        except ExpiredSignatureError as exc:
            raise TokenExpiredError() from exc
        except JWTError as exc:
            raise TokenError() from exc

    def verify_access(self, token: str) -> AccessClaims:
        payload = self.verify(token, self._secret_key, audience=self.audience)
        try:
            return AccessClaims(
                user_id=str(payload["userId"]),
                email=str(payload["email"]),
                role=str(payload["role"]),
                session_id=str(payload["sessionId"]),
                exp=int(payload["exp"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise TokenError() from exc

    def verify_refresh(self, token: str) -> RefreshClaims:
        payload = self.verify(token, self._refresh_secret_key)
        if payload.get("type") != _REFRESH_TYPE:
            raise TokenError("Not a refresh token.")
        try:
            return RefreshClaims(
                user_id=str(payload["userId"]),
                session_id=str(payload["sessionId"]),
                exp=int(payload["exp"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise TokenError() from exc

    def is_revoked(self, token: str) -> bool:
        """True if token is on the denylist. Fails closed."""
        return self.denylist.is_revoked(token)

    # ------------------------------------------------------------------
    # Refresh / logout
    # ------------------------------------------------------------------

    def refresh(self, refresh_token: str, store: CredentialStore) -> tuple[User, Tokens]:
        """Exchange a refresh token for a brand-new pair and session.

        Fails TokenError if the token is invalid, revoked, or its session is
        gone (expired, logged out, or already refreshed). Fails
        UnauthorizedError if the user no longer exists or is not active.
        """
        claims = self.verify_refresh(refresh_token)
        if self.denylist.is_revoked(refresh_token):
            raise TokenError("Refresh token has been revoked.")

        session = self.sessions.get(claims.session_id)
        if session is None or session.user_id != claims.user_id:
            raise TokenError("Session expired or revoked.")

        user = store.get_by_id(claims.user_id)
        if user is None or not user.is_active:
            raise UnauthorizedError("Account is not available.")

        # Consuming the old session is the single-use gate: a concurrent
        # refresh that loses this delete gets nothing.
        if not self.sessions.delete(session.session_id, user_id=session.user_id):
            raise TokenError("Session expired or revoked.")
        self.denylist.add(refresh_token, self._remaining(claims.exp))

        tokens = self.issue(user, device_info=session.device_info)
        logger.info("Token refresh: user=%s session=%s", user.id, redact(tokens.session_id))
        return user, tokens

    def logout(self, access_token: str | None, refresh_token: str | None = None) -> None:
        """Denylist the presented tokens and delete their session. Idempotent.

        Tokens are decoded without the expiry check so an already-expired
        access token can still end its session. Tokens with a bad signature
        are ignored: they could never authenticate anyway.
        """
        session_id: str | None = None
        user_id: str | None = None
        for token, secret, audience in (
            (access_token, self._secret_key, self.audience),
            (refresh_token, self._refresh_secret_key, None),
        ):
            if not token:
                continue
            payload = self._decode_unverified_expiry(token, secret, audience)
            if payload is None:
                continue
            self.denylist.add(token, self._remaining(int(payload.get("exp", 0))))
            session_id = session_id or payload.get("sessionId")
            user_id = user_id or payload.get("userId")
        if session_id:
            self.sessions.delete(session_id, user_id=user_id)
            logger.info("Logout: user=%s session=%s", user_id, redact(session_id))

    # ------------------------------------------------------------------
    # Session management
    # ------------------------------------------------------------------

    def list_sessions(self, user_id: str) -> list[Session]:
        return self.sessions.list_for_user(user_id)

    def revoke_session(self, user_id: str, session_id: str) -> None:
        """Delete one of the user's own sessions. NotFound if it is not theirs."""
        session = self.sessions.get(session_id)
        if session is None or session.user_id != user_id:
            raise NotFoundError("Session not found.")
        self.sessions.delete(session_id, user_id=user_id)
        logger.info("Session revoked: user=%s session=%s", user_id, redact(session_id))

    def revoke_all_sessions(self, user_id: str, keep: str | None = None) -> int:
        """Delete every session of the user except `keep`. Returns the count removed."""
        removed = self.sessions.delete_all_for_user(user_id, keep=keep)
        logger.info("All sessions revoked: user=%s count=%d", user_id, removed)
        return removed

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _decode_unverified_expiry(self, token: str, secret: str, audience: str | None) -> dict[str, Any] | None:
        try:
            return jwt.decode(
                token,
                secret,
                algorithms=[_ALGORITHM],
                audience=audience,
                issuer=self.issuer,
                options={"verify_exp": False},
            )
        except JWTError:
            logger.debug("Ignoring undecodable token on logout: %s", redact(token))
            return None

    @staticmethod
    def _remaining(exp: int) -> int:
        return exp - int(time.time())
