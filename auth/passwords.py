"""
auth/passwords.py -- Password hashing and the password authenticator.

Security design decisions:
  Passwords: bcrypt used directly (no passlib wrapper) with a configurable
       cost factor. Production requires >= 10 rounds (enforced in Settings).

  Timing equalization: login always runs one bcrypt check, against a dummy
       hash when the email is unknown or the account has no password, so
       response time does not reveal whether an account exists.

  Generic failures: unknown email, wrong password, and password-less account
       all fail with the same "Invalid email or password." message. Only after
       the password is confirmed correct may a status-specific message (e.g.
       suspended) be returned.

  Reset tokens: secrets.token_urlsafe(32) gives 256 bits of entropy. Only
       HMAC-SHA256(SECRET_KEY, raw_token) is stored, so a database leak does
       not yield usable tokens. Requesting a new token retires every earlier
       unused one, and a successful reset revokes all of the user's sessions.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any

import bcrypt

from auth.models import Tokens, User, UserStatus
from auth.store import CredentialStore
from auth.tokens import TokenIssuer
from cache.sessions import LoginThrottle
from core.errors import BadRequestError, ConflictError, NotFoundError, RateLimitedError, UnauthorizedError

logger = logging.getLogger("validiant.auth")

_INVALID_CREDENTIALS = "Invalid email or password."

# ---------------------------------------------------------------------------
# Hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str, rounds: int = 12) -> str:
    """Return a bcrypt hash of plain at the given cost factor.

    bcrypt only accepts up to 72 bytes; the API layer rejects longer
    passwords before they reach here.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if plain matches the bcrypt hash. Malformed input is a mismatch."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


def hash_reset_token(raw_token: str, secret_key: str) -> str:
    """HMAC-SHA256(secret_key, raw_token) as hex. Deterministic, so it can be looked up."""
    return hmac.new(secret_key.encode(), raw_token.encode(), hashlib.sha256).hexdigest()


# ---------------------------------------------------------------------------
# Authenticator
# ---------------------------------------------------------------------------


class PasswordAuthenticator:
    """Email + password registration, login, and password lifecycle."""

    def __init__(
        self,
        store: CredentialStore,
        issuer: TokenIssuer,
        throttle: LoginThrottle,
        secret_key: str,
        bcrypt_rounds: int = 12,
        reset_ttl_seconds: int = 3600,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.throttle = throttle
        self._secret_key = secret_key
        self.bcrypt_rounds = bcrypt_rounds
        self.reset_ttl_seconds = reset_ttl_seconds
        # Same cost factor as real hashes, so the dummy check takes as long.
        self._dummy_hash = hash_password("validiant_timing_dummy", rounds=bcrypt_rounds)

    def register(
        self, email: str, password: str, full_name: str, device_info: dict[str, Any] | None = None
    ) -> tuple[User, Tokens]:
        """Create a password account and sign it in.

        Raises ConflictError if a live account already uses the email. The
        unique index backs this up when two registrations race.
        """
        email = email.strip().lower()
        if self.store.get_by_email(email) is not None:
            raise ConflictError("An account with this email already exists.")
        user = self.store.create_user(
            User(
                email=email,
                full_name=full_name.strip(),
                password_hash=hash_password(password, self.bcrypt_rounds),
            )
        )
        tokens = self.issuer.issue(user, device_info)
        logger.info("User registered: id=%s", user.id)
        return user, tokens

    def login(self, email: str, password: str, device_info: dict[str, Any] | None = None) -> tuple[User, Tokens]:
        """Verify email + password and issue a token pair.

        Raises RateLimitedError when the per-account throttle is exhausted and
        UnauthorizedError for any credential failure.
        """
        email = email.strip().lower()
        if self.throttle.is_blocked(email):
            logger.warning("Login throttled for account")
            raise RateLimitedError(
                "Too many failed login attempts. Try again later.",
                retry_after=self.throttle.retry_after(email),
            )

        user = self.store.get_by_email(email)
        if user is None or user.password_hash is None:
            # Do not return before running bcrypt.
            verify_password(password, self._dummy_hash)
            self.throttle.hit(email)
            logger.warning("Failed login: unknown account or no password set")
            raise UnauthorizedError(_INVALID_CREDENTIALS)

        if not verify_password(password, user.password_hash):
            attempts = self.throttle.hit(email)
            logger.warning("Failed login: user=%s attempts=%d", user.id, attempts)
            raise UnauthorizedError(_INVALID_CREDENTIALS)

        # Password confirmed: a status-specific message leaks nothing new.
        if not user.is_active:
            logger.warning("Login refused for %s account: user=%s", user.status, user.id)
            if user.status == UserStatus.SUSPENDED.value:
                raise UnauthorizedError("This account has been suspended.")
            raise UnauthorizedError("This account is not active.")

        self.throttle.reset(email)
        user_id = user.require_id()
        self.store.update_last_login(user_id)
        tokens = self.issuer.issue(user, device_info)
        logger.info("User logged in: id=%s", user_id)
        return self.store.get_by_id(user_id) or user, tokens

    def change_password(self, user_id: str, current_password: str, new_password: str) -> None:
        user = self._require_user(user_id)
        if user.password_hash is None:
            raise BadRequestError("No password is set on this account. Set one first.")
        if not verify_password(current_password, user.password_hash):
            raise UnauthorizedError("Current password is incorrect.")
        self.store.update_user(user_id, password_hash=hash_password(new_password, self.bcrypt_rounds))
        logger.info("Password changed: user=%s", user_id)

    def set_password(self, user_id: str, new_password: str) -> None:
        """Add a password to an OAuth- or passkey-only account."""
        user = self._require_user(user_id)
        if user.password_hash is not None:
            raise BadRequestError("A password is already set. Use change password instead.")
        self.store.update_user(user_id, password_hash=hash_password(new_password, self.bcrypt_rounds))
        logger.info("Password set: user=%s", user_id)

    def request_password_reset(self, email: str) -> str | None:
        """Create a reset token if the email belongs to an active account.

        Returns the raw token for the mail sender, or None. Callers must give
        the same response either way.
        """
        user = self.store.get_by_email(email.strip().lower())
        if user is None or not user.is_active:
            logger.info("Password reset requested for unknown or inactive account")
            return None
        user_id = user.require_id()
        raw_token = secrets.token_urlsafe(32)
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=self.reset_ttl_seconds)
        self.store.create_reset_token(
            user_id,
            hash_reset_token(raw_token, self._secret_key),
            expires_at.isoformat(),
        )
        logger.info("Password reset token created: user=%s", user_id)
        return raw_token

    def reset_password(self, token: str, new_password: str) -> None:
        """Redeem a reset token: set the password and end every session of the user."""
        record = self.store.get_valid_reset_token(hash_reset_token(token, self._secret_key))
        if record is None:
            raise BadRequestError("Invalid or expired reset token.")
        user = self.store.get_by_id(record.user_id)
        if user is None or not user.is_active:
            raise BadRequestError("Invalid or expired reset token.")
        if not self.store.mark_reset_token_used(record.id):
            # A concurrent redemption got there first.
            raise BadRequestError("Invalid or expired reset token.")
        self.store.update_user(record.user_id, password_hash=hash_password(new_password, self.bcrypt_rounds))
        revoked = self.issuer.revoke_all_sessions(record.user_id)
        logger.info("Password reset: user=%s sessions_revoked=%d", record.user_id, revoked)

    def _require_user(self, user_id: str) -> User:
        user = self.store.get_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found.")
        return user
