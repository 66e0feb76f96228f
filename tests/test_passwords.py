"""Unit tests for auth/passwords.py -- hashing, login, and reset flows."""

from datetime import datetime, timedelta, timezone

import pytest

from auth.models import User, UserStatus
from auth.passwords import hash_password, hash_reset_token, verify_password
from core.errors import BadRequestError, ConflictError, NotFoundError, RateLimitedError, UnauthorizedError

PASSWORD = "Corr3ct-Horse!"


class TestHashing:
    def test_round_trip(self):
        hashed = hash_password(PASSWORD, rounds=4)
        assert hashed.startswith("$2")
        assert verify_password(PASSWORD, hashed)
        assert not verify_password("wrong", hashed)

    def test_malformed_hash_is_a_mismatch(self):
        assert verify_password(PASSWORD, "not-a-bcrypt-hash") is False

    def test_reset_token_hash_is_keyed(self):
        assert hash_reset_token("raw", "k1" * 16) != hash_reset_token("raw", "k2" * 16)
        assert hash_reset_token("raw", "k1" * 16) == hash_reset_token("raw", "k1" * 16)


class TestRegisterAndLogin:
    def test_register_issues_tokens(self, password_auth, issuer):
        user, tokens = password_auth.register("Ada@Example.com", PASSWORD, "Ada Lovelace")
        assert user.email == "ada@example.com"
        assert user.password_hash and user.password_hash != PASSWORD
        assert issuer.verify_access(tokens.access_token).user_id == user.id

    def test_register_duplicate_email_conflicts(self, password_auth):
        password_auth.register("ada@example.com", PASSWORD, "Ada")
        with pytest.raises(ConflictError):
            password_auth.register("ADA@example.com", PASSWORD, "Ada Again")

    def test_login_is_case_insensitive(self, password_auth):
        password_auth.register("ada@example.com", PASSWORD, "Ada")
        user, tokens = password_auth.login("ADA@EXAMPLE.COM", PASSWORD)
        assert user.email == "ada@example.com"
        assert user.last_login_at is not None
        assert tokens.access_token

    def test_generic_message_for_unknown_and_wrong_password(self, password_auth):
        password_auth.register("ada@example.com", PASSWORD, "Ada")
        with pytest.raises(UnauthorizedError) as unknown:
            password_auth.login("nobody@example.com", PASSWORD)
        with pytest.raises(UnauthorizedError) as wrong:
            password_auth.login("ada@example.com", "Wrong-Passw0rd!")
        assert unknown.value.message == wrong.value.message == "Invalid email or password."

    def test_passwordless_account_gets_generic_message(self, password_auth, store):
        store.create_user(User(email="oauth@example.com", full_name="OAuth Only", google_id="g-1"))
        with pytest.raises(UnauthorizedError) as excinfo:
            password_auth.login("oauth@example.com", PASSWORD)
        assert excinfo.value.message == "Invalid email or password."

    def test_suspended_account_told_after_password_matches(self, password_auth, store):
        user, _ = password_auth.register("ada@example.com", PASSWORD, "Ada")
        store.update_user(user.id, status=UserStatus.SUSPENDED.value)

        with pytest.raises(UnauthorizedError) as wrong:
            password_auth.login("ada@example.com", "Wrong-Passw0rd!")
        assert wrong.value.message == "Invalid email or password."

        with pytest.raises(UnauthorizedError) as right:
            password_auth.login("ada@example.com", PASSWORD)
        assert "suspended" in right.value.message

    def test_throttle_blocks_then_resets_on_success(self, password_auth):
        # conftest sets login_max_attempts=3
        password_auth.register("ada@example.com", PASSWORD, "Ada")
        for _ in range(2):
            with pytest.raises(UnauthorizedError):
                password_auth.login("ada@example.com", "Wrong-Passw0rd!")
        password_auth.login("ada@example.com", PASSWORD)

        for _ in range(3):
            with pytest.raises(UnauthorizedError):
                password_auth.login("ada@example.com", "Wrong-Passw0rd!")
        with pytest.raises(RateLimitedError):
            password_auth.login("ada@example.com", PASSWORD)


class TestPasswordChanges:
    def test_change_password(self, password_auth):
        user, _ = password_auth.register("ada@example.com", PASSWORD, "Ada")
        password_auth.change_password(user.id, PASSWORD, "N3w-Password!")
        password_auth.login("ada@example.com", "N3w-Password!")

    def test_change_password_wrong_current(self, password_auth):
        user, _ = password_auth.register("ada@example.com", PASSWORD, "Ada")
        with pytest.raises(UnauthorizedError):
            password_auth.change_password(user.id, "Wrong-Passw0rd!", "N3w-Password!")

    def test_change_password_unknown_user(self, password_auth):
        with pytest.raises(NotFoundError):
            password_auth.change_password("missing", PASSWORD, "N3w-Password!")

    def test_set_password_only_when_absent(self, password_auth, store):
        oauth_user = store.create_user(User(email="oauth@example.com", full_name="O", github_id="gh-1"))
        with pytest.raises(BadRequestError):
            password_auth.change_password(oauth_user.id, PASSWORD, "N3w-Password!")

        password_auth.set_password(oauth_user.id, PASSWORD)
        password_auth.login("oauth@example.com", PASSWORD)
        with pytest.raises(BadRequestError):
            password_auth.set_password(oauth_user.id, "Another-0ne!")


class TestPasswordReset:
    def test_reset_flow_revokes_sessions(self, password_auth, issuer, store):
        user, tokens = password_auth.register("ada@example.com", PASSWORD, "Ada")
        raw = password_auth.request_password_reset("ADA@example.com")
        assert raw is not None

        password_auth.reset_password(raw, "N3w-Password!")

        assert not issuer.sessions.is_active(tokens.session_id)
        password_auth.login("ada@example.com", "N3w-Password!")
        with pytest.raises(BadRequestError):
            password_auth.reset_password(raw, "Th1rd-Password!")

    def test_unknown_email_returns_none(self, password_auth):
        assert password_auth.request_password_reset("nobody@example.com") is None

    def test_only_latest_token_is_valid(self, password_auth):
        password_auth.register("ada@example.com", PASSWORD, "Ada")
        first = password_auth.request_password_reset("ada@example.com")
        second = password_auth.request_password_reset("ada@example.com")
        with pytest.raises(BadRequestError):
            password_auth.reset_password(first, "N3w-Password!")
        password_auth.reset_password(second, "N3w-Password!")

    def test_expired_token_rejected(self, password_auth, store, settings):
        user, _ = password_auth.register("ada@example.com", PASSWORD, "Ada")
        raw = "expired-token-value"
        past = (datetime.now(timezone.utc) - timedelta(minutes=1)).isoformat()
        store.create_reset_token(user.id, hash_reset_token(raw, settings.secret_key), past)
        with pytest.raises(BadRequestError) as excinfo:
            password_auth.reset_password(raw, "N3w-Password!")
        assert excinfo.value.message == "Invalid or expired reset token."

    def test_garbage_token_rejected(self, password_auth):
        with pytest.raises(BadRequestError):
            password_auth.reset_password("garbage", "N3w-Password!")
