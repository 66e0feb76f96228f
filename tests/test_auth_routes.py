"""
tests/test_auth_routes.py -- Integration tests for the auth HTTP surface.

These tests exercise the full stack: FastAPI routing -> middleware -> auth
dependency -> authenticators -> fakeredis/SQLite -> response serialization
and cookies. Unit tests of the components live in the sibling test modules;
here the point is the contract a browser or mobile client sees.

Fixtures used (from conftest.py):
  - client: TestClient over the real app with a per-test cache and database
  - register: helper that POSTs /auth/register
"""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock, patch
from urllib.parse import parse_qs, urlparse

import redis
from fastapi.testclient import TestClient
from webauthn.helpers import bytes_to_base64url

from auth.models import Provider
from auth.oauth import OAuthLinker, OAuthProfile, ProviderConfig
from cache.store import RedisCache

PASSWORD = "Corr3ct-Horse!"
API = "/api/v1"


def _bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _me_with_token(client: TestClient, token: str):
    """GET /me authenticated only by a bearer token.

    A second client over the same app has an empty cookie jar, so the main
    client's cookies cannot authenticate the request instead.
    """
    return TestClient(client.app).get(f"{API}/auth/me", headers=_bearer(token))


class TestRegisterLoginLogout:
    def test_register_sets_cookies_not_body_tokens(self, client, register):
        resp = register()
        assert resp.status_code == 201, resp.text
        body = resp.json()
        assert body["user"]["email"] == "ada@example.com"
        assert body["user"]["hasPassword"] is True
        assert body["expiresIn"] == 15 * 60
        assert "accessToken" not in body and "refreshToken" not in body
        assert client.cookies.get("accessToken")
        assert client.cookies.get("refreshToken")
        assert resp.headers["Cache-Control"] == "no-store"
        set_cookie = resp.headers.get_list("set-cookie")
        assert all("httponly" in c.lower() and "samesite=strict" in c.lower() for c in set_cookie)

    def test_register_then_login_with_different_case(self, client, register):
        register()
        client.cookies.clear()
        resp = client.post(f"{API}/auth/login", json={"email": "ADA@Example.COM", "password": PASSWORD})
        assert resp.status_code == 200, resp.text
        assert resp.json()["user"]["email"] == "ada@example.com"
        assert client.get(f"{API}/auth/me").status_code == 200

    def test_logout_then_me_is_401(self, client, register):
        register()
        access = client.cookies.get("accessToken")
        assert client.get(f"{API}/auth/me").status_code == 200

        resp = client.post(f"{API}/auth/logout")
        assert resp.status_code == 200
        assert client.cookies.get("accessToken") is None

        assert client.get(f"{API}/auth/me").status_code == 401
        # The old token is dead even when replayed explicitly.
        replay = _me_with_token(client, access)
        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "invalid_token"

    def test_logout_without_session_is_ok(self, client):
        assert client.post(f"{API}/auth/logout").status_code == 200
        assert client.post(f"{API}/auth/logout").status_code == 200

    def test_bearer_header_accepted(self, client, register):
        register()
        access = client.cookies.get("accessToken")
        resp = _me_with_token(client, access)
        assert resp.status_code == 200
        assert resp.json()["email"] == "ada@example.com"

    def test_duplicate_registration_conflicts(self, client, register):
        register()
        resp = register(email="ADA@example.com")
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    def test_weak_password_rejected(self, client, register):
        resp = register(password="password")
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"

    def test_bad_credentials_are_generic(self, client, register):
        register()
        client.cookies.clear()
        wrong = client.post(f"{API}/auth/login", json={"email": "ada@example.com", "password": "Nope-Nope-1!"})
        unknown = client.post(f"{API}/auth/login", json={"email": "nobody@example.com", "password": PASSWORD})
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json()["error"]["message"] == unknown.json()["error"]["message"]

    def test_per_account_throttle(self, client, register):
        register()
        client.cookies.clear()
        for _ in range(3):
            resp = client.post(f"{API}/auth/login", json={"email": "ada@example.com", "password": "Nope-Nope-1!"})
            assert resp.status_code == 401
        resp = client.post(f"{API}/auth/login", json={"email": "ada@example.com", "password": PASSWORD})
        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "rate_limited"
        assert "Retry-After" in resp.headers

    def test_me_requires_auth(self, client):
        resp = client.get(f"{API}/auth/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"


class TestRefresh:
    def test_refresh_rotates_and_is_single_use(self, client, register):
        register()
        old_refresh = client.cookies.get("refreshToken")
        old_access = client.cookies.get("accessToken")

        resp = client.post(f"{API}/auth/refresh")
        assert resp.status_code == 200, resp.text
        assert client.cookies.get("refreshToken") != old_refresh
        assert client.get(f"{API}/auth/me").status_code == 200
        # The access token of the rotated-out session no longer authenticates.
        assert _me_with_token(client, old_access).status_code == 401

        client.cookies.clear()
        again = client.post(f"{API}/auth/refresh", json={"refreshToken": old_refresh})
        assert again.status_code == 401

    def test_refresh_without_token(self, client):
        assert client.post(f"{API}/auth/refresh").status_code == 401


class TestPasswordRoutes:
    def test_change_password_revokes_other_sessions(self, client, register):
        register()
        first_access = client.cookies.get("accessToken")
        client.cookies.clear()
        client.post(f"{API}/auth/login", json={"email": "ada@example.com", "password": PASSWORD})

        resp = client.post(
            f"{API}/auth/password/change",
            json={"currentPassword": PASSWORD, "newPassword": "N3w-Password!"},
        )
        assert resp.status_code == 200, resp.text
        assert client.get(f"{API}/auth/me").status_code == 200
        assert _me_with_token(client, first_access).status_code == 401

    def test_set_password_refused_when_present(self, client, register):
        register()
        resp = client.post(f"{API}/auth/password/set", json={"newPassword": "N3w-Password!"})
        assert resp.status_code == 400

    def test_reset_request_is_always_200(self, client, register):
        register()
        known = client.post(f"{API}/auth/password-reset/request", json={"email": "ada@example.com"})
        unknown = client.post(f"{API}/auth/password-reset/request", json={"email": "nobody@example.com"})
        assert known.status_code == unknown.status_code == 200
        assert known.json() == unknown.json()

    def test_reset_confirm_with_bad_token(self, client):
        resp = client.post(
            f"{API}/auth/password-reset/confirm",
            json={"token": "garbage", "newPassword": "N3w-Password!"},
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["message"] == "Invalid or expired reset token."

    def test_reset_confirm_end_to_end(self, client, register):
        register()
        raw = client.app.state.password_auth.request_password_reset("ada@example.com")
        resp = client.post(f"{API}/auth/password-reset/confirm", json={"token": raw, "newPassword": "N3w-Password!"})
        assert resp.status_code == 200
        assert client.get(f"{API}/auth/me").status_code == 401
        login = client.post(f"{API}/auth/login", json={"email": "ada@example.com", "password": "N3w-Password!"})
        assert login.status_code == 200


class TestSessionRoutes:
    def test_list_and_revoke_all(self, client, register):
        register()
        current = client.cookies.get("accessToken")
        client.cookies.clear()
        client.post(f"{API}/auth/login", json={"email": "ada@example.com", "password": PASSWORD})
        client.cookies.clear()
        client.post(f"{API}/auth/login", json={"email": "ada@example.com", "password": PASSWORD})

        sessions = client.get(f"{API}/auth/sessions").json()
        assert len(sessions) == 3
        assert sum(1 for s in sessions if s["current"]) == 1
        assert sessions[0]["deviceInfo"]["userAgent"]

        resp = client.post(f"{API}/auth/sessions/revoke-all")
        assert resp.json() == {"revoked": 2}
        assert len(client.get(f"{API}/auth/sessions").json()) == 1
        assert _me_with_token(client, current).status_code == 401

    def test_revoke_one_and_unknown(self, client, register):
        register()
        session_id = client.get(f"{API}/auth/sessions").json()[0]["sessionId"]
        assert client.delete(f"{API}/auth/sessions/does-not-exist").status_code == 404
        assert client.delete(f"{API}/auth/sessions/{session_id}").status_code == 204
        assert client.get(f"{API}/auth/me").status_code == 401


class TestAccountDeletion:
    def test_delete_account(self, client, register):
        register()
        resp = client.delete(f"{API}/auth/me")
        assert resp.status_code == 200
        assert client.get(f"{API}/auth/me").status_code == 401
        login = client.post(f"{API}/auth/login", json={"email": "ada@example.com", "password": PASSWORD})
        assert login.status_code == 401
        # The email is free again.
        assert register().status_code == 201


class TestCacheOutage:
    def test_protected_routes_fail_closed(self, client, register):
        register()
        dead = MagicMock()
        for name in ("get", "set", "delete", "exists", "pipeline", "srem", "smembers", "ping"):
            getattr(dead, name).side_effect = redis.ConnectionError("connection refused")
        cache = RedisCache(dead)
        issuer = client.app.state.token_issuer
        issuer.sessions._cache = cache
        issuer.denylist._cache = cache

        assert client.get(f"{API}/auth/me").status_code == 401
        assert client.post(f"{API}/auth/refresh").status_code == 401

    def test_session_writes_are_503(self, client, register):
        issuer = client.app.state.token_issuer
        dead = MagicMock()
        dead.set.side_effect = redis.ConnectionError("connection refused")
        issuer.sessions._cache = RedisCache(dead)

        resp = register()
        assert resp.status_code == 503
        assert resp.json()["error"]["code"] == "service_unavailable"


class TestOAuthRoutes:
    def test_providers_empty_when_unconfigured(self, client):
        resp = client.get(f"{API}/auth/oauth/providers")
        assert resp.status_code == 200
        assert resp.json() == []

    def test_unconfigured_provider_is_400(self, client):
        resp = client.get(f"{API}/auth/oauth/google", params={"redirectUri": "http://localhost:3000/"})
        assert resp.status_code == 400

    def test_unknown_provider_is_422(self, client):
        resp = client.get(f"{API}/auth/oauth/myspace", params={"redirectUri": "http://localhost:3000/"})
        assert resp.status_code == 422

    def test_full_google_flow(self, client):
        stub = MagicMock()
        stub.authorization_url.side_effect = lambda config, state, verifier: f"{config.authorize_url}?state={state}"

        async def fetch_profile(config, code, verifier):
            return OAuthProfile(
                provider_user_id="g-42",
                email="grace@example.com",
                name="Grace",
                avatar_url=None,
                email_verified=True,
            )

        stub.fetch_profile = fetch_profile
        state = client.app.state
        state.oauth_linker = OAuthLinker(
            state.credential_store,
            state.state_store,
            {
                Provider.GOOGLE: ProviderConfig(
                    provider=Provider.GOOGLE,
                    label="Google",
                    client_id="id",
                    client_secret="secret",
                    redirect_uri="http://testserver/api/v1/auth/oauth/google/callback",
                    authorize_url="https://accounts.google.com/o/oauth2/v2/auth",
                    token_url="https://oauth2.googleapis.com/token",
                    scope="openid email profile",
                    use_pkce=True,
                )
            },
            stub,
            allowed_redirect_origins=["http://localhost:3000"],
        )

        assert client.get(f"{API}/auth/oauth/providers").json() == [{"name": "google", "label": "Google"}]

        start = client.get(
            f"{API}/auth/oauth/google",
            params={"redirectUri": "http://localhost:3000/welcome"},
            follow_redirects=False,
        )
        assert start.status_code == 302
        oauth_state = parse_qs(urlparse(start.headers["location"]).query)["state"][0]

        done = client.get(
            f"{API}/auth/oauth/google/callback",
            params={"code": "abc", "state": oauth_state},
            follow_redirects=False,
        )
        assert done.status_code == 302
        assert done.headers["location"] == "http://localhost:3000/welcome?isNewUser=true"

        me = client.get(f"{API}/auth/me").json()
        assert me["email"] == "grace@example.com"
        assert me["googleLinked"] is True
        assert me["hasPassword"] is False

        # Google is the only sign-in method: unlinking is refused.
        assert client.delete(f"{API}/auth/oauth/google").status_code == 400

        # Replaying the callback fails: state is single-use.
        replay = client.get(
            f"{API}/auth/oauth/google/callback",
            params={"code": "abc", "state": oauth_state},
            follow_redirects=False,
        )
        assert replay.status_code == 401

    def test_provider_error_param(self, client):
        resp = client.get(f"{API}/auth/oauth/github/callback", params={"error": "access_denied"})
        assert resp.status_code == 401


class TestPasskeyRoutes:
    def _register_passkey(self, client: TestClient, credential_id: bytes = b"cred-route") -> dict:
        options = client.post(f"{API}/auth/passkeys/register/options")
        assert options.status_code == 200, options.text
        assert options.json()["rp"]["id"] == "localhost"
        assert client.cookies.get("passkeyChallenge")

        verified = SimpleNamespace(
            credential_id=credential_id,
            credential_public_key=b"public-key",
            sign_count=0,
            credential_backed_up=False,
        )
        with patch("auth.passkeys.verify_registration_response", return_value=verified):
            return client.post(
                f"{API}/auth/passkeys/register/verify",
                json={"credential": {"id": bytes_to_base64url(credential_id), "response": {}}, "deviceName": "Phone"},
            )

    def test_register_list_rename_delete(self, client, register):
        register()
        resp = self._register_passkey(client)
        assert resp.status_code == 201, resp.text
        cred_id = resp.json()["credentialId"]
        assert resp.json()["deviceName"] == "Phone"

        listed = client.get(f"{API}/auth/passkeys").json()
        assert [p["credentialId"] for p in listed] == [cred_id]
        assert client.get(f"{API}/auth/me").json()["passkeyCount"] == 1

        renamed = client.patch(f"{API}/auth/passkeys/{cred_id}", json={"deviceName": "Old phone"})
        assert renamed.json()["deviceName"] == "Old phone"

        # Password still exists, so the passkey is not the last method.
        assert client.delete(f"{API}/auth/passkeys/{cred_id}").status_code == 204
        assert client.delete(f"{API}/auth/passkeys/{cred_id}").status_code == 404

    def test_challenge_is_single_use(self, client, register):
        register()
        assert self._register_passkey(client).status_code == 201
        with patch("auth.passkeys.verify_registration_response"):
            again = client.post(
                f"{API}/auth/passkeys/register/verify",
                json={"credential": {"id": "x", "response": {}}},
            )
        assert again.status_code == 400

    def test_registration_requires_auth(self, client):
        assert client.post(f"{API}/auth/passkeys/register/options").status_code == 401

    def test_passkey_login(self, client, register):
        register()
        cred_id = self._register_passkey(client).json()["credentialId"]
        client.post(f"{API}/auth/logout")

        options = client.post(f"{API}/auth/passkeys/login/options", json={"email": "ada@example.com"})
        assert options.status_code == 200
        assert options.json()["allowCredentials"][0]["id"] == cred_id

        with patch("auth.passkeys.verify_authentication_response", return_value=SimpleNamespace(new_sign_count=1)):
            resp = client.post(
                f"{API}/auth/passkeys/login/verify",
                json={"credential": {"id": cred_id, "rawId": cred_id, "response": {}, "type": "public-key"}},
            )
        assert resp.status_code == 200, resp.text
        assert resp.json()["user"]["email"] == "ada@example.com"
        assert client.get(f"{API}/auth/me").status_code == 200

    def test_login_verify_without_challenge(self, client):
        resp = client.post(f"{API}/auth/passkeys/login/verify", json={"credential": {"id": "x", "response": {}}})
        assert resp.status_code == 400

    def test_registration_challenge_cannot_sign_in(self, client, register):
        register()
        client.post(f"{API}/auth/passkeys/register/options")
        resp = client.post(f"{API}/auth/passkeys/login/verify", json={"credential": {"id": "x", "response": {}}})
        assert resp.status_code == 400
