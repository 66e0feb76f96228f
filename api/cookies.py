"""
api/cookies.py -- Auth cookie contract.

  accessToken       HttpOnly, SameSite=Strict, max_age = access token TTL
  refreshToken      HttpOnly, SameSite=Strict, max_age = refresh token TTL
  passkeyChallenge  HttpOnly, SameSite=Strict, max_age = challenge TTL;
                    holds only the nonce that keys the server-side challenge

secure is Settings.secure_cookies (true in production). Clearing a cookie
sends it again with max_age=0.

Every response that sets auth cookies also gets Cache-Control: no-store, so
no intermediary caches a response tied to a session.
"""

from __future__ import annotations

from starlette.responses import Response

from auth.dependencies import ACCESS_TOKEN_COOKIE, REFRESH_TOKEN_COOKIE
from auth.models import Tokens
from core.config import Settings

PASSKEY_CHALLENGE_COOKIE = "passkeyChallenge"


def _set(response: Response, name: str, value: str, max_age: int, settings: Settings) -> None:
    response.set_cookie(
        name,
        value=value,
        max_age=max_age,
        httponly=True,
        secure=settings.secure_cookies,
        samesite="strict",
        path="/",
    )


def _clear(response: Response, name: str, settings: Settings) -> None:
    response.set_cookie(
        name,
        value="",
        max_age=0,
        expires=0,
        httponly=True,
        secure=settings.secure_cookies,
        samesite="strict",
        path="/",
    )


def set_auth_cookies(response: Response, tokens: Tokens, settings: Settings) -> None:
    _set(response, ACCESS_TOKEN_COOKIE, tokens.access_token, settings.access_token_ttl_seconds, settings)
    _set(response, REFRESH_TOKEN_COOKIE, tokens.refresh_token, settings.refresh_token_ttl_seconds, settings)
    response.headers["Cache-Control"] = "no-store"


def clear_auth_cookies(response: Response, settings: Settings) -> None:
    _clear(response, ACCESS_TOKEN_COOKIE, settings)
    _clear(response, REFRESH_TOKEN_COOKIE, settings)
    response.headers["Cache-Control"] = "no-store"


def set_challenge_cookie(response: Response, nonce: str, settings: Settings) -> None:
    _set(response, PASSKEY_CHALLENGE_COOKIE, nonce, settings.webauthn_challenge_ttl_seconds, settings)
    response.headers["Cache-Control"] = "no-store"


def clear_challenge_cookie(response: Response, settings: Settings) -> None:
    _clear(response, PASSKEY_CHALLENGE_COOKIE, settings)
