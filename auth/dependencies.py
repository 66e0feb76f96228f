"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

The access token is read from, in priority order:
  1. The "accessToken" HttpOnly cookie -- browser clients.
  2. Authorization: Bearer <token> -- mobile and API clients.

A token authenticates the request only if all of these hold:
  - signature, issuer, audience, and expiry verify;
  - the exact token string is not on the denylist (fails closed);
  - the session it references still exists (fails closed);
  - the user exists and is active.

Failures raise AuthError subclasses; api/main.py renders them as 401s.

Layer rule: no imports from api/.
  auth/dependencies.py may import from fastapi (for Request) because this
  module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import Depends, Request

from auth.models import User
from auth.tokens import AccessClaims, TokenIssuer
from core.errors import TokenError, UnauthorizedError

ACCESS_TOKEN_COOKIE = "accessToken"
REFRESH_TOKEN_COOKIE = "refreshToken"


@dataclass
class AuthContext:
    """The authenticated user plus the token and claims that proved it."""

    user: User
    claims: AccessClaims
    access_token: str


def extract_access_token(request: Request) -> str | None:
    token = request.cookies.get(ACCESS_TOKEN_COOKIE)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:].strip()
    return token or None


def get_auth_context(request: Request) -> AuthContext:
    """Authenticate the request or raise UnauthorizedError / TokenError.

    Use as a FastAPI dependency when the route needs the session id or the raw
    token (logout, session management).
    """
    token = extract_access_token(request)
    if token is None:
        raise UnauthorizedError("Authentication required.")

    issuer: TokenIssuer = request.app.state.token_issuer
    claims = issuer.verify_access(token)
    if issuer.is_revoked(token):
        raise TokenError("Token has been revoked.")
    if not issuer.sessions.is_active(claims.session_id):
        raise TokenError("Session expired or revoked.")

    user = request.app.state.credential_store.get_by_id(claims.user_id)
    if user is None or not user.is_active:
        raise UnauthorizedError("Account is not available.")
    return AuthContext(user=user, claims=claims, access_token=token)


def get_current_user(context: AuthContext = Depends(get_auth_context)) -> User:
    """Require authentication and return the user.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...
    """
    return context.user
