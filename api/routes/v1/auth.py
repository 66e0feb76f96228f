"""
api/routes/v1/auth.py -- Password auth, token lifecycle, and session endpoints.

Routes:
  POST   /api/v1/auth/register                -- create account; sets cookies; 201
  POST   /api/v1/auth/login                   -- password login; sets cookies
  POST   /api/v1/auth/refresh                 -- rotate the token pair (single use)
  POST   /api/v1/auth/logout                  -- denylist tokens, clear cookies
  GET    /api/v1/auth/me                      -- current user (requires auth)
  DELETE /api/v1/auth/me                      -- delete own account (requires auth)
  POST   /api/v1/auth/password/change         -- requires auth + current password
  POST   /api/v1/auth/password/set            -- OAuth/passkey-only accounts
  POST   /api/v1/auth/password-reset/request  -- always 200
  POST   /api/v1/auth/password-reset/confirm  -- redeem token; ends all sessions
  GET    /api/v1/auth/sessions                -- list own sessions
  DELETE /api/v1/auth/sessions/{session_id}   -- revoke one own session
  POST   /api/v1/auth/sessions/revoke-all     -- revoke all but the current one

Security:
  Tokens are only ever returned in HttpOnly cookies, never in a body.
  Credential-accepting routes carry the per-IP limit from api.limiter on top
  of the per-account throttle in PasswordAuthenticator.
  Session routes pass the caller's user id to the issuer, which checks
  ownership, so one user cannot revoke another's session by guessing an id.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from api.cookies import clear_auth_cookies, set_auth_cookies
from api.limiter import auth_rate_limit, limiter
from api.models import (
    AuthResponse,
    ChangePasswordRequest,
    LoginRequest,
    MessageResponse,
    PasswordResetConfirm,
    PasswordResetRequest,
    RefreshRequest,
    RegisterRequest,
    RevokeAllResponse,
    SessionResponse,
    SetPasswordRequest,
    UserResponse,
)
from auth.dependencies import (
    REFRESH_TOKEN_COOKIE,
    AuthContext,
    extract_access_token,
    get_auth_context,
    get_current_user,
)
from auth.models import Tokens, User
from auth.passwords import PasswordAuthenticator
from auth.store import CredentialStore
from auth.tokens import TokenIssuer
from core.errors import UnauthorizedError

logger = logging.getLogger("validiant.api.auth")

# Auth policy:
# - POST   /auth/register, /auth/login:     public, rate-limited
# - POST   /auth/refresh:                   public -- the refresh token is the credential
# - POST   /auth/logout:                    public -- idempotent, works with expired tokens
# - POST   /auth/password-reset/*:          public -- request is rate-limited
# - everything else:                        requires auth (get_current_user / get_auth_context)
router = APIRouter()

_RESET_REQUESTED = "If an account exists for that email, a reset link has been sent."


def device_info(request: Request, **extra: Any) -> dict[str, Any]:
    """Client details recorded on the session for the sessions list."""
    return {
        **extra,
        "userAgent": request.headers.get("user-agent", "")[:255],
        "ip": request.client.host if request.client else None,
    }


def signed_in_response(
    request: Request, user: User, tokens: Tokens, status_code: int = 200
) -> JSONResponse:
    """Build the {user, expiresIn} body and attach the auth cookies."""
    store: CredentialStore = request.app.state.credential_store
    user_id = user.require_id()
    body = AuthResponse(
        user=UserResponse.from_user(user, store.count_passkeys(user_id)),
        expires_in=tokens.expires_in,
    )
    resp = JSONResponse(status_code=status_code, content=body.model_dump(by_alias=True))
    set_auth_cookies(resp, tokens, request.app.state.settings)
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(auth_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/register", response_model=AuthResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create a password account and sign it in."""
    password_auth: PasswordAuthenticator = request.app.state.password_auth
    user, tokens = password_auth.register(body.email, body.password, body.full_name, device_info(request))
    return signed_in_response(request, user, tokens, status_code=201)


@limiter.limit(auth_rate_limit)
@router.post("/auth/login", response_model=AuthResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password.

    Unknown email, wrong password, and password-less accounts all produce the
    same 401 so the response does not reveal which accounts exist.
    """
    password_auth: PasswordAuthenticator = request.app.state.password_auth
    user, tokens = password_auth.login(body.email, body.password, device_info(request))
    return signed_in_response(request, user, tokens)


@router.post("/auth/refresh", response_model=AuthResponse)
def refresh(request: Request, body: Optional[RefreshRequest] = None) -> JSONResponse:
    """Exchange a refresh token for a new pair. Each refresh token works once."""
    token = request.cookies.get(REFRESH_TOKEN_COOKIE) or (body.refresh_token if body else None)
    if not token:
        raise UnauthorizedError("Refresh token required.")
    issuer: TokenIssuer = request.app.state.token_issuer
    user, tokens = issuer.refresh(token, request.app.state.credential_store)
    return signed_in_response(request, user, tokens)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, body: Optional[RefreshRequest] = None) -> JSONResponse:
    """Revoke the presented tokens and clear the cookies.

    Succeeds without a valid session so a client can always reach a clean
    signed-out state.
    """
    issuer: TokenIssuer = request.app.state.token_issuer
    refresh_token = request.cookies.get(REFRESH_TOKEN_COOKIE) or (body.refresh_token if body else None)
    issuer.logout(extract_access_token(request), refresh_token)
    resp = JSONResponse(content=MessageResponse(message="Logged out.").model_dump())
    clear_auth_cookies(resp, request.app.state.settings)
    return resp


@limiter.limit(auth_rate_limit)
@router.post("/auth/password-reset/request", response_model=MessageResponse)
def request_password_reset(request: Request, body: PasswordResetRequest) -> MessageResponse:
    """Start a reset. The response is identical whether or not the account exists."""
    password_auth: PasswordAuthenticator = request.app.state.password_auth
    raw_token = password_auth.request_password_reset(body.email)
    if raw_token is not None:
        # Delivery is handled outside this service; the token never goes in the response.
        logger.info("Password reset token ready for delivery")
    return MessageResponse(message=_RESET_REQUESTED)


@router.post("/auth/password-reset/confirm", response_model=MessageResponse)
def confirm_password_reset(request: Request, body: PasswordResetConfirm) -> MessageResponse:
    password_auth: PasswordAuthenticator = request.app.state.password_auth
    password_auth.reset_password(body.token, body.new_password)
    return MessageResponse(message="Password has been reset. Sign in with your new password.")


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=UserResponse)
def me(request: Request, current_user: User = Depends(get_current_user)) -> JSONResponse:
    """Return the profile of the currently authenticated user."""
    user_id = current_user.require_id()
    passkey_count = request.app.state.credential_store.count_passkeys(user_id)
    body = UserResponse.from_user(current_user, passkey_count)
    resp = JSONResponse(content=body.model_dump(by_alias=True))
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.delete("/auth/me", response_model=MessageResponse)
def delete_account(request: Request, context: AuthContext = Depends(get_auth_context)) -> JSONResponse:
    """Soft-delete the caller's account, drop its passkeys, and end every session."""
    store: CredentialStore = request.app.state.credential_store
    issuer: TokenIssuer = request.app.state.token_issuer
    user_id = context.claims.user_id
    store.soft_delete_user(user_id)
    issuer.logout(context.access_token, request.cookies.get(REFRESH_TOKEN_COOKIE))
    revoked = issuer.revoke_all_sessions(user_id)
    logger.info("Account deleted: user=%s sessions_revoked=%d", user_id, revoked)
    resp = JSONResponse(content=MessageResponse(message="Account deleted.").model_dump())
    clear_auth_cookies(resp, request.app.state.settings)
    return resp


@router.post("/auth/password/change", response_model=MessageResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    context: AuthContext = Depends(get_auth_context),
) -> MessageResponse:
    """Change the password and sign out every other session."""
    password_auth: PasswordAuthenticator = request.app.state.password_auth
    password_auth.change_password(context.claims.user_id, body.current_password, body.new_password)
    request.app.state.token_issuer.revoke_all_sessions(context.claims.user_id, keep=context.claims.session_id)
    return MessageResponse(message="Password changed.")


@router.post("/auth/password/set", response_model=MessageResponse)
def set_password(
    request: Request,
    body: SetPasswordRequest,
    current_user: User = Depends(get_current_user),
) -> MessageResponse:
    """Add a password to an account that signs in only with OAuth or passkeys."""
    user_id = current_user.require_id()
    request.app.state.password_auth.set_password(user_id, body.new_password)
    return MessageResponse(message="Password set.")


@router.get("/auth/sessions", response_model=list[SessionResponse])
def list_sessions(request: Request, context: AuthContext = Depends(get_auth_context)) -> list[SessionResponse]:
    issuer: TokenIssuer = request.app.state.token_issuer
    sessions = issuer.list_sessions(context.claims.user_id)
    return [SessionResponse.from_session(s, context.claims.session_id) for s in sessions]


@router.delete("/auth/sessions/{session_id}", status_code=204)
def revoke_session(
    request: Request,
    session_id: str,
    context: AuthContext = Depends(get_auth_context),
) -> Response:
    """Revoke one of the caller's sessions. Ownership is checked by the issuer."""
    issuer: TokenIssuer = request.app.state.token_issuer
    issuer.revoke_session(context.claims.user_id, session_id)
    return Response(status_code=204)


@router.post("/auth/sessions/revoke-all", response_model=RevokeAllResponse)
def revoke_all_sessions(request: Request, context: AuthContext = Depends(get_auth_context)) -> RevokeAllResponse:
    """Sign out everywhere except the current session."""
    issuer: TokenIssuer = request.app.state.token_issuer
    revoked = issuer.revoke_all_sessions(context.claims.user_id, keep=context.claims.session_id)
    return RevokeAllResponse(revoked=revoked)
