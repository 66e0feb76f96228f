"""
api/routes/v1/oauth.py -- OAuth 2.0 sign-in and provider linking.

Routes:
  GET    /api/v1/auth/oauth/providers            -- configured providers (public)
  GET    /api/v1/auth/oauth/{provider}           -- 302 to the provider consent page
  GET    /api/v1/auth/oauth/{provider}/callback  -- 302 back to the front end, cookies set
  DELETE /api/v1/auth/oauth/{provider}           -- unlink (requires auth)

The state parameter doubles as the key of the server-side record holding the
PKCE verifier and the final redirect target; it is consumed on first use, so a
replayed callback URL fails.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import RedirectResponse
from starlette.datastructures import URL

from api.cookies import set_auth_cookies
from api.models import MessageResponse, OAuthProviderInfo
from api.routes.v1.auth import device_info
from auth.dependencies import get_current_user
from auth.models import Provider, User
from auth.oauth import OAuthLinker
from auth.tokens import TokenIssuer
from core.errors import BadRequestError, UnauthorizedError

logger = logging.getLogger("validiant.api.oauth")

router = APIRouter()


@router.get("/auth/oauth/providers", response_model=list[OAuthProviderInfo])
async def list_providers(request: Request) -> list[OAuthProviderInfo]:
    """Return the configured OAuth providers.

    Public endpoint -- the login page calls this to decide which provider
    buttons to render. Returns an empty list if no OAuth credentials are set.
    """
    linker: OAuthLinker = request.app.state.oauth_linker
    return [OAuthProviderInfo(name=p.provider.value, label=p.label) for p in linker.enabled_providers()]


@router.get("/auth/oauth/{provider}")
async def oauth_login(
    request: Request,
    provider: Provider,
    redirect_uri: str = Query(alias="redirectUri", min_length=1, max_length=2048),
) -> RedirectResponse:
    """Redirect the browser to the provider's authorization endpoint."""
    linker: OAuthLinker = request.app.state.oauth_linker
    url = linker.initiate(provider, redirect_uri)
    resp = RedirectResponse(url, status_code=302)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.get("/auth/oauth/{provider}/callback")
async def oauth_callback(
    request: Request,
    provider: Provider,
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
) -> RedirectResponse:
    """Handle the provider redirect: exchange the code, resolve the user, sign in."""
    if error:
        logger.warning("OAuth provider returned error: provider=%s error=%s", provider.value, error)
        raise UnauthorizedError("Sign-in was cancelled or denied by the provider.")
    if not code or not state:
        raise BadRequestError("Missing code or state parameter.")

    linker: OAuthLinker = request.app.state.oauth_linker
    user, is_new_user, redirect_uri = await linker.callback(provider, code, state)

    issuer: TokenIssuer = request.app.state.token_issuer
    tokens = issuer.issue(user, device_info(request, provider=provider.value))
    target = URL(redirect_uri).include_query_params(isNewUser=str(is_new_user).lower())
    resp = RedirectResponse(str(target), status_code=302)
    set_auth_cookies(resp, tokens, request.app.state.settings)
    return resp


@router.delete("/auth/oauth/{provider}", response_model=MessageResponse)
async def unlink_provider(
    request: Request,
    provider: Provider,
    current_user: User = Depends(get_current_user),
) -> MessageResponse:
    """Unlink a provider. Refused when it is the account's only way to sign in."""
    user_id = current_user.require_id()
    linker: OAuthLinker = request.app.state.oauth_linker
    linker.unlink(user_id, provider)
    return MessageResponse(message=f"{provider.value} account unlinked.")
