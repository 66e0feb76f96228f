"""
api/routes/v1/passkeys.py -- WebAuthn passkey ceremonies and management.

Routes:
  POST   /api/v1/auth/passkeys/register/options   -- creation options (requires auth)
  POST   /api/v1/auth/passkeys/register/verify    -- store the new credential (requires auth)
  POST   /api/v1/auth/passkeys/login/options      -- request options (public)
  POST   /api/v1/auth/passkeys/login/verify       -- sign in; sets cookies (public)
  GET    /api/v1/auth/passkeys                    -- list own passkeys
  PATCH  /api/v1/auth/passkeys/{credential_id}    -- rename
  DELETE /api/v1/auth/passkeys/{credential_id}    -- delete (last-method guard)

Challenge handling:
  The options routes store {ceremony, challenge, user_id} in the one-time
  state store and hand the browser only the random key, in the HttpOnly
  passkeyChallenge cookie. The verify routes consume that record, so each
  challenge verifies at most one response and a registration challenge can
  never satisfy a sign-in (or the reverse).
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from api.cookies import PASSKEY_CHALLENGE_COOKIE, clear_challenge_cookie, set_challenge_cookie
from api.limiter import auth_rate_limit, limiter
from api.models import (
    PasskeyLoginOptionsRequest,
    PasskeyLoginVerifyRequest,
    PasskeyRegisterVerifyRequest,
    PasskeyRenameRequest,
    PasskeyResponse,
)
from api.routes.v1.auth import device_info, signed_in_response
from auth.dependencies import get_current_user
from auth.models import User
from auth.passkeys import PasskeyVerifier
from cache.sessions import WEBAUTHN_CHALLENGE_NAMESPACE, OneTimeStateStore
from core.errors import BadRequestError

logger = logging.getLogger("validiant.api.passkeys")

router = APIRouter()

_REGISTRATION = "registration"
_AUTHENTICATION = "authentication"


def _options_response(
    request: Request, options_json: str, challenge: str, ceremony: str, user_id: str | None
) -> Response:
    state_store: OneTimeStateStore = request.app.state.state_store
    settings = request.app.state.settings
    nonce = state_store.put(
        WEBAUTHN_CHALLENGE_NAMESPACE,
        {"ceremony": ceremony, "challenge": challenge, "user_id": user_id},
        settings.webauthn_challenge_ttl_seconds,
    )
    resp = Response(content=options_json, media_type="application/json")
    set_challenge_cookie(resp, nonce, settings)
    return resp


def _consume_challenge(request: Request, ceremony: str) -> dict[str, Any]:
    """Take the pending challenge for this browser, or fail BadRequest."""
    state_store: OneTimeStateStore = request.app.state.state_store
    nonce = request.cookies.get(PASSKEY_CHALLENGE_COOKIE, "")
    data = state_store.consume(WEBAUTHN_CHALLENGE_NAMESPACE, nonce)
    if data is None or data.get("ceremony") != ceremony:
        raise BadRequestError("Passkey challenge is missing or expired. Start again.")
    return data


# ---------------------------------------------------------------------------
# Registration (authenticated)
# ---------------------------------------------------------------------------


@router.post("/auth/passkeys/register/options")
def registration_options(request: Request, current_user: User = Depends(get_current_user)) -> Response:
    """Return PublicKeyCredentialCreationOptions for navigator.credentials.create()."""
    passkeys: PasskeyVerifier = request.app.state.passkeys
    options_json, challenge = passkeys.registration_options(current_user)
    return _options_response(request, options_json, challenge, _REGISTRATION, current_user.id)


@router.post("/auth/passkeys/register/verify", response_model=PasskeyResponse, status_code=201)
def registration_verify(
    request: Request,
    body: PasskeyRegisterVerifyRequest,
    current_user: User = Depends(get_current_user),
) -> JSONResponse:
    user_id = current_user.require_id()
    data = _consume_challenge(request, _REGISTRATION)
    if data.get("user_id") != user_id:
        raise BadRequestError("Passkey challenge is missing or expired. Start again.")

    passkeys: PasskeyVerifier = request.app.state.passkeys
    credential = passkeys.verify_registration(user_id, body.credential, data["challenge"], body.device_name)
    resp = JSONResponse(
        status_code=201,
        content=PasskeyResponse.from_credential(credential).model_dump(by_alias=True),
    )
    clear_challenge_cookie(resp, request.app.state.settings)
    return resp


# ---------------------------------------------------------------------------
# Authentication (public)
# ---------------------------------------------------------------------------


@router.post("/auth/passkeys/login/options")
def login_options(request: Request, body: PasskeyLoginOptionsRequest | None = None) -> Response:
    """Return PublicKeyCredentialRequestOptions for navigator.credentials.get().

    Without an email the browser offers any discoverable credential for this
    relying party.
    """
    passkeys: PasskeyVerifier = request.app.state.passkeys
    options_json, challenge = passkeys.authentication_options(body.email if body else None)
    return _options_response(request, options_json, challenge, _AUTHENTICATION, None)


@limiter.limit(auth_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/passkeys/login/verify")
def login_verify(request: Request, body: PasskeyLoginVerifyRequest) -> JSONResponse:
    """Verify an assertion and sign the user in."""
    data = _consume_challenge(request, _AUTHENTICATION)
    passkeys: PasskeyVerifier = request.app.state.passkeys
    user, _credential = passkeys.verify_authentication(body.credential, data["challenge"])
    tokens = request.app.state.token_issuer.issue(user, device_info(request, method="passkey"))
    resp = signed_in_response(request, user, tokens)
    clear_challenge_cookie(resp, request.app.state.settings)
    return resp


# ---------------------------------------------------------------------------
# Management (authenticated)
# ---------------------------------------------------------------------------


@router.get("/auth/passkeys", response_model=list[PasskeyResponse])
def list_passkeys(request: Request, current_user: User = Depends(get_current_user)) -> list[PasskeyResponse]:
    user_id = current_user.require_id()
    passkeys: PasskeyVerifier = request.app.state.passkeys
    return [PasskeyResponse.from_credential(c) for c in passkeys.list_passkeys(user_id)]


@router.patch("/auth/passkeys/{credential_id}", response_model=PasskeyResponse)
def rename_passkey(
    request: Request,
    credential_id: str,
    body: PasskeyRenameRequest,
    current_user: User = Depends(get_current_user),
) -> PasskeyResponse:
    user_id = current_user.require_id()
    passkeys: PasskeyVerifier = request.app.state.passkeys
    credential = passkeys.rename_passkey(user_id, credential_id, body.device_name)
    return PasskeyResponse.from_credential(credential)


@router.delete("/auth/passkeys/{credential_id}", status_code=204)
def delete_passkey(
    request: Request,
    credential_id: str,
    current_user: User = Depends(get_current_user),
) -> Response:
    """Delete a passkey. Refused if it is the account's only sign-in method."""
    user_id = current_user.require_id()
    passkeys: PasskeyVerifier = request.app.state.passkeys
    passkeys.delete_passkey(user_id, credential_id)
    return Response(status_code=204)
