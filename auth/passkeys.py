"""
auth/passkeys.py -- WebAuthn (FIDO2) passkey registration and sign-in.

Both ceremonies are two-phase:
  options -> the browser runs navigator.credentials.create()/get() -> verify.

Security design decisions:
  Challenges: generated by py_webauthn (32 random bytes). The route layer keeps
       them server-side in the one-time state store, keyed by a nonce in an
       HttpOnly cookie. The expected challenge is never read from the request
       body.

  User handle: HMAC-SHA256(secret, user id). Stable per user, but does not
       reveal the database id format to authenticators or relying parties.

  Signature counter: an assertion is accepted only if its counter is strictly
       greater than the stored one. Exception: 0 -> 0 is accepted, because many
       platform authenticators (Apple, Android, Windows Hello) always report 0.
       For those credentials counter-based clone detection is not available;
       this is a deliberate relaxation. The database update is compare-and-set,
       so two concurrent assertions with the same counter cannot both pass.

  Duplicate credential ids are rejected, never overwritten.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Any

from webauthn import (
    generate_authentication_options,
    generate_registration_options,
    options_to_json,
    verify_authentication_response,
    verify_registration_response,
)
from webauthn.helpers import base64url_to_bytes, bytes_to_base64url
from webauthn.helpers.exceptions import WebAuthnException
from webauthn.helpers.structs import (
    AuthenticatorSelectionCriteria,
    AuthenticatorTransport,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from auth.methods import AuthMethod, ensure_can_remove
from auth.models import PasskeyCredential, User
from auth.store import CredentialStore
from core.errors import BadRequestError, ConflictError, NotFoundError, UnauthorizedError

logger = logging.getLogger("validiant.auth.passkeys")


def check_sign_count(stored: int, received: int) -> bool:
    """Return True if received is an acceptable successor of stored.

    Strictly increasing, except that 0 -> 0 is tolerated for authenticators
    that never implement a counter.
    """
    if stored == 0 and received == 0:
        return True
    return received > stored


def _descriptors(credentials: list[PasskeyCredential]) -> list[PublicKeyCredentialDescriptor]:
    descriptors = []
    for cred in credentials:
        transports = []
        for t in cred.transports:
            try:
                transports.append(AuthenticatorTransport(t))
            except ValueError:
                continue
        descriptors.append(
            PublicKeyCredentialDescriptor(id=base64url_to_bytes(cred.credential_id), transports=transports or None)
        )
    return descriptors


class PasskeyVerifier:
    def __init__(
        self,
        store: CredentialStore,
        rp_id: str,
        rp_name: str,
        origin: str,
        handle_secret: str,
        user_verification: str = "preferred",
        timeout_ms: int = 60000,
    ) -> None:
        self.store = store
        self.rp_id = rp_id
        self.rp_name = rp_name
        self.origin = origin
        self._handle_secret = handle_secret
        self.user_verification = UserVerificationRequirement(user_verification)
        self.timeout_ms = timeout_ms

    @property
    def _require_uv(self) -> bool:
        return self.user_verification == UserVerificationRequirement.REQUIRED

    def user_handle(self, user_id: str) -> bytes:
        """Opaque WebAuthn user handle derived from the internal id."""
        return hmac.new(self._handle_secret.encode(), user_id.encode(), hashlib.sha256).digest()

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def registration_options(self, user: User) -> tuple[str, str]:
        """Build creation options for user. Returns (options_json, challenge_b64url).

        Already-registered credentials are listed in excludeCredentials so the
        same authenticator cannot be enrolled twice.
        """
        user_id = user.require_id()
        options = generate_registration_options(
            rp_id=self.rp_id,
            rp_name=self.rp_name,
            user_id=self.user_handle(user_id),
            user_name=user.email,
            user_display_name=user.full_name,
            timeout=self.timeout_ms,
            exclude_credentials=_descriptors(self.store.list_passkeys(user_id)),
            authenticator_selection=AuthenticatorSelectionCriteria(
                resident_key=ResidentKeyRequirement.PREFERRED,
                user_verification=self.user_verification,
            ),
        )
        return options_to_json(options), bytes_to_base64url(options.challenge)

    def verify_registration(
        self,
        user_id: str,
        response: dict[str, Any],
        expected_challenge: str,
        device_name: str | None = None,
    ) -> PasskeyCredential:
        """Verify an attestation and persist the new credential.

        Raises BadRequestError if verification fails or the credential id is
        already registered (to anyone).
        """
        user = self.store.get_by_id(user_id)
        if user is None or not user.is_active:
            raise UnauthorizedError("Account is not available.")

        try:
            verified = verify_registration_response(
                credential=response,
                expected_challenge=base64url_to_bytes(expected_challenge),
                expected_rp_id=self.rp_id,
                expected_origin=self.origin,
                require_user_verification=self._require_uv,
            )
        except (WebAuthnException, ValueError) as exc:
            logger.warning("Passkey registration rejected: user=%s reason=%s", user_id, exc)
            raise BadRequestError("Passkey registration could not be verified.") from exc

        credential_id = bytes_to_base64url(verified.credential_id)
        if self.store.get_passkey(credential_id) is not None:
            logger.warning("Duplicate passkey credential id rejected: user=%s", user_id)
            raise BadRequestError("This passkey is already registered.")

        transports = response.get("response", {}).get("transports") or []
        try:
            credential = self.store.create_passkey(
                PasskeyCredential(
                    credential_id=credential_id,
                    user_id=user_id,
                    webauthn_user_id=bytes_to_base64url(self.user_handle(user_id)),
                    public_key=bytes_to_base64url(verified.credential_public_key),
                    counter=verified.sign_count,
                    transports=[str(t) for t in transports],
                    backed_up=bool(verified.credential_backed_up),
                    device_name=device_name or "Passkey",
                )
            )
        except ConflictError as exc:
            raise BadRequestError("This passkey is already registered.") from exc
        logger.info("Passkey registered: user=%s backed_up=%s", user_id, credential.backed_up)
        return credential

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def authentication_options(self, email: str | None = None) -> tuple[str, str]:
        """Build request options. Returns (options_json, challenge_b64url).

        With an email hint, allowCredentials lists that user's passkeys. An
        unknown email yields the same shape as no hint (discoverable flow), so
        this endpoint cannot be used to probe for accounts.
        """
        allow: list[PasskeyCredential] = []
        if email:
            user = self.store.get_by_email(email)
            if user is not None and user.id is not None:
                allow = self.store.list_passkeys(user.id)
        options = generate_authentication_options(
            rp_id=self.rp_id,
            timeout=self.timeout_ms,
            allow_credentials=_descriptors(allow),
            user_verification=self.user_verification,
        )
        return options_to_json(options), bytes_to_base64url(options.challenge)

    def verify_authentication(
        self, response: dict[str, Any], expected_challenge: str
    ) -> tuple[User, PasskeyCredential]:
        """Verify an assertion and advance the credential's counter.

        Raises UnauthorizedError for an unknown credential, an inactive owner,
        a bad signature/origin/RP id, or a non-increasing counter.
        """
        credential_id = response.get("id") or response.get("rawId")
        credential = self.store.get_passkey(credential_id) if credential_id else None
        if credential is None:
            raise UnauthorizedError("Unknown passkey.")

        user = self.store.get_by_id(credential.user_id)
        if user is None or not user.is_active:
            raise UnauthorizedError("Account is not available.")

        user_handle = response.get("response", {}).get("userHandle")
        if user_handle and user_handle != credential.webauthn_user_id:
            logger.warning("Passkey user handle mismatch: credential owner=%s", user.id)
            raise UnauthorizedError("Passkey verification failed.")

        try:
            verified = verify_authentication_response(
                credential=response,
                expected_challenge=base64url_to_bytes(expected_challenge),
                expected_rp_id=self.rp_id,
                expected_origin=self.origin,
                credential_public_key=base64url_to_bytes(credential.public_key),
                credential_current_sign_count=credential.counter,
                require_user_verification=self._require_uv,
            )
        except (WebAuthnException, ValueError) as exc:
            logger.warning("Passkey assertion rejected: user=%s reason=%s", user.id, exc)
            raise UnauthorizedError("Passkey verification failed.") from exc

        new_counter = verified.new_sign_count
        if not check_sign_count(credential.counter, new_counter):
            logger.warning(
                "Passkey counter did not increase (stored=%d received=%d): possible cloned authenticator, user=%s",
                credential.counter,
                new_counter,
                user.id,
            )
            raise UnauthorizedError("Passkey verification failed.")
        if not self.store.advance_passkey_counter(credential.credential_id, new_counter):
            logger.warning("Passkey counter lost a concurrent update: user=%s", user.id)
            raise UnauthorizedError("Passkey verification failed.")

        self.store.update_last_login(credential.user_id)
        logger.info("Passkey sign-in: user=%s", credential.user_id)
        updated = self.store.get_passkey(credential.credential_id) or credential
        return self.store.get_by_id(credential.user_id) or user, updated

    # ------------------------------------------------------------------
    # Management
    # ------------------------------------------------------------------

    def list_passkeys(self, user_id: str) -> list[PasskeyCredential]:
        return self.store.list_passkeys(user_id)

    def rename_passkey(self, user_id: str, credential_id: str, device_name: str) -> PasskeyCredential:
        if not self.store.rename_passkey(user_id, credential_id, device_name):
            raise NotFoundError("Passkey not found.")
        credential = self.store.get_passkey(credential_id)
        if credential is None:
            raise NotFoundError("Passkey not found.")
        return credential

    def delete_passkey(self, user_id: str, credential_id: str) -> None:
        """Remove a passkey, refusing if it is the user's last sign-in method."""
        user = self.store.get_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found.")
        credential = self.store.get_passkey(credential_id)
        if credential is None or credential.user_id != user_id:
            raise NotFoundError("Passkey not found.")
        ensure_can_remove(user, self.store.count_passkeys(user_id), AuthMethod.PASSKEY)
        self.store.delete_passkey(user_id, credential_id)
        logger.info("Passkey deleted: user=%s", user_id)
