"""
auth/oauth.py -- OAuth 2.0 sign-in and account linking (Google, GitHub).

Flow:
  1. initiate(provider, redirect_uri): store {provider, code_verifier,
     redirect_uri} under a fresh random state for 10 minutes and return the
     provider's authorization URL. Google gets a PKCE S256 challenge.
  2. callback(provider, code, state): consume the state atomically (a second
     callback with the same state fails), exchange the code (+ verifier),
     fetch the normalized profile, then resolve it to a local identity.

Resolution, in order:
  1. By (provider, provider user id): refresh name/avatar, stamp last login.
  2. By case-insensitive email: link the provider to that account. The
     provider's email_verified claim can raise the local flag, never lower it.
  3. Otherwise create a password-less user with the provider id set.
An inactive account is refused in steps 1 and 2 before anything is written.
A concurrent callback that loses the insert race re-resolves instead of
creating a second user.

The network half (Authlib AsyncOAuth2Client over httpx) sits behind
AuthlibOAuthClient so the linker can be exercised without a provider.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Protocol

import httpx
from authlib.common.security import generate_token
from authlib.integrations.httpx_client import AsyncOAuth2Client, OAuthError

from auth.methods import AuthMethod, ensure_can_remove
from auth.models import Provider, User
from auth.store import CredentialStore
from cache.sessions import OAUTH_PKCE_NAMESPACE, OneTimeStateStore
from core.errors import BadRequestError, ConflictError, NotFoundError, UnauthorizedError
from core.logging import redact

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("validiant.auth.oauth")

# ---------------------------------------------------------------------------
# Provider configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProviderConfig:
    provider: Provider
    label: str
    client_id: str
    client_secret: str
    redirect_uri: str
    authorize_url: str
    token_url: str
    scope: str
    use_pkce: bool


def configure_providers(settings: Settings) -> dict[Provider, ProviderConfig]:
    """Return configs for every provider whose id, secret, and redirect URI are set."""
    providers: dict[Provider, ProviderConfig] = {}
    if settings.google_enabled:
        providers[Provider.GOOGLE] = ProviderConfig(
            provider=Provider.GOOGLE,
            label="Google",
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            redirect_uri=settings.google_redirect_uri,
            authorize_url="https://accounts.google.com/o/oauth2/v2/auth",
            token_url="https://oauth2.googleapis.com/token",  # noqa: S106 -- URL, not a password
            scope="openid email profile",
            use_pkce=True,
        )
        logger.info("Google OAuth provider configured")
    if settings.github_enabled:
        providers[Provider.GITHUB] = ProviderConfig(
            provider=Provider.GITHUB,
            label="GitHub",
            client_id=settings.github_client_id,
            client_secret=settings.github_client_secret,
            redirect_uri=settings.github_redirect_uri,
            authorize_url="https://github.com/login/oauth/authorize",
            token_url="https://github.com/login/oauth/access_token",  # noqa: S106 -- URL, not a password
            scope="read:user user:email",
            use_pkce=False,
        )
        logger.info("GitHub OAuth provider configured")
    return providers


@dataclass(frozen=True)
class OAuthProfile:
    """Provider profile normalized across providers."""

    provider_user_id: str
    email: str
    name: str
    avatar_url: str | None
    email_verified: bool


# ---------------------------------------------------------------------------
# Provider HTTP client
# ---------------------------------------------------------------------------


class OAuthClient(Protocol):
    def authorization_url(self, config: ProviderConfig, state: str, code_verifier: str | None) -> str: ...

    async def fetch_profile(self, config: ProviderConfig, code: str, code_verifier: str | None) -> OAuthProfile: ...


class AuthlibOAuthClient:
    """Authorization URL building, code exchange, and profile fetch via Authlib."""

    def __init__(self, timeout: float = 10.0) -> None:
        self.timeout = timeout

    def _client(self, config: ProviderConfig) -> AsyncOAuth2Client:
        return AsyncOAuth2Client(
            client_id=config.client_id,
            client_secret=config.client_secret,
            scope=config.scope,
            redirect_uri=config.redirect_uri,
            code_challenge_method="S256" if config.use_pkce else None,
            timeout=self.timeout,
        )

    def authorization_url(self, config: ProviderConfig, state: str, code_verifier: str | None) -> str:
        client = self._client(config)
        url, _state = client.create_authorization_url(config.authorize_url, state=state, code_verifier=code_verifier)
        return url

    async def fetch_profile(self, config: ProviderConfig, code: str, code_verifier: str | None) -> OAuthProfile:
        """Exchange code for a provider token and fetch the user's profile.

        Raises UnauthorizedError if the provider rejects the code or cannot be
        reached within the timeout.
        """
        try:
            async with self._client(config) as client:
                if code_verifier:
                    await client.fetch_token(config.token_url, code=code, code_verifier=code_verifier)
                else:
                    await client.fetch_token(config.token_url, code=code)
                if config.provider is Provider.GOOGLE:
                    return await _google_profile(client)
                return await _github_profile(client)
        except OAuthError as exc:
            logger.warning("%s rejected the authorization code: %s", config.label, exc.error)
            raise UnauthorizedError(f"{config.label} sign-in failed.") from exc
        except httpx.HTTPError as exc:
            logger.error("%s request failed: %s", config.label, exc)
            raise UnauthorizedError(f"{config.label} sign-in failed.") from exc


async def _google_profile(client: AsyncOAuth2Client) -> OAuthProfile:
    resp = await client.get("https://www.googleapis.com/oauth2/v2/userinfo")
    resp.raise_for_status()
    data = resp.json()
    return OAuthProfile(
        provider_user_id=str(data["id"]),
        email=data.get("email") or "",
        name=data.get("name") or "",
        avatar_url=data.get("picture"),
        email_verified=bool(data.get("verified_email", False)),
    )


async def _github_profile(client: AsyncOAuth2Client) -> OAuthProfile:
    """GitHub needs two calls: /user for the stable id, /user/emails for the address."""
    headers = {"Accept": "application/vnd.github+json", "User-Agent": "Validiant-API"}
    resp = await client.get("https://api.github.com/user", headers=headers)
    resp.raise_for_status()
    data = resp.json()

    emails_resp = await client.get("https://api.github.com/user/emails", headers=headers)
    emails_resp.raise_for_status()
    emails = emails_resp.json()
    primary = next((e for e in emails if e.get("primary")), emails[0] if emails else None)

    return OAuthProfile(
        provider_user_id=str(data["id"]),
        email=primary["email"] if primary else "",
        name=data.get("name") or data.get("login") or "",
        avatar_url=data.get("avatar_url"),
        email_verified=bool(primary and primary.get("verified")),
    )


# ---------------------------------------------------------------------------
# Linker
# ---------------------------------------------------------------------------


class OAuthLinker:
    def __init__(
        self,
        store: CredentialStore,
        state_store: OneTimeStateStore,
        providers: dict[Provider, ProviderConfig],
        client: OAuthClient,
        allowed_redirect_origins: list[str],
        state_ttl_seconds: int = 600,
    ) -> None:
        self.store = store
        self.state_store = state_store
        self.providers = providers
        self.client = client
        self.allowed_redirect_origins = [o.rstrip("/") for o in allowed_redirect_origins]
        self.state_ttl_seconds = state_ttl_seconds

    def enabled_providers(self) -> list[ProviderConfig]:
        return list(self.providers.values())

    def _config(self, provider: Provider) -> ProviderConfig:
        config = self.providers.get(provider)
        if config is None:
            raise BadRequestError(f"{provider.value} sign-in is not configured.")
        return config

    def initiate(self, provider: Provider, redirect_uri: str) -> str:
        """Start the authorization flow and return the provider URL to redirect to.

        redirect_uri is where the browser lands after the callback; it must be
        on one of the allowed front-end origins.
        """
        config = self._config(provider)
        if not any(redirect_uri == o or redirect_uri.startswith(o + "/") for o in self.allowed_redirect_origins):
            raise BadRequestError("Redirect URI is not allowed.")

        code_verifier = generate_token(64) if config.use_pkce else None
        state = self.state_store.put(
            OAUTH_PKCE_NAMESPACE,
            {
                "provider": provider.value,
                "redirect_uri": redirect_uri,
                "code_verifier": code_verifier,
                "created_at": datetime.now(timezone.utc).isoformat(),
            },
            self.state_ttl_seconds,
        )
        logger.info("OAuth initiated: provider=%s state=%s", provider.value, redact(state))
        return self.client.authorization_url(config, state, code_verifier)

    async def callback(self, provider: Provider, code: str, state: str) -> tuple[User, bool, str]:
        """Finish the flow. Returns (user, is_new_user, redirect_uri).

        Raises UnauthorizedError if the state is missing, expired, or already
        consumed, or if the resolved account is not active.
        """
        config = self._config(provider)
        data = self.state_store.consume(OAUTH_PKCE_NAMESPACE, state)
        if data is None:
            raise UnauthorizedError("Invalid or expired OAuth state.")
        if data.get("provider") != provider.value:
            raise BadRequestError("OAuth state was issued for a different provider.")
        code_verifier = data.get("code_verifier")
        if config.use_pkce and not code_verifier:
            raise BadRequestError("Missing PKCE code verifier.")

        profile = await self.client.fetch_profile(config, code, code_verifier)
        if not profile.email or not profile.provider_user_id:
            raise BadRequestError(f"{config.label} did not return an email address.")

        user, is_new_user = self.resolve(provider, profile)
        return user, is_new_user, data["redirect_uri"]

    def resolve(self, provider: Provider, profile: OAuthProfile) -> tuple[User, bool]:
        """Map a provider profile to exactly one local identity."""
        return self._resolve_once(provider, profile)

    def _retry(self, provider: Provider, profile: OAuthProfile, first_pass: bool) -> tuple[User, bool]:
        # Lost an insert/link race to a concurrent callback; what it wrote is
        # now visible, so one more pass finds it.
        if not first_pass:
            raise ConflictError("Could not resolve the OAuth account. Try again.")
        logger.info("OAuth resolution raced, retrying: provider=%s", provider.value)
        return self._resolve_once(provider, profile, first_pass=False)

    def _resolve_once(self, provider: Provider, profile: OAuthProfile, first_pass: bool = True) -> tuple[User, bool]:
        # 1. Known provider account.
        user = self.store.get_by_provider(provider, profile.provider_user_id)
        if user is not None:
            user_id = user.require_id()
            self._require_active(user)
            changes = {}
            if profile.name and profile.name != user.full_name:
                changes["full_name"] = profile.name
            if profile.avatar_url and profile.avatar_url != user.avatar_url:
                changes["avatar_url"] = profile.avatar_url
            if changes:
                self.store.update_user(user_id, **changes)
            self.store.update_last_login(user_id)
            logger.info("OAuth login: provider=%s user=%s", provider.value, user_id)
            return self._reload(user_id), False

        # 2. Existing account with the same email: link.
        user = self.store.get_by_email(profile.email)
        if user is not None:
            user_id = user.require_id()
            self._require_active(user)
            if user.provider_id(provider) is not None:
                raise ConflictError(f"A different {provider.value} account is already linked to this user.")
            try:
                self.store.set_provider_id(user_id, provider, profile.provider_user_id)
            except ConflictError:
                return self._retry(provider, profile, first_pass)
            # emailVerified only ever moves from False to True.
            changes = {}
            if profile.email_verified and not user.email_verified:
                changes["email_verified"] = True
            if profile.avatar_url and not user.avatar_url:
                changes["avatar_url"] = profile.avatar_url
            if changes:
                self.store.update_user(user_id, **changes)
            self.store.update_last_login(user_id)
            logger.info(
                "OAuth provider linked: provider=%s user=%s email_verified=%s",
                provider.value,
                user_id,
                profile.email_verified,
            )
            return self._reload(user_id), False

        # 3. New identity.
        new_user = User(
            email=profile.email.lower(),
            full_name=profile.name or profile.email.split("@")[0],
            avatar_url=profile.avatar_url,
            email_verified=profile.email_verified,
            last_login_at=datetime.now(timezone.utc).isoformat(),
        )
        if provider is Provider.GOOGLE:
            new_user.google_id = profile.provider_user_id
        else:
            new_user.github_id = profile.provider_user_id
        try:
            created = self.store.create_user(new_user)
        except ConflictError:
            return self._retry(provider, profile, first_pass)
        logger.info("User created via OAuth: provider=%s user=%s", provider.value, created.id)
        return created, True

    def unlink(self, user_id: str, provider: Provider) -> None:
        """Remove a linked provider, refusing if it is the last way to sign in."""
        user = self.store.get_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found.")
        if user.provider_id(provider) is None:
            raise BadRequestError(f"No {provider.value} account is linked.")
        method = AuthMethod.GOOGLE if provider is Provider.GOOGLE else AuthMethod.GITHUB
        ensure_can_remove(user, self.store.count_passkeys(user_id), method)
        self.store.set_provider_id(user_id, provider, None)
        logger.info("OAuth provider unlinked: provider=%s user=%s", provider.value, user_id)

    @staticmethod
    def _require_active(user: User) -> None:
        if not user.is_active:
            logger.warning("OAuth sign-in refused for %s account: user=%s", user.status, user.id)
            raise UnauthorizedError("This account is not active.")

    def _reload(self, user_id: str) -> User:
        user = self.store.get_by_id(user_id)
        if user is None:
            raise UnauthorizedError("Account is not available.")
        return user
