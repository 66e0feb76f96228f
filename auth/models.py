"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Stores and
authenticators do the work; these only own the domain shape.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class UserStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    DELETED = "deleted"


class UserRole(str, Enum):
    USER = "user"
    ADMIN = "admin"


class Provider(str, Enum):
    """Supported OAuth providers. Each maps to its own column on User."""

    GOOGLE = "google"
    GITHUB = "github"


@dataclass
class User:
    """A local identity.

    email is always stored lower-cased; uniqueness is case-insensitive among
    non-deleted users.

    password_hash is None for OAuth-only and passkey-only accounts. google_id
    and github_id are None until that provider is linked. At least one of
    password_hash, google_id, github_id, or a passkey must exist at all times
    (see auth/methods.py).
    """

    email: str
    full_name: str
    id: str | None = None
    password_hash: str | None = None
    google_id: str | None = None
    github_id: str | None = None
    avatar_url: str | None = None
    role: str = UserRole.USER.value
    status: str = UserStatus.ACTIVE.value
    email_verified: bool = False
    created_at: str | None = None
    updated_at: str | None = None
    last_login_at: str | None = None
    deleted_at: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE.value

    def require_id(self) -> str:
        """Primary key of a stored user. Raises ValueError for an unsaved one."""
        if self.id is None:
            raise ValueError("User has not been saved.")
        return self.id

    def provider_id(self, provider: Provider) -> str | None:
        if provider is Provider.GOOGLE:
            return self.google_id
        return self.github_id


@dataclass
class PasskeyCredential:
    """A registered WebAuthn credential.

    credential_id and public_key are base64url strings of the raw bytes the
    authenticator produced. counter is the last accepted signature counter and
    only ever moves forward (0 -> 0 is the one tolerated non-increase).
    """

    credential_id: str
    user_id: str
    webauthn_user_id: str
    public_key: str
    counter: int = 0
    transports: list[str] = field(default_factory=list)
    backed_up: bool = False
    device_name: str | None = None
    created_at: str | None = None
    last_used_at: str | None = None


@dataclass
class PasswordResetToken:
    """A single-use reset token. Only the HMAC of the raw token is stored."""

    id: int
    user_id: str
    token_hash: str
    expires_at: str
    used_at: str | None = None
    created_at: str | None = None


@dataclass
class Tokens:
    """An issued access/refresh pair and the session both reference."""

    access_token: str
    refresh_token: str
    expires_in: int
    session_id: str
