"""
API request and response models for the Validiant auth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

JSON field names are camelCase on the wire (fullName, emailVerified, ...);
Python attributes stay snake_case. Requests accept either spelling.
"""

from __future__ import annotations

import re
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from auth.models import PasskeyCredential, User
from cache.sessions import Session

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

# bcrypt only uses the first 72 bytes of its input.
_BCRYPT_MAX_BYTES = 72
_PASSWORD_MIN_LENGTH = 8


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _validate_password_strength(value: str) -> str:
    """Apply the password policy shared by register, change, set, and reset."""
    if len(value) < _PASSWORD_MIN_LENGTH:
        raise ValueError(f"Password must be at least {_PASSWORD_MIN_LENGTH} characters")
    if len(value.encode("utf-8")) > _BCRYPT_MAX_BYTES:
        raise ValueError(f"Password must not exceed {_BCRYPT_MAX_BYTES} bytes")
    if not re.search(r"[A-Z]", value):
        raise ValueError("Password must contain at least one uppercase letter")
    if not re.search(r"[a-z]", value):
        raise ValueError("Password must contain at least one lowercase letter")
    if not re.search(r"\d", value):
        raise ValueError("Password must contain at least one number")
    if not re.search(r"[^A-Za-z0-9]", value):
        raise ValueError("Password must contain at least one special character")
    return value


# ---------------------------------------------------------------------------
# Request models -- password auth
# ---------------------------------------------------------------------------


class RegisterRequest(_CamelModel):
    email: str = Field(max_length=255, pattern=EMAIL_PATTERN)
    password: str
    full_name: str = Field(min_length=1, max_length=100)

    @field_validator("email")
    @classmethod
    def lower_email(cls, v: str) -> str:
        return v.lower()

    @field_validator("password")
    @classmethod
    def strong_password(cls, v: str) -> str:
        return _validate_password_strength(v)


class LoginRequest(_CamelModel):
    """Password login. The password is not policy-checked: that would leak the policy to probes."""

    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)


class RefreshRequest(_CamelModel):
    """Optional body for clients that cannot send the refreshToken cookie."""

    refresh_token: Optional[str] = None


class ChangePasswordRequest(_CamelModel):
    current_password: str = Field(min_length=1, max_length=255)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def strong_password(cls, v: str) -> str:
        return _validate_password_strength(v)


class SetPasswordRequest(_CamelModel):
    new_password: str

    @field_validator("new_password")
    @classmethod
    def strong_password(cls, v: str) -> str:
        return _validate_password_strength(v)


class PasswordResetRequest(_CamelModel):
    email: str = Field(min_length=1, max_length=255)


class PasswordResetConfirm(_CamelModel):
    token: str = Field(min_length=1, max_length=255)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def strong_password(cls, v: str) -> str:
        return _validate_password_strength(v)


# ---------------------------------------------------------------------------
# Request models -- passkeys
# ---------------------------------------------------------------------------


class PasskeyLoginOptionsRequest(_CamelModel):
    email: Optional[str] = Field(default=None, max_length=255)


class PasskeyRegisterVerifyRequest(_CamelModel):
    """credential is the PublicKeyCredential JSON produced by navigator.credentials.create()."""

    credential: dict[str, Any]
    device_name: Optional[str] = Field(default=None, max_length=100)


class PasskeyLoginVerifyRequest(_CamelModel):
    credential: dict[str, Any]


class PasskeyRenameRequest(_CamelModel):
    device_name: str = Field(min_length=1, max_length=100)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(_CamelModel):
    """Public view of a user. Never includes the password hash or provider ids."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    full_name: str
    avatar_url: Optional[str] = None
    role: str
    status: str
    email_verified: bool
    has_password: bool
    google_linked: bool
    github_linked: bool
    passkey_count: int = 0
    created_at: Optional[str] = None
    last_login_at: Optional[str] = None

    @classmethod
    def from_user(cls, user: User, passkey_count: int = 0) -> "UserResponse":
        return cls(
            id=user.id or "",
            email=user.email,
            full_name=user.full_name,
            avatar_url=user.avatar_url,
            role=user.role,
            status=user.status,
            email_verified=user.email_verified,
            has_password=user.password_hash is not None,
            google_linked=user.google_id is not None,
            github_linked=user.github_id is not None,
            passkey_count=passkey_count,
            created_at=user.created_at,
            last_login_at=user.last_login_at,
        )


class AuthResponse(_CamelModel):
    """Body of every sign-in response. Tokens travel only in HttpOnly cookies."""

    model_config = ConfigDict(frozen=True)

    user: UserResponse
    expires_in: int


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class SessionResponse(_CamelModel):
    model_config = ConfigDict(frozen=True)

    session_id: str
    created_at: str
    device_info: Optional[dict[str, Any]] = None
    current: bool = False

    @classmethod
    def from_session(cls, session: Session, current_session_id: str) -> "SessionResponse":
        return cls(
            session_id=session.session_id,
            created_at=session.created_at,
            device_info=session.device_info,
            current=session.session_id == current_session_id,
        )


class RevokeAllResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    revoked: int


class OAuthProviderInfo(BaseModel):
    """A configured OAuth provider, for rendering sign-in buttons."""

    model_config = ConfigDict(frozen=True)

    name: str
    label: str


class PasskeyResponse(_CamelModel):
    model_config = ConfigDict(frozen=True)

    credential_id: str
    device_name: Optional[str] = None
    transports: list[str] = []
    backed_up: bool = False
    created_at: Optional[str] = None
    last_used_at: Optional[str] = None

    @classmethod
    def from_credential(cls, cred: PasskeyCredential) -> "PasskeyResponse":
        return cls(
            credential_id=cred.credential_id,
            device_name=cred.device_name,
            transports=cred.transports,
            backed_up=cred.backed_up,
            created_at=cred.created_at,
            last_used_at=cred.last_used_at,
        )


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    cache: str = "ok"
    database: str = "ok"
