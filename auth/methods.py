"""
auth/methods.py -- The "last authentication method" invariant.

A user must always keep at least one way to sign in: a password hash, a linked
Google account, a linked GitHub account, or one or more passkeys. Every path
that removes one of these (OAuth unlink, passkey delete) calls
ensure_can_remove() first, so the rule lives in exactly one place.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from enum import Enum

from auth.models import User
from core.errors import BadRequestError


class AuthMethod(str, Enum):
    PASSWORD = "password"
    GOOGLE = "google"
    GITHUB = "github"
    PASSKEY = "passkey"


def auth_method_count(user: User, passkey_count: int) -> int:
    """Count the independent ways this user can currently authenticate.

    Each passkey counts separately: losing one of two passkeys still leaves
    the user able to sign in.
    """
    count = passkey_count
    if user.password_hash:
        count += 1
    if user.google_id:
        count += 1
    if user.github_id:
        count += 1
    return count


def ensure_can_remove(user: User, passkey_count: int, removing: AuthMethod) -> None:
    """Raise BadRequestError if removing one `removing` method would leave none."""
    if auth_method_count(user, passkey_count) <= 1:
        raise BadRequestError(
            f"Cannot remove {removing.value}: it is your only remaining sign-in method.",
            detail="Add a password, passkey, or another linked account first.",
        )
