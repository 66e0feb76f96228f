"""
core/errors.py -- Operational error taxonomy shared by auth/, cache/, and api/.

Every expected, user-facing failure is an AuthError subclass carrying the HTTP
status, a stable machine-readable code, and a human message. api/main.py turns
these into the standard ErrorResponse envelope; nothing below the route layer
imports FastAPI.

CacheUnavailableError is deliberately NOT an AuthError. It signals an
infrastructure failure: the caller decides whether to fail open (rate limits)
or fail closed (session and denylist checks), and the route layer renders it
as a generic 503 after logging the full context.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
or cache/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for operational (expected) errors."""

    status_code: int = 400
    code: str = "bad_request"
    default_message: str = "Bad request."

    def __init__(self, message: str | None = None, detail: str | None = None) -> None:
        self.message = message or self.default_message
        self.detail = detail
        super().__init__(self.message)


class BadRequestError(AuthError):
    status_code = 400
    code = "bad_request"
    default_message = "Bad request."


class UnauthorizedError(AuthError):
    status_code = 401
    code = "unauthorized"
    default_message = "Authentication required."


class TokenError(UnauthorizedError):
    """Token is malformed, has a bad signature, the wrong type, or a dead session."""

    code = "invalid_token"
    default_message = "Invalid token."


class TokenExpiredError(TokenError):
    """Token signature is fine but its exp claim is in the past."""

    code = "token_expired"
    default_message = "Token has expired."


class NotFoundError(AuthError):
    status_code = 404
    code = "not_found"
    default_message = "Resource not found."


class ConflictError(AuthError):
    status_code = 409
    code = "conflict"
    default_message = "Resource already exists."


class RateLimitedError(AuthError):
    status_code = 429
    code = "rate_limited"
    default_message = "Too many attempts. Try again later."

    def __init__(
        self,
        message: str | None = None,
        detail: str | None = None,
        retry_after: int | None = None,
    ) -> None:
        super().__init__(message, detail)
        self.retry_after = retry_after


class CacheUnavailableError(Exception):
    """The session/denylist cache could not be reached or returned an error."""
