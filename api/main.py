"""
api/main.py -- FastAPI application for the Validiant auth core.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins;
                              credentials allowed because auth rides in cookies
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds every collaborator exactly once from validated Settings and
hangs it on app.state: one Redis client, one credential store, and the
authenticators that share them. Nothing is module-global; tests swap the
lifespan to inject fakeredis and an in-memory database.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.oauth import router as oauth_router
from api.routes.v1.passkeys import router as passkeys_router
from auth.oauth import AuthlibOAuthClient, OAuthLinker, configure_providers
from auth.passkeys import PasskeyVerifier
from auth.passwords import PasswordAuthenticator
from auth.store import CredentialStore
from auth.tokens import TokenIssuer
from cache.sessions import Denylist, LoginThrottle, OneTimeStateStore, SessionStore
from cache.store import RedisCache
from core.config import Settings, get_settings
from core.errors import AuthError, CacheUnavailableError, RateLimitedError
from core.logging import configure_logging

API_VERSION = "0.1.0"

_settings = get_settings()
configure_logging(_settings.debug)
logger = logging.getLogger("validiant.api")

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def build_services(app: FastAPI, settings: Settings, cache: RedisCache, store: CredentialStore) -> None:
    """Construct the auth components over one cache and one store and attach them to app.state."""
    sessions = SessionStore(cache, settings.session_ttl_seconds)
    denylist = Denylist(cache)
    state_store = OneTimeStateStore(cache)
    throttle = LoginThrottle(cache, settings.login_max_attempts, settings.login_attempt_window_seconds)

    issuer = TokenIssuer(
        sessions,
        denylist,
        secret_key=settings.secret_key,
        refresh_secret_key=settings.refresh_secret_key,
        issuer=settings.jwt_issuer,
        audience=settings.jwt_audience,
        access_ttl_seconds=settings.access_token_ttl_seconds,
        refresh_ttl_seconds=settings.refresh_token_ttl_seconds,
    )

    app.state.settings = settings
    app.state.cache = cache
    app.state.credential_store = store
    app.state.state_store = state_store
    app.state.token_issuer = issuer
    app.state.password_auth = PasswordAuthenticator(
        store,
        issuer,
        throttle,
        secret_key=settings.secret_key,
        bcrypt_rounds=settings.bcrypt_rounds,
        reset_ttl_seconds=settings.password_reset_ttl_seconds,
    )
    app.state.oauth_linker = OAuthLinker(
        store,
        state_store,
        configure_providers(settings),
        AuthlibOAuthClient(timeout=settings.oauth_http_timeout_seconds),
        allowed_redirect_origins=settings.cors_origins,
        state_ttl_seconds=settings.oauth_state_ttl_seconds,
    )
    app.state.passkeys = PasskeyVerifier(
        store,
        rp_id=settings.webauthn_rp_id,
        rp_name=settings.webauthn_rp_name,
        origin=settings.webauthn_origin,
        handle_secret=settings.secret_key,
        user_verification=settings.webauthn_user_verification,
        timeout_ms=settings.webauthn_timeout_ms,
    )


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. A Redis outage at startup is logged, not fatal: authorization
    checks fail closed until it returns.
    """
    settings = get_settings()
    logger.info("Validiant auth API starting up")
    cache = RedisCache.from_url(settings.redis_url)
    if not cache.ping():
        logger.warning("Redis unreachable at startup -- authenticated requests will be refused until it recovers")
    store = CredentialStore(settings.database_url)
    build_services(app, settings, cache, store)
    logger.info(
        "Auth initialized (oauth providers: %s)",
        ", ".join(p.provider.value for p in app.state.oauth_linker.enabled_providers()) or "none",
    )

    yield

    cache.close()
    store.close()
    logger.info("Validiant auth API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Validiant Auth API",
    description="Password, OAuth, and passkey authentication with JWT sessions.",
    version=API_VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(oauth_router, prefix="/api/v1", tags=["OAuth"])
app.include_router(passkeys_router, prefix="/api/v1", tags=["Passkeys"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    response = JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )
    response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render operational errors raised anywhere below the route layer."""
    response = _error(exc.status_code, exc.code, exc.message, exc.detail)
    if isinstance(exc, RateLimitedError):
        retry_after = exc.retry_after or request.app.state.settings.login_attempt_window_seconds
        response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(CacheUnavailableError)
async def cache_unavailable_handler(request: Request, exc: CacheUnavailableError) -> JSONResponse:
    """The session cache is down. Log the context; tell the client only to retry."""
    logger.error("Cache unavailable on %s %s: %s", request.method, request.url.path, exc)
    return _error(503, "service_unavailable", "Service temporarily unavailable. Try again shortly.")


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when the per-IP limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    messages = "; ".join(str(e.get("msg", "")) for e in exc.errors())
    return _error(422, "validation_error", "Request validation failed.", messages)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is logged with its traceback, never written to the
    response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Return liveness plus the reachability of Redis and the database."""
    cache_ok = request.app.state.cache.ping()
    try:
        db_ok = request.app.state.credential_store.ping()
    except SQLAlchemyError:
        logger.warning("Database ping failed", exc_info=True)
        db_ok = False
    return HealthResponse(
        status="ok" if cache_ok and db_ok else "degraded",
        version=API_VERSION,
        cache="ok" if cache_ok else "unavailable",
        database="ok" if db_ok else "unavailable",
    )
