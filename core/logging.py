"""
core/logging.py -- Process-wide logging setup.

All modules log through named loggers under the "validiant" hierarchy
(validiant.auth, validiant.cache, validiant.api, ...). configure_logging() is
called once from api/main.py; library code never calls basicConfig itself.

Secrets (tokens, challenges, PKCE verifiers) must never be logged in full.
Use redact() to log an 8-char prefix when a correlation handle is useful.
"""

from __future__ import annotations

import logging

_FORMAT = "%(asctime)s %(levelname)-5s %(name)s %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"


def configure_logging(debug: bool = False) -> None:
    """Install the root handler. Safe to call more than once."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format=_FORMAT,
        datefmt=_DATEFMT,
    )
    # redis-py and httpx are chatty at DEBUG; keep them at WARNING.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("redis").setLevel(logging.WARNING)


def redact(secret: str | None) -> str:
    """Return a short, non-reversible handle for a secret value."""
    if not secret:
        return "<none>"
    return secret[:8] + "..."
