"""
Session Auth Middleware — parses the session token, sets ``g.principal``.

  1. ``Authorization: Bearer <token>`` is verified (signature, expiry).
  2. A snapshot older than ``SESSION_REFRESH_SECONDS`` is re-resolved and the
     re-signed token is returned in the ``X-Session-Token`` response header.
  3. ``g.principal`` is a ``SessionPrincipal`` or ``None``; route decorators
     turn ``None`` into 401.
"""

import logging

from flask import g, request

from docguard.core.exceptions import UnauthenticatedError
from docguard.services.session_service import (
    SessionPrincipal,
    decode_session_token,
    refresh_if_stale,
)

logger = logging.getLogger(__name__)

REFRESH_HEADER = "X-Session-Token"

# Paths that skip session parsing entirely
SESSION_SKIP_PREFIXES = (
    "/api/v1/health",
    "/api/v1/auth/session",
)


def _bearer_token() -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    return auth_header[7:].strip() or None


def init_jwt_middleware(app):
    """Register session parsing as before/after_request hooks."""

    @app.before_request
    def _session_auth():
        g.principal = None
        g.refreshed_token = None

        path = request.path
        if not path.startswith("/api/v1/"):
            return
        if path.startswith(SESSION_SKIP_PREFIXES):
            return

        token = _bearer_token()
        if token is None:
            return

        try:
            payload = decode_session_token(token)
            payload, refreshed = refresh_if_stale(payload)
        except UnauthenticatedError as exc:
            logger.info("Session rejected: %s", exc, extra={"path": path})
            return

        g.principal = SessionPrincipal.from_payload(payload)
        g.refreshed_token = refreshed

    @app.after_request
    def _send_refreshed_token(response):
        token = getattr(g, "refreshed_token", None)
        if token:
            response.headers[REFRESH_HEADER] = token
        return response
