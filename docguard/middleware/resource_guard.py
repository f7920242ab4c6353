"""
Resource Guard — app-level before_request gate on ``/api/`` calls.

Looks up active ``api`` Resource rows matching the request path and
method and requires their ``required_capability``.  Requests without a
principal pass through; the route decorators answer those with 401.

Paths with no Resource row follow ``RESOURCE_DEFAULT_ALLOW``.
"""

import logging

from flask import Flask, g, request

from docguard.utils.errors import forbidden

logger = logging.getLogger(__name__)

# Monitoring and session bootstrap stay open
SKIP_PREFIXES = ("/api/v1/health", "/api/v1/auth/")


def apply_resource_guard(app: Flask):
    """Register the resource gate.  Call once in ``create_app()``."""

    @app.before_request
    def _enforce_resource_access():
        from docguard.services.permission_service import can_access_resource

        path = request.path
        if not path.startswith("/api/") or path.startswith(SKIP_PREFIXES):
            return None
        if request.method == "OPTIONS":
            return None

        principal = getattr(g, "principal", None)
        if principal is None:
            return None

        if not can_access_resource(principal.user_id, path, request.method):
            return forbidden("missing_capability")
        return None

    logger.debug("Resource guard registered")
