"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.  The Limiter
instance is created in ``docguard/__init__.py`` with the config default
limit; this module adds tighter limits per route category.

Usage:
    from docguard.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

from flask import g, request as flask_request

logger = logging.getLogger(__name__)

SESSION_LIMIT = "20/minute"
ADMIN_LIMIT = "120/minute"
DOCUMENT_WRITE_LIMIT = "60/minute"


def principal_or_ip():
    """Rate limit key: the session user when present, else remote IP."""
    principal = getattr(g, "principal", None)
    if principal is not None:
        return f"user:{principal.user_id}"
    return flask_request.remote_addr or "unknown"


def _is_read():
    return flask_request.method in ("GET", "HEAD", "OPTIONS")


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

        - Session issue:    20/minute per IP
        - Admin endpoints:  120/minute per user
        - Document writes:  60/minute per user
        - Health checks:    exempt

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    bp = app.blueprints.get("auth_bp")
    if bp:
        limiter.limit(SESSION_LIMIT)(bp)

    bp = app.blueprints.get("rbac_admin_bp")
    if bp:
        limiter.limit(ADMIN_LIMIT, key_func=principal_or_ip)(bp)

    bp = app.blueprints.get("documents_bp")
    if bp:
        limiter.limit(DOCUMENT_WRITE_LIMIT, key_func=principal_or_ip, exempt_when=_is_read)(bp)

    bp = app.blueprints.get("health_bp")
    if bp:
        limiter.exempt(bp)

    logger.info("Rate limits applied")
