"""
Permission Decorators — session-aware RBAC decorators for route protection.

Checks are answered from ``g.principal`` (the token snapshot), so a grant
change reaches a live session only after the snapshot refresh window.

Usage:
    @bp.route("/api/v1/admin/roles", methods=["POST"])
    @require_capability("ROLE_MANAGE")
    def create_role():
        ...

    @bp.route("/api/v1/documents/<int:doc_id>/download")
    @require_any_capability("DOCUMENT_DOWNLOAD", "DOCUMENT_VIEW")
    def download(doc_id):
        ...

No principal → 401.  Principal without the right → 403 with a generic
message and a ``reason``; the missing name is only logged.
"""

import functools
import logging

from flask import g, request

from docguard.utils.errors import E, api_error, forbidden

logger = logging.getLogger(__name__)


def _principal():
    return getattr(g, "principal", None)


def _unauthenticated():
    return api_error(E.UNAUTHENTICATED, "Authentication required")


def _deny(principal, required, reason: str, view_name: str):
    logger.warning(
        "User %d denied: missing %s on %s", principal.user_id, required, view_name,
        extra={
            "user_id": principal.user_id,
            "path": request.path,
            "decision": "deny",
            "reason": reason,
        },
    )
    return forbidden(reason)


def require_auth(f):
    """Decorator: any authenticated principal."""
    @functools.wraps(f)
    def decorated(*args, **kwargs):
        if _principal() is None:
            return _unauthenticated()
        return f(*args, **kwargs)
    return decorated


def require_capability(*names: str):
    """
    Decorator: require ALL of the listed capabilities.

    Superuser roles pass every check.
    """
    def decorator(f):
        @functools.wraps(f)
        def decorated(*args, **kwargs):
            principal = _principal()
            if principal is None:
                return _unauthenticated()
            missing = [n for n in names if not principal.has_capability(n)]
            if missing:
                return _deny(principal, missing, "missing_capability", f.__name__)
            return f(*args, **kwargs)
        return decorated
    return decorator


def require_any_capability(*names: str):
    """Decorator: require at least ONE of the listed capabilities."""
    def decorator(f):
        @functools.wraps(f)
        def decorated(*args, **kwargs):
            principal = _principal()
            if principal is None:
                return _unauthenticated()
            if not principal.has_any_capability(names):
                return _deny(principal, list(names), "missing_capability", f.__name__)
            return f(*args, **kwargs)
        return decorated
    return decorator
