"""
Session Blueprint.

Credential verification happens upstream; this blueprint only turns an
already-authenticated user id into a signed session token and reports the
current principal.

Endpoints:
  POST /api/v1/auth/session  — issue a token (``SESSION_ISSUE_ENABLED`` only)
  GET  /api/v1/auth/me       — the principal's authorization snapshot
"""

import logging

from flask import Blueprint, current_app, g, jsonify, request

from docguard.middleware.permission_required import require_auth
from docguard.services.session_service import issue_session_token
from docguard.utils.errors import E, api_error

logger = logging.getLogger(__name__)

auth_bp = Blueprint("auth_bp", __name__, url_prefix="/api/v1/auth")


@auth_bp.route("/session", methods=["POST"])
def create_session():
    if not current_app.config.get("SESSION_ISSUE_ENABLED", False):
        return api_error(E.NOT_FOUND, "Not found")

    data = request.get_json(silent=True) or {}
    user_id = data.get("user_id")
    if not isinstance(user_id, int) or isinstance(user_id, bool):
        return api_error(E.VALIDATION_REQUIRED, "user_id is required",
                         details={"user_id": "integer"})

    token = issue_session_token(user_id)
    return jsonify({"token": token, "token_type": "Bearer"}), 201


@auth_bp.route("/me", methods=["GET"])
@require_auth
def me():
    p = g.principal
    return jsonify({
        "user_id": p.user_id,
        "roles": list(p.roles),
        "level": p.level,
        "superuser": p.superuser,
        "permissions": sorted(p.permissions),
        "capabilities": sorted(p.capabilities),
        "authz_at": p.authz_at,
    }), 200
