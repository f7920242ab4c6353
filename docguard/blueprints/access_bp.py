"""
Access Blueprint — what the current principal may see and reach.

Endpoints:
  GET  /api/v1/access/capabilities  — snapshot capabilities
  GET  /api/v1/access/capabilities/:name — live engine decision for one capability
  GET  /api/v1/access/permissions   — snapshot permissions
  GET  /api/v1/access/navigation    — visible navigation tree, routes and APIs
  POST /api/v1/access/check         — {path, method} → resource gate
"""

from flask import Blueprint, g, jsonify, request

from docguard.middleware.permission_required import require_auth
from docguard.services import permission_service
from docguard.utils.errors import E, api_error

access_bp = Blueprint("access_bp", __name__, url_prefix="/api/v1/access")


@access_bp.route("/capabilities", methods=["GET"])
@require_auth
def capabilities():
    p = g.principal
    return jsonify({"capabilities": sorted(p.capabilities), "superuser": p.superuser}), 200


@access_bp.route("/capabilities/<name>", methods=["GET"])
@require_auth
def explain_capability(name):
    return jsonify(permission_service.evaluate_capability(g.principal.user_id, name)), 200


@access_bp.route("/permissions", methods=["GET"])
@require_auth
def permissions():
    p = g.principal
    return jsonify({"permissions": sorted(p.permissions), "superuser": p.superuser}), 200


@access_bp.route("/navigation", methods=["GET"])
@require_auth
def navigation():
    user_id = g.principal.user_id
    return jsonify({
        "navigation": permission_service.get_navigation_for_user(user_id),
        "routes": permission_service.get_accessible_routes(user_id),
        "apis": permission_service.get_accessible_apis(user_id),
    }), 200


@access_bp.route("/check", methods=["POST"])
@require_auth
def check():
    data = request.get_json(silent=True) or {}
    path = data.get("path")
    if not path or not isinstance(path, str):
        return api_error(E.VALIDATION_REQUIRED, "path is required", details={"path": "required"})
    method = (data.get("method") or "GET").upper()
    allowed = permission_service.can_access_resource(g.principal.user_id, path, method)
    return jsonify({"path": path, "method": method, "allowed": allowed}), 200
