"""
RBAC Admin Blueprint.

Endpoints (all under /api/v1/admin):
  Roles         GET|POST /roles, GET|PATCH|DELETE /roles/:ref
  Grants        GET /roles/:ref/permissions,
                PUT|DELETE /roles/:ref/permissions/:name,
                PUT /roles/:ref/capabilities,
                POST|DELETE /roles/:ref/capabilities/:name
  Vocabulary    GET|POST /permissions, DELETE /permissions/:name,
                GET|POST /capabilities, DELETE /capabilities/:name
  Resources     GET|POST /resources, PATCH|DELETE /resources/:id
  Users         GET|POST /users, POST /users/:id/deactivate,
                POST /users/:id/roles, DELETE /users/:id/roles/:role,
                POST /roles/:ref/users
  Workflow      GET|POST /transitions, PATCH /transitions/:id,
                POST /transitions/seed, POST /workflow/migrate-pending-review
  Diagnostics   GET /consistency, GET /audit

``:ref`` is a role id or a role name.  Every write clears the
authorization cache; live sessions pick the change up at their next
snapshot refresh.
"""

import logging

from flask import Blueprint, g, jsonify, request

from docguard.middleware.permission_required import require_any_capability
from docguard.models.audit import AUDIT_ENTITY_TYPES, AuditLog
from docguard.services import role_admin_service, user_service, workflow_service
from docguard.services.authz_vocabulary import check_vocabulary_consistency
from docguard.utils.errors import E, api_error

logger = logging.getLogger(__name__)

rbac_admin_bp = Blueprint("rbac_admin_bp", __name__, url_prefix="/api/v1/admin")

_ROLE_ADMIN = ("ADMIN_ACCESS", "ROLE_MANAGE")
_USER_ADMIN = ("ADMIN_ACCESS", "USER_MANAGE")
_WORKFLOW_ADMIN = ("ADMIN_ACCESS", "WORKFLOW_MANAGE")


def _ref(value: str):
    return int(value) if value.isdigit() else value


def _body() -> dict:
    return request.get_json(silent=True) or {}


def _required(data: dict, *keys):
    missing = [k for k in keys if data.get(k) in (None, "")]
    if missing:
        return api_error(E.VALIDATION_REQUIRED, f"{', '.join(missing)} required",
                         details={k: "required" for k in missing})
    return None


# ═══════════════════════════════════════════════════════════════
# Roles
# ═══════════════════════════════════════════════════════════════

@rbac_admin_bp.route("/roles", methods=["GET"])
@require_any_capability(*_ROLE_ADMIN)
def list_roles():
    include_inactive = request.args.get("include_inactive", "false").lower() == "true"
    return jsonify({"roles": role_admin_service.list_roles(include_inactive)}), 200


@rbac_admin_bp.route("/roles", methods=["POST"])
@require_any_capability(*_ROLE_ADMIN)
def create_role():
    data = _body()
    err = _required(data, "name")
    if err:
        return err
    role = role_admin_service.create_role(
        name=data["name"],
        display_name=data.get("display_name"),
        description=data.get("description"),
        level=data.get("level", 0),
    )
    return jsonify(role.to_dict(include_grants=True)), 201


@rbac_admin_bp.route("/roles/<role_ref>", methods=["GET"])
@require_any_capability(*_ROLE_ADMIN)
def get_role(role_ref):
    role = role_admin_service.get_role(_ref(role_ref))
    return jsonify(role.to_dict(include_grants=True)), 200


@rbac_admin_bp.route("/roles/<role_ref>", methods=["PATCH"])
@require_any_capability(*_ROLE_ADMIN)
def update_role(role_ref):
    data = _body()
    role = role_admin_service.update_role(
        _ref(role_ref),
        display_name=data.get("display_name"),
        description=data.get("description"),
        level=data.get("level"),
        is_active=data.get("is_active"),
    )
    return jsonify(role.to_dict(include_grants=True)), 200


@rbac_admin_bp.route("/roles/<role_ref>", methods=["DELETE"])
@require_any_capability(*_ROLE_ADMIN)
def delete_role(role_ref):
    role_admin_service.delete_role(_ref(role_ref))
    return jsonify({"message": "Role deleted"}), 200


# ═══════════════════════════════════════════════════════════════
# Role grants
# ═══════════════════════════════════════════════════════════════

@rbac_admin_bp.route("/roles/<role_ref>/permissions", methods=["GET"])
@require_any_capability(*_ROLE_ADMIN)
def role_permissions(role_ref):
    return jsonify(role_admin_service.get_role_permissions(_ref(role_ref))), 200


@rbac_admin_bp.route("/roles/<role_ref>/permissions/<name>", methods=["PUT"])
@require_any_capability(*_ROLE_ADMIN)
def set_role_permission(role_ref, name):
    granted = _body().get("granted", True)
    if not isinstance(granted, bool):
        return api_error(E.VALIDATION_INVALID, "granted must be a boolean",
                         details={"granted": "boolean"})
    role_admin_service.set_role_permission(_ref(role_ref), name, granted=granted)
    return jsonify(role_admin_service.get_role_permissions(_ref(role_ref))), 200


@rbac_admin_bp.route("/roles/<role_ref>/permissions/<name>", methods=["DELETE"])
@require_any_capability(*_ROLE_ADMIN)
def remove_role_permission(role_ref, name):
    role_admin_service.remove_role_permission(_ref(role_ref), name)
    return jsonify(role_admin_service.get_role_permissions(_ref(role_ref))), 200


@rbac_admin_bp.route("/roles/<role_ref>/capabilities", methods=["PUT"])
@require_any_capability(*_ROLE_ADMIN)
def replace_role_capabilities(role_ref):
    names = _body().get("capabilities")
    if not isinstance(names, list):
        return api_error(E.VALIDATION_REQUIRED, "capabilities list is required",
                         details={"capabilities": "list"})
    caps = role_admin_service.set_role_capabilities(_ref(role_ref), names)
    return jsonify({"capabilities": caps}), 200


@rbac_admin_bp.route("/roles/<role_ref>/capabilities/<name>", methods=["POST"])
@require_any_capability(*_ROLE_ADMIN)
def assign_capability(role_ref, name):
    role_admin_service.assign_capability(_ref(role_ref), name)
    return jsonify({"role": role_ref, "capability": name, "assigned": True}), 200


@rbac_admin_bp.route("/roles/<role_ref>/capabilities/<name>", methods=["DELETE"])
@require_any_capability(*_ROLE_ADMIN)
def revoke_capability(role_ref, name):
    removed = role_admin_service.revoke_capability(_ref(role_ref), name)
    return jsonify({"role": role_ref, "capability": name, "revoked": removed}), 200


# ═══════════════════════════════════════════════════════════════
# Vocabulary
# ═══════════════════════════════════════════════════════════════

@rbac_admin_bp.route("/permissions", methods=["GET"])
@require_any_capability(*_ROLE_ADMIN)
def list_permissions():
    return jsonify({
        "permissions": role_admin_service.list_permissions(request.args.get("module")),
    }), 200


@rbac_admin_bp.route("/permissions", methods=["POST"])
@require_any_capability(*_ROLE_ADMIN)
def create_permission():
    data = _body()
    err = _required(data, "name")
    if err:
        return err
    perm = role_admin_service.create_permission(
        data["name"],
        description=data.get("description"),
        resource=data.get("resource"),
        display_name=data.get("display_name"),
    )
    return jsonify(perm.to_dict()), 201


@rbac_admin_bp.route("/permissions/<name>", methods=["DELETE"])
@require_any_capability(*_ROLE_ADMIN)
def delete_permission(name):
    role_admin_service.delete_permission(name)
    return jsonify({"message": "Permission deleted"}), 200


@rbac_admin_bp.route("/capabilities", methods=["GET"])
@require_any_capability(*_ROLE_ADMIN)
def list_capabilities():
    return jsonify({
        "capabilities": role_admin_service.list_capabilities(request.args.get("category")),
    }), 200


@rbac_admin_bp.route("/capabilities", methods=["POST"])
@require_any_capability(*_ROLE_ADMIN)
def create_capability():
    data = _body()
    err = _required(data, "name")
    if err:
        return err
    cap = role_admin_service.create_capability(
        data["name"], category=data.get("category"), description=data.get("description"),
    )
    return jsonify(cap.to_dict()), 201


@rbac_admin_bp.route("/capabilities/<name>", methods=["DELETE"])
@require_any_capability(*_ROLE_ADMIN)
def delete_capability(name):
    role_admin_service.delete_capability(name)
    return jsonify({"message": "Capability deleted"}), 200


# ═══════════════════════════════════════════════════════════════
# Resources
# ═══════════════════════════════════════════════════════════════

@rbac_admin_bp.route("/resources", methods=["GET"])
@require_any_capability(*_ROLE_ADMIN)
def list_resources():
    return jsonify({"resources": role_admin_service.list_resources(request.args.get("type"))}), 200


@rbac_admin_bp.route("/resources", methods=["POST"])
@require_any_capability(*_ROLE_ADMIN)
def create_resource():
    data = _body()
    err = _required(data, "type", "path", "name")
    if err:
        return err
    extra = {k: data[k] for k in ("description", "icon", "parent_id", "required_capability",
                                  "sort_order", "is_active") if k in data}
    resource = role_admin_service.create_resource(
        data["type"], data["path"], data["name"], method=data.get("method"), **extra,
    )
    return jsonify(resource.to_dict()), 201


@rbac_admin_bp.route("/resources/<int:resource_id>", methods=["PATCH"])
@require_any_capability(*_ROLE_ADMIN)
def update_resource(resource_id):
    resource = role_admin_service.update_resource(resource_id, **_body())
    return jsonify(resource.to_dict()), 200


@rbac_admin_bp.route("/resources/<int:resource_id>", methods=["DELETE"])
@require_any_capability(*_ROLE_ADMIN)
def delete_resource(resource_id):
    role_admin_service.delete_resource(resource_id)
    return jsonify({"message": "Resource deleted"}), 200


# ═══════════════════════════════════════════════════════════════
# Users & role assignment
# ═══════════════════════════════════════════════════════════════

@rbac_admin_bp.route("/users", methods=["GET"])
@require_any_capability(*_USER_ADMIN)
def list_users():
    group_id = request.args.get("group_id", type=int)
    active_only = request.args.get("active_only", "false").lower() == "true"
    return jsonify({"users": user_service.list_users(group_id, active_only)}), 200


@rbac_admin_bp.route("/users", methods=["POST"])
@require_any_capability(*_USER_ADMIN)
def create_user():
    data = _body()
    err = _required(data, "email")
    if err:
        return err
    user = user_service.create_user(
        email=data["email"],
        username=data.get("username"),
        full_name=data.get("full_name"),
        group_id=data.get("group_id"),
        division_id=data.get("division_id"),
        role_names=data.get("roles"),
        assigned_by=g.principal.user_id,
    )
    return jsonify(user.to_dict(include_roles=True)), 201


@rbac_admin_bp.route("/users/<int:user_id>/deactivate", methods=["POST"])
@require_any_capability(*_USER_ADMIN)
def deactivate_user(user_id):
    user = user_service.deactivate_user(user_id)
    return jsonify(user.to_dict()), 200


@rbac_admin_bp.route("/users/<int:user_id>/roles", methods=["POST"])
@require_any_capability(*_USER_ADMIN)
def assign_role(user_id):
    data = _body()
    err = _required(data, "role")
    if err:
        return err
    user_service.assign_role(user_id, data["role"], assigned_by=g.principal.user_id)
    return jsonify(user_service.get_user(user_id).to_dict(include_roles=True)), 200


@rbac_admin_bp.route("/users/<int:user_id>/roles/<role_name>", methods=["DELETE"])
@require_any_capability(*_USER_ADMIN)
def revoke_role(user_id, role_name):
    user_service.revoke_role(user_id, role_name)
    return jsonify(user_service.get_user(user_id).to_dict(include_roles=True)), 200


@rbac_admin_bp.route("/roles/<role_ref>/users", methods=["POST"])
@require_any_capability(*_USER_ADMIN)
def bulk_assign(role_ref):
    user_ids = _body().get("user_ids")
    if not isinstance(user_ids, list) or not all(isinstance(u, int) for u in user_ids):
        return api_error(E.VALIDATION_REQUIRED, "user_ids list is required",
                         details={"user_ids": "list[int]"})
    role = role_admin_service.get_role(_ref(role_ref))
    result = user_service.bulk_assign_role(user_ids, role.name, assigned_by=g.principal.user_id)
    return jsonify(result), 200


# ═══════════════════════════════════════════════════════════════
# Workflow transitions
# ═══════════════════════════════════════════════════════════════

@rbac_admin_bp.route("/transitions", methods=["GET"])
@require_any_capability(*_WORKFLOW_ADMIN)
def list_transitions():
    include_inactive = request.args.get("include_inactive", "false").lower() == "true"
    return jsonify({"transitions": workflow_service.list_transitions(include_inactive)}), 200


@rbac_admin_bp.route("/transitions", methods=["POST"])
@require_any_capability(*_WORKFLOW_ADMIN)
def create_transition():
    data = _body()
    err = _required(data, "from_status", "to_status")
    if err:
        return err
    t = workflow_service.create_transition(
        data["from_status"],
        data["to_status"],
        min_level=data.get("min_level", 0),
        required_permission=data.get("required_permission"),
        description=data.get("description"),
        required_roles=data.get("required_roles"),
        allowed_by=data.get("allowed_by"),
        sort_order=data.get("sort_order", 0),
    )
    return jsonify(t.to_dict()), 201


@rbac_admin_bp.route("/transitions/<int:transition_id>", methods=["PATCH"])
@require_any_capability(*_WORKFLOW_ADMIN)
def update_transition(transition_id):
    t = workflow_service.update_transition(transition_id, **_body())
    return jsonify(t.to_dict()), 200


@rbac_admin_bp.route("/transitions/seed", methods=["POST"])
@require_any_capability(*_WORKFLOW_ADMIN)
def seed_transitions():
    return jsonify({"created": workflow_service.seed_default_transitions()}), 200


@rbac_admin_bp.route("/workflow/migrate-pending-review", methods=["POST"])
@require_any_capability("ADMIN_ACCESS")
def migrate_pending_review():
    result = workflow_service.migrate_pending_review_to_in_review(g.principal.user_id)
    return jsonify(result), 200


# ═══════════════════════════════════════════════════════════════
# Diagnostics
# ═══════════════════════════════════════════════════════════════

@rbac_admin_bp.route("/consistency", methods=["GET"])
@require_any_capability("ADMIN_ACCESS")
def consistency():
    return jsonify(check_vocabulary_consistency()), 200


@rbac_admin_bp.route("/audit", methods=["GET"])
@require_any_capability("ADMIN_ACCESS", "AUDIT_VIEW")
def audit_log():
    q = AuditLog.query
    entity_type = request.args.get("entity_type")
    if entity_type:
        if entity_type not in AUDIT_ENTITY_TYPES:
            return api_error(E.VALIDATION_INVALID, f"Unknown entity_type {entity_type!r}",
                             details={"entity_type": sorted(AUDIT_ENTITY_TYPES)})
        q = q.filter_by(entity_type=entity_type)
    limit = min(request.args.get("limit", 100, type=int), 500)
    rows = q.order_by(AuditLog.id.desc()).limit(limit).all()
    return jsonify({"items": [r.to_dict() for r in rows]}), 200
