"""
Role Administration Service — roles, grants, capabilities and resources.

Features:
  - Role CRUD with system role protection (built-in roles cannot be
    deleted or deactivated; their grants stay editable)
  - Explicit grant / explicit deny of legacy permissions per role
  - Capability assignment per role (presence = grant)
  - Resource (navigation / route / api) registry

Every write is audited and clears the whole authorization cache.
"""

import logging

from docguard.core.exceptions import (
    ConflictError,
    NotFoundError,
    SystemRoleProtectedError,
    ValidationError,
)
from docguard.models import db
from docguard.models.audit import write_audit
from docguard.models.auth import (
    Capability,
    Permission,
    Role,
    RoleCapabilityAssignment,
    RolePermission,
    UserRole,
)
from docguard.models.resource import RESOURCE_TYPES, Resource
from docguard.services.authz_vocabulary import CapabilityToken, LegacyPermission, parse_token
from docguard.services.permission_service import invalidate_all_cache
from docguard.utils.helpers import parse_bool_field, parse_int_field

logger = logging.getLogger(__name__)


def _commit():
    db.session.commit()
    invalidate_all_cache()


def _resolve_role(role_ref) -> Role:
    """Accept a role id or a role name."""
    if isinstance(role_ref, int):
        role = db.session.get(Role, role_ref)
    else:
        role = Role.query.filter_by(name=role_ref).first()
    if not role:
        raise NotFoundError("Role", role_ref)
    return role


def _get_permission(name: str) -> Permission:
    perm = Permission.query.filter_by(name=name).first()
    if not perm:
        raise NotFoundError("Permission", name)
    return perm


def _get_capability(name: str) -> Capability:
    cap = Capability.query.filter_by(name=name).first()
    if not cap:
        raise NotFoundError("Capability", name)
    return cap


# ═══════════════════════════════════════════════════════════════
# Role CRUD
# ═══════════════════════════════════════════════════════════════

def create_role(
    name: str,
    display_name: str = None,
    description: str = None,
    level: int = 0,
    is_system: bool = False,
) -> Role:
    if not name or not name.strip():
        raise ValidationError("Role name is required", details={"name": "required"})
    name = name.strip().lower().replace(" ", "_")
    level = parse_int_field(0 if level is None else level, "level", minimum=0)
    if Role.query.filter_by(name=name).first():
        raise ConflictError("Role", "name", name)

    role = Role(
        name=name,
        display_name=display_name or name.replace("_", " ").title(),
        description=description,
        level=level,
        is_system=is_system,
    )
    db.session.add(role)
    db.session.flush()
    write_audit(entity_type="role", entity_id=role.id, action="role.create",
                diff={"name": name, "level": role.level})
    _commit()
    logger.info("Created role '%s' (level %d)", name, role.level)
    return role


def update_role(
    role_ref,
    display_name: str = None,
    description: str = None,
    level: int = None,
    is_active: bool = None,
) -> Role:
    role = _resolve_role(role_ref)
    if level is not None:
        level = parse_int_field(level, "level", minimum=0)
    if is_active is not None:
        is_active = parse_bool_field(is_active, "is_active")
    if role.is_system and is_active is False:
        raise SystemRoleProtectedError(role.name)

    changes = {}
    for key, val in (("display_name", display_name), ("description", description),
                     ("level", level), ("is_active", is_active)):
        if val is not None and getattr(role, key) != val:
            changes[key] = {"old": getattr(role, key), "new": val}
            setattr(role, key, val)

    if changes:
        write_audit(entity_type="role", entity_id=role.id, action="role.update", diff=changes)
    _commit()
    return role


def delete_role(role_ref) -> bool:
    role = _resolve_role(role_ref)
    if role.is_system:
        raise SystemRoleProtectedError(role.name)

    assigned_count = UserRole.query.filter_by(role_id=role.id, is_active=True).count()
    if assigned_count > 0:
        raise ValidationError(
            f"Cannot delete role, it is assigned to {assigned_count} user(s). "
            "Remove assignments first.",
            details={"assigned_users": assigned_count},
        )

    # Revoked assignment rows would block the FK delete.
    UserRole.query.filter_by(role_id=role.id).delete()
    RolePermission.query.filter_by(role_id=role.id).delete()
    RoleCapabilityAssignment.query.filter_by(role_id=role.id).delete()
    write_audit(entity_type="role", entity_id=role.id, action="role.delete",
                diff={"name": role.name})
    db.session.delete(role)
    _commit()
    logger.info("Deleted role %s", role.name)
    return True


def get_role(role_ref) -> Role:
    return _resolve_role(role_ref)


def list_roles(include_inactive: bool = False) -> list[dict]:
    q = Role.query
    if not include_inactive:
        q = q.filter_by(is_active=True)
    roles = q.order_by(Role.level.desc(), Role.name).all()
    return [r.to_dict(include_grants=True) for r in roles]


# ═══════════════════════════════════════════════════════════════
# Permissions
# ═══════════════════════════════════════════════════════════════

def create_permission(name: str, description: str = None, resource: str = None,
                      display_name: str = None) -> Permission:
    if not isinstance(parse_token(name), LegacyPermission):
        raise ValidationError(
            "Permission names use the form module.action",
            details={"name": name},
        )
    if Permission.query.filter_by(name=name).first():
        raise ConflictError("Permission", "name", name)
    module, action = name.split(".", 1)
    perm = Permission(name=name, module=module, action=action, resource=resource,
                      display_name=display_name, description=description)
    db.session.add(perm)
    db.session.flush()
    write_audit(entity_type="permission", entity_id=perm.id, action="permission.create",
                diff={"name": name})
    _commit()
    return perm


def list_permissions(module: str = None) -> list[dict]:
    q = Permission.query
    if module:
        q = q.filter_by(module=module)
    return [p.to_dict() for p in q.order_by(Permission.module, Permission.name).all()]


def delete_permission(name: str) -> bool:
    perm = _get_permission(name)
    RolePermission.query.filter_by(permission_id=perm.id).delete()
    write_audit(entity_type="permission", entity_id=perm.id, action="permission.delete",
                diff={"name": name})
    db.session.delete(perm)
    _commit()
    return True


def set_role_permission(role_ref, permission_name: str, granted: bool = True) -> RolePermission:
    """Explicit grant (``granted=True``) or explicit deny (``granted=False``)."""
    role = _resolve_role(role_ref)
    perm = _get_permission(permission_name)

    rp = RolePermission.query.filter_by(role_id=role.id, permission_id=perm.id).first()
    old = None if rp is None else rp.is_granted
    if rp is None:
        rp = RolePermission(role_id=role.id, permission_id=perm.id, is_granted=granted)
        db.session.add(rp)
    else:
        rp.is_granted = granted

    write_audit(
        entity_type="role_permission", entity_id=role.id,
        action="role_permission.grant" if granted else "role_permission.deny",
        diff={"permission": permission_name, "is_granted": {"old": old, "new": granted}},
    )
    _commit()
    return rp


def remove_role_permission(role_ref, permission_name: str) -> bool:
    role = _resolve_role(role_ref)
    perm = _get_permission(permission_name)
    rp = RolePermission.query.filter_by(role_id=role.id, permission_id=perm.id).first()
    if not rp:
        raise NotFoundError("RolePermission", f"{role.name}:{permission_name}")
    db.session.delete(rp)
    write_audit(entity_type="role_permission", entity_id=role.id,
                action="role_permission.remove", diff={"permission": permission_name})
    _commit()
    return True


def get_role_permissions(role_ref) -> dict:
    role = _resolve_role(role_ref)
    d = role.to_dict(include_grants=True)
    return {"role": role.name, "granted": d["permissions"], "denied": d["denied_permissions"]}


# ═══════════════════════════════════════════════════════════════
# Capabilities
# ═══════════════════════════════════════════════════════════════

def create_capability(name: str, category: str = None, description: str = None) -> Capability:
    token = parse_token(name)
    if not isinstance(token, CapabilityToken):
        raise ValidationError(
            "Capability names use the form CATEGORY_ACTION",
            details={"name": name},
        )
    if Capability.query.filter_by(name=name).first():
        raise ConflictError("Capability", "name", name)
    cap = Capability(name=name, category=category or token.category, description=description)
    db.session.add(cap)
    db.session.flush()
    write_audit(entity_type="capability", entity_id=cap.id, action="capability.create",
                diff={"name": name})
    _commit()
    return cap


def list_capabilities(category: str = None) -> list[dict]:
    q = Capability.query
    if category:
        q = q.filter_by(category=category)
    return [c.to_dict() for c in q.order_by(Capability.category, Capability.name).all()]


def delete_capability(name: str) -> bool:
    cap = _get_capability(name)
    in_use = Resource.query.filter_by(required_capability=name).count()
    if in_use:
        raise ValidationError(
            f"Capability {name} is required by {in_use} resource(s)",
            details={"resources": in_use},
        )
    RoleCapabilityAssignment.query.filter_by(capability_id=cap.id).delete()
    write_audit(entity_type="capability", entity_id=cap.id, action="capability.delete",
                diff={"name": name})
    db.session.delete(cap)
    _commit()
    return True


def assign_capability(role_ref, capability_name: str) -> RoleCapabilityAssignment:
    role = _resolve_role(role_ref)
    cap = _get_capability(capability_name)
    existing = RoleCapabilityAssignment.query.filter_by(
        role_id=role.id, capability_id=cap.id
    ).first()
    if existing:
        return existing
    rca = RoleCapabilityAssignment(role_id=role.id, capability_id=cap.id)
    db.session.add(rca)
    write_audit(entity_type="role_capability", entity_id=role.id,
                action="role_capability.assign", diff={"capability": capability_name})
    _commit()
    return rca


def revoke_capability(role_ref, capability_name: str) -> bool:
    role = _resolve_role(role_ref)
    cap = _get_capability(capability_name)
    rca = RoleCapabilityAssignment.query.filter_by(
        role_id=role.id, capability_id=cap.id
    ).first()
    if not rca:
        return False
    db.session.delete(rca)
    write_audit(entity_type="role_capability", entity_id=role.id,
                action="role_capability.revoke", diff={"capability": capability_name})
    _commit()
    logger.info("Revoked capability %s from role %s", capability_name, role.name)
    return True


def set_role_capabilities(role_ref, capability_names: list[str]) -> list[str]:
    """Replace the role's capability set."""
    role = _resolve_role(role_ref)
    wanted = {n: _get_capability(n) for n in dict.fromkeys(capability_names)}
    current = {a.capability.name: a for a in role.capability_assignments.all()}

    removed = [n for n in current if n not in wanted]
    added = [n for n in wanted if n not in current]
    for n in removed:
        db.session.delete(current[n])
    for n in added:
        db.session.add(RoleCapabilityAssignment(role_id=role.id, capability_id=wanted[n].id))

    write_audit(entity_type="role_capability", entity_id=role.id,
                action="role_capability.replace",
                diff={"added": added, "removed": removed})
    _commit()
    return sorted(wanted)


# ═══════════════════════════════════════════════════════════════
# Resources
# ═══════════════════════════════════════════════════════════════

_RESOURCE_FIELDS = (
    "type", "path", "name", "description", "icon", "parent_id",
    "required_capability", "sort_order", "is_active",
)


def _validate_resource(data: dict):
    if "type" in data and data["type"] not in RESOURCE_TYPES:
        raise ValidationError(
            f"Resource type must be one of {sorted(RESOURCE_TYPES)}",
            details={"type": data["type"]},
        )
    cap = data.get("required_capability")
    if cap and not Capability.query.filter_by(name=cap).first():
        raise ValidationError(f"Unknown capability {cap}", details={"required_capability": cap})
    parent_id = data.get("parent_id")
    if parent_id is not None and db.session.get(Resource, parent_id) is None:
        raise NotFoundError("Resource", parent_id)


def create_resource(type: str, path: str, name: str, method: str = None, **kwargs) -> Resource:
    data = {"type": type, "path": path, "name": name, **kwargs}
    for key in ("type", "path", "name"):
        if not data.get(key):
            raise ValidationError(f"{key} is required", details={key: "required"})
    _validate_resource(data)

    resource = Resource(**{k: v for k, v in data.items() if k in _RESOURCE_FIELDS})
    resource.metadata_json = {"method": method.upper()} if method else {}
    db.session.add(resource)
    db.session.flush()
    write_audit(entity_type="resource", entity_id=resource.id, action="resource.create",
                diff={"path": path, "type": type, "required_capability": data.get("required_capability")})
    _commit()
    return resource


def update_resource(resource_id: int, **kwargs) -> Resource:
    resource = db.session.get(Resource, resource_id)
    if not resource:
        raise NotFoundError("Resource", resource_id)
    _validate_resource(kwargs)

    changes = {}
    for key in _RESOURCE_FIELDS:
        if key in kwargs and getattr(resource, key) != kwargs[key]:
            changes[key] = {"old": getattr(resource, key), "new": kwargs[key]}
            setattr(resource, key, kwargs[key])
    if "method" in kwargs:
        method = kwargs["method"]
        resource.metadata_json = {**(resource.metadata_json or {}), "method": method.upper() if method else None}
        changes["method"] = method

    if changes:
        write_audit(entity_type="resource", entity_id=resource.id, action="resource.update",
                    diff=changes)
    _commit()
    return resource


def delete_resource(resource_id: int) -> bool:
    resource = db.session.get(Resource, resource_id)
    if not resource:
        raise NotFoundError("Resource", resource_id)
    Resource.query.filter_by(parent_id=resource.id).update({"parent_id": None})
    write_audit(entity_type="resource", entity_id=resource.id, action="resource.delete",
                diff={"path": resource.path})
    db.session.delete(resource)
    _commit()
    return True


def list_resources(type: str = None) -> list[dict]:
    q = Resource.query
    if type:
        q = q.filter_by(type=type)
    return [r.to_dict() for r in q.order_by(Resource.type, Resource.sort_order, Resource.path).all()]
