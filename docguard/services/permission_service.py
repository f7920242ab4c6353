"""
Permission Service — DB-driven access resolution with cache.

Resolution rules:
  - only active users, active UserRole rows and active roles count
  - permissions: union of ``is_granted=True`` rows across roles, minus any
    permission explicitly denied (``is_granted=False``) on any of the
    user's active roles (explicit deny wins)
  - capabilities: union of assignment rows (presence = grant)
  - superuser roles (see ``authz_vocabulary.SUPERUSER_ROLE_NAMES``) pass
    every capability and permission check

Resolved sets are cached per user for ``AUTHZ_CACHE_TTL`` seconds.  Every
admin write calls ``invalidate_all_cache()``.
"""

import logging
from datetime import datetime, timezone

from flask import current_app, has_app_context

from docguard.models import db
from docguard.models.auth import (
    Capability,
    Permission,
    Role,
    RoleCapabilityAssignment,
    RolePermission,
    User,
    UserRole,
)
from docguard.models.resource import Resource
from docguard.services import cache_service
from docguard.services.authz_vocabulary import (
    CapabilityToken,
    LegacyPermission,
    equivalent_names,
    is_superuser_role,
    parse_token,
)

logger = logging.getLogger(__name__)


# ── Cache helpers ────────────────────────────────────────────────────────

def invalidate_cache(user_id: int) -> None:
    cache_service.delete_cached(
        cache_service.user_key("roles", user_id),
        cache_service.user_key("perm", user_id),
        cache_service.user_key("cap", user_id),
    )


def invalidate_all_cache() -> None:
    removed = cache_service.delete_prefix(cache_service.AUTHZ_PREFIX)
    logger.debug("Authorization cache cleared (%d keys)", removed)


def _cached(kind: str, user_id: int, loader):
    return cache_service.get_cached(
        cache_service.user_key(kind, user_id),
        ttl=cache_service.authz_ttl(),
        loader=loader,
    )


# ═════════════════════════════════════════════════════════════════════════════
# Roles
# ═════════════════════════════════════════════════════════════════════════════

def _load_active_roles(user_id: int) -> list[dict]:
    user = db.session.get(User, user_id)
    if user is None or not user.is_active:
        return []
    rows = (
        db.session.query(Role.id, Role.name, Role.level)
        .join(UserRole, UserRole.role_id == Role.id)
        .filter(
            UserRole.user_id == user_id,
            UserRole.is_active.is_(True),
            Role.is_active.is_(True),
        )
        .order_by(Role.name)
        .all()
    )
    return [{"id": rid, "name": name, "level": level or 0} for rid, name, level in rows]


def _active_roles(user_id: int) -> list[dict]:
    return _cached("roles", user_id, lambda: _load_active_roles(user_id)) or []


def get_user_role_names(user_id: int) -> list[str]:
    return [r["name"] for r in _active_roles(user_id)]


def get_user_max_level(user_id: int) -> int:
    levels = [r["level"] for r in _active_roles(user_id)]
    return max(levels) if levels else 0


def is_superuser(user_id: int) -> bool:
    return any(is_superuser_role(r["name"]) for r in _active_roles(user_id))


# ═════════════════════════════════════════════════════════════════════════════
# Permissions (legacy vocabulary)
# ═════════════════════════════════════════════════════════════════════════════

def _load_permissions(user_id: int) -> list[str]:
    role_ids = [r["id"] for r in _active_roles(user_id)]
    if not role_ids:
        return []
    rows = (
        db.session.query(Permission.name, RolePermission.is_granted)
        .join(RolePermission, RolePermission.permission_id == Permission.id)
        .filter(
            RolePermission.role_id.in_(role_ids),
            Permission.is_active.is_(True),
        )
        .all()
    )
    granted = {name for name, is_granted in rows if is_granted}
    denied = {name for name, is_granted in rows if not is_granted}
    return sorted(granted - denied)


def get_user_permissions(user_id: int) -> set[str]:
    return set(_cached("perm", user_id, lambda: _load_permissions(user_id)) or [])


def has_permission(user_id: int, name: str) -> bool:
    if is_superuser(user_id):
        return True
    return name in get_user_permissions(user_id)


def has_any_permission(user_id: int, names: list[str]) -> bool:
    if is_superuser(user_id):
        return True
    return bool(get_user_permissions(user_id) & set(names))


# ═════════════════════════════════════════════════════════════════════════════
# Capabilities
# ═════════════════════════════════════════════════════════════════════════════

def _load_capabilities(user_id: int) -> list[str]:
    role_ids = [r["id"] for r in _active_roles(user_id)]
    if not role_ids:
        return []
    rows = (
        db.session.query(Capability.name)
        .join(RoleCapabilityAssignment, RoleCapabilityAssignment.capability_id == Capability.id)
        .filter(RoleCapabilityAssignment.role_id.in_(role_ids))
        .distinct()
        .all()
    )
    return sorted(r[0] for r in rows)


def get_user_capabilities(user_id: int) -> set[str]:
    return set(_cached("cap", user_id, lambda: _load_capabilities(user_id)) or [])


def has_capability(user_id: int, name: str) -> bool:
    if is_superuser(user_id):
        return True
    return name in get_user_capabilities(user_id)


def has_any_capability(user_id: int, names: list[str]) -> bool:
    if is_superuser(user_id):
        return True
    return bool(get_user_capabilities(user_id) & set(names))


def has_all_capabilities(user_id: int, names: list[str]) -> bool:
    if is_superuser(user_id):
        return True
    return set(names).issubset(get_user_capabilities(user_id))


def evaluate_capability(user_id: int, name: str) -> dict:
    role_names = get_user_role_names(user_id)
    if any(is_superuser_role(r) for r in role_names):
        return {
            "allowed": True,
            "decision": "allow_superuser",
            "roles": role_names,
            "capability": name,
        }
    allowed = name in get_user_capabilities(user_id)
    return {
        "allowed": allowed,
        "decision": "allow_role_grant" if allowed else "deny_by_default",
        "roles": role_names,
        "capability": name,
    }


# ═════════════════════════════════════════════════════════════════════════════
# Mixed-vocabulary requirement strings
# ═════════════════════════════════════════════════════════════════════════════

def is_known_token(raw: str | None) -> bool:
    """True when *raw* names an active Permission or an existing Capability row."""
    token = parse_token(raw)
    if isinstance(token, LegacyPermission):
        return db.session.query(Permission.id).filter_by(
            name=raw, is_active=True
        ).first() is not None
    if isinstance(token, CapabilityToken):
        return db.session.query(Capability.id).filter_by(name=raw).first() is not None
    return False


def has_token(user_id: int, raw: str | None) -> bool:
    """Check a requirement that may be a permission or a capability name.

    Unknown names fail closed and are logged as configuration drift.
    """
    if not is_known_token(raw):
        logger.warning(
            "Unknown authorization requirement %r", raw,
            extra={"event_type": "authz_config", "user_id": user_id},
        )
        return False
    if is_superuser(user_id):
        return True
    return raw in get_user_permissions(user_id) or raw in get_user_capabilities(user_id)


def has_equivalent_grant(user_id: int, raw: str) -> bool:
    """True when the user holds *raw* or its mapped name in the other vocabulary."""
    names = equivalent_names(raw)
    permissions = [n for n in names if isinstance(parse_token(n), LegacyPermission)]
    capabilities = [n for n in names if isinstance(parse_token(n), CapabilityToken)]
    return has_any_permission(user_id, permissions) or has_any_capability(user_id, capabilities)


# ═════════════════════════════════════════════════════════════════════════════
# Resources (routes, APIs, navigation)
# ═════════════════════════════════════════════════════════════════════════════

def _default_allow() -> bool:
    if has_app_context():
        return bool(current_app.config.get("RESOURCE_DEFAULT_ALLOW", True))
    return True


def path_matches(pattern: str, path: str) -> bool:
    """``/api/v1/documents/:id`` matches ``/api/v1/documents/7``."""
    want = pattern.rstrip("/").split("/")
    got = path.rstrip("/").split("/")
    if len(want) != len(got):
        return False
    return all(w == g or (w.startswith(":") and g) for w, g in zip(want, got))


def _matching_resources(path: str, method: str) -> list[Resource]:
    method = (method or "GET").upper()
    rows = Resource.query.filter(
        Resource.is_active.is_(True),
        Resource.type.in_(("route", "api")),
    ).all()
    return [
        r for r in rows
        if path_matches(r.path, path)
        and (r.type == "route" or r.method is None or r.method == method)
    ]


def can_access_resource(user_id: int, path: str, method: str = "GET") -> bool:
    """Resource gate for a page route or API call.

    No matching resource row → ``RESOURCE_DEFAULT_ALLOW`` (fail-open unless
    configured otherwise).  Every matching row must be satisfied; a row with
    no ``required_capability`` is unrestricted.
    """
    matches = _matching_resources(path, method)
    if not matches:
        return _default_allow()
    required = sorted({r.required_capability for r in matches if r.required_capability})
    if not has_all_capabilities(user_id, required):
        logger.warning(
            "Resource access denied: %s %s requires %s",
            method, path, ", ".join(required),
            extra={"user_id": user_id, "decision": "deny", "reason": "missing_capability"},
        )
        return False
    return True


def _visible(user_id: int, resource: Resource) -> bool:
    return not resource.required_capability or has_capability(
        user_id, resource.required_capability
    )


def get_navigation_for_user(user_id: int) -> list[dict]:
    """Navigation entries the user may see, as a sorted tree.

    A child is only shown under a visible parent.  ``children`` is omitted
    for leaves.
    """
    items = (
        Resource.query.filter_by(type="navigation", is_active=True)
        .order_by(Resource.sort_order, Resource.name)
        .all()
    )
    visible = {r.id: r for r in items if _visible(user_id, r)}

    nodes: dict[int, dict] = {}
    for r in visible.values():
        nodes[r.id] = {
            "id": r.id,
            "name": r.name,
            "path": r.path,
            "icon": r.icon,
            "sort_order": r.sort_order,
            "children": [],
        }

    roots: list[dict] = []
    for r in items:
        if r.id not in nodes:
            continue
        if r.parent_id is None:
            roots.append(nodes[r.id])
        elif r.parent_id in nodes:
            nodes[r.parent_id]["children"].append(nodes[r.id])

    def _prune(node: dict) -> dict:
        if node["children"]:
            node["children"] = [_prune(c) for c in node["children"]]
        else:
            node.pop("children")
        return node

    return [_prune(n) for n in roots]


def get_accessible_routes(user_id: int) -> list[str]:
    rows = (
        Resource.query.filter_by(type="route", is_active=True)
        .order_by(Resource.sort_order, Resource.path)
        .all()
    )
    return [r.path for r in rows if _visible(user_id, r)]


def get_accessible_apis(user_id: int) -> list[dict]:
    rows = (
        Resource.query.filter_by(type="api", is_active=True)
        .order_by(Resource.sort_order, Resource.path)
        .all()
    )
    return [
        {"path": r.path, "method": r.method or "GET"}
        for r in rows if _visible(user_id, r)
    ]


# ═════════════════════════════════════════════════════════════════════════════
# Snapshot (baked into session tokens)
# ═════════════════════════════════════════════════════════════════════════════

def resolve_authorization_snapshot(user_id: int) -> dict:
    roles = _active_roles(user_id)
    return {
        "user_id": user_id,
        "roles": [r["name"] for r in roles],
        "level": max((r["level"] for r in roles), default=0),
        "superuser": any(is_superuser_role(r["name"]) for r in roles),
        "permissions": sorted(get_user_permissions(user_id)),
        "capabilities": sorted(get_user_capabilities(user_id)),
        "resolved_at": datetime.now(timezone.utc).isoformat(),
    }
