"""
Seed Service — default vocabulary, roles, grants, resources and workflow.

Idempotent: every row is matched by its natural key and updated in place,
so re-running after a release only adds what is new.

Both role naming eras are seeded (``kadiv`` and ``org_kadiv`` ...).  They
are distinct rows with identical grants; the workflow engine folds the
``org_`` prefix when comparing role requirements.
"""

import logging

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
from docguard.services.authz_vocabulary import ORG_ROLE_PREFIX
from docguard.services.permission_service import invalidate_all_cache
from docguard.services.workflow_service import seed_default_transitions

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════
# PERMISSIONS (legacy module.action vocabulary)
# ═══════════════════════════════════════════════════════════════
PERMISSIONS = [
    ("documents.read", "View documents"),
    ("documents.create", "Create documents"),
    ("documents.update", "Edit documents and submit them for review"),
    ("documents.delete", "Delete or archive documents"),
    ("documents.approve", "Approve or reject documents"),
    ("documents.publish", "Publish approved documents"),
    ("pdf.download", "Download document PDFs"),
    ("pdf.print", "Print document PDFs"),
    ("pdf.copy", "Copy text from document PDFs"),
    ("users.read", "View users"),
    ("users.update", "Manage users"),
    ("roles.update", "Manage roles and grants"),
    ("audit.read", "View audit logs"),
    ("workflow.update", "Manage workflow transitions"),
]

# ═══════════════════════════════════════════════════════════════
# CAPABILITIES (CATEGORY_ACTION vocabulary)
# ═══════════════════════════════════════════════════════════════
CAPABILITIES = [
    ("ADMIN_ACCESS", "system", "Full system administration access"),
    ("SYSTEM_CONFIG", "system", "System configuration management"),
    ("USER_MANAGE", "user", "Create, update, delete users"),
    ("USER_VIEW", "user", "View user information"),
    ("ROLE_MANAGE", "user", "Manage roles and permissions"),
    ("PERMISSION_MANAGE", "user", "Manage permissions"),
    ("DOCUMENT_FULL_ACCESS", "document", "Full document management access"),
    ("DOCUMENT_VIEW", "document", "View documents"),
    ("DOCUMENT_CREATE", "document", "Create new documents"),
    ("DOCUMENT_EDIT", "document", "Edit documents"),
    ("DOCUMENT_DELETE", "document", "Delete documents"),
    ("DOCUMENT_APPROVE", "document", "Approve documents"),
    ("DOCUMENT_PUBLISH", "document", "Publish documents"),
    ("DOCUMENT_DOWNLOAD", "document", "Download document files"),
    ("DOCUMENT_PRINT", "document", "Print documents"),
    ("DOCUMENT_COPY", "document", "Copy document content"),
    ("ORGANIZATION_MANAGE", "organization", "Manage organizational units"),
    ("ORGANIZATION_VIEW", "organization", "View organizational units"),
    ("ANALYTICS_VIEW", "analytics", "View analytics and reports"),
    ("ANALYTICS_EXPORT", "analytics", "Export analytics data"),
    ("AUDIT_VIEW", "audit", "View audit logs"),
    ("WORKFLOW_MANAGE", "workflow", "Manage workflow configurations"),
    ("DASHBOARD_VIEW", "dashboard", "View the dashboard"),
]

_READER_CAPS = ["DOCUMENT_VIEW", "DASHBOARD_VIEW"]
_EDITOR_CAPS = _READER_CAPS + ["DOCUMENT_CREATE", "DOCUMENT_EDIT", "DOCUMENT_DOWNLOAD"]
_APPROVER_CAPS = _EDITOR_CAPS + ["DOCUMENT_APPROVE", "DOCUMENT_PRINT", "ANALYTICS_VIEW"]

# ═══════════════════════════════════════════════════════════════
# ROLES — name: (display_name, level, permissions, capabilities)
# ═══════════════════════════════════════════════════════════════
ROLES = {
    "administrator": ("Administrator", 100, "*", "*"),
    "ppd": ("PPD (Document Control)", 90,
            ["documents.*", "pdf.*", "workflow.update"],
            _APPROVER_CAPS + ["DOCUMENT_FULL_ACCESS", "DOCUMENT_DELETE", "DOCUMENT_PUBLISH",
                              "DOCUMENT_COPY", "ORGANIZATION_MANAGE", "AUDIT_VIEW",
                              "WORKFLOW_MANAGE"]),
    "kadiv": ("Head of Division", 80,
              ["documents.read", "documents.create", "documents.update", "documents.approve",
               "pdf.download", "pdf.print"],
              _APPROVER_CAPS),
    "gm": ("General Manager", 70,
           ["documents.read", "documents.create", "documents.update", "documents.approve",
            "pdf.download", "pdf.print"],
           _APPROVER_CAPS),
    "manager": ("Manager", 60,
                ["documents.read", "documents.create", "documents.update", "pdf.download"],
                _EDITOR_CAPS),
    "dirut": ("President Director", 50,
              ["documents.read", "pdf.download"],
              _READER_CAPS + ["DOCUMENT_DOWNLOAD", "ANALYTICS_VIEW"]),
    "dewas": ("Board of Commissioners", 40,
              ["documents.read"],
              _READER_CAPS + ["AUDIT_VIEW"]),
    "komite_audit": ("Audit Committee", 30,
                     ["documents.read", "audit.read"],
                     _READER_CAPS + ["AUDIT_VIEW"]),
    "members": ("Members", 20, ["documents.read"], _READER_CAPS),
    "viewer": ("Viewer", 10, ["documents.read"], ["DOCUMENT_VIEW"]),
}

# Roles that also exist under the org_ naming era.
ORG_ERA_ROLES = ("administrator", "ppd", "kadiv", "gm", "manager", "members")

# ═══════════════════════════════════════════════════════════════
# RESOURCES — (type, path, name, icon, parent_path, capability, sort, method)
# ═══════════════════════════════════════════════════════════════
RESOURCES = [
    ("navigation", "/dashboard", "Dashboard", "home", None, "DASHBOARD_VIEW", 10, None),
    ("navigation", "/documents", "Documents", "file-text", None, "DOCUMENT_VIEW", 20, None),
    ("navigation", "/analytics", "Analytics", "bar-chart", None, "ANALYTICS_VIEW", 30, None),
    ("navigation", "/admin", "Administration", "settings", None, "ADMIN_ACCESS", 40, None),
    ("navigation", "/admin/users", "Users", "users", "/admin", "USER_MANAGE", 41, None),
    ("navigation", "/admin/roles", "Roles", "shield", "/admin", "ROLE_MANAGE", 42, None),
    ("navigation", "/admin/audit", "Audit Log", "list", "/admin", "AUDIT_VIEW", 43, None),
    ("navigation", "/profile", "Profile", "user", None, None, 90, None),

    ("route", "/dashboard", "Dashboard", None, None, "DASHBOARD_VIEW", 10, None),
    ("route", "/documents", "Documents", None, None, "DOCUMENT_VIEW", 20, None),
    ("route", "/documents/:id/edit", "Edit Document", None, None, "DOCUMENT_EDIT", 21, None),
    ("route", "/analytics", "Analytics", None, None, "ANALYTICS_VIEW", 30, None),
    ("route", "/admin", "Administration", None, None, "ADMIN_ACCESS", 40, None),
    ("route", "/admin/users", "Users", None, None, "USER_MANAGE", 41, None),
    ("route", "/admin/roles", "Roles", None, None, "ROLE_MANAGE", 42, None),
    ("route", "/admin/audit", "Audit Log", None, None, "AUDIT_VIEW", 43, None),
    ("route", "/profile", "Profile", None, None, None, 90, None),

    ("api", "/api/v1/documents", "List documents", None, None, "DOCUMENT_VIEW", 10, "GET"),
    ("api", "/api/v1/documents", "Create document", None, None, "DOCUMENT_CREATE", 11, "POST"),
    ("api", "/api/v1/documents/:id", "Get document", None, None, "DOCUMENT_VIEW", 12, "GET"),
    ("api", "/api/v1/documents/:id", "Update document", None, None, "DOCUMENT_EDIT", 13, "PATCH"),
    ("api", "/api/v1/documents/:id/download", "Download document", None, None,
     "DOCUMENT_DOWNLOAD", 14, "GET"),
    ("api", "/api/v1/documents/:id/history", "Document history", None, None,
     "DOCUMENT_VIEW", 15, "GET"),
]


def _expand(grants, all_names):
    """Expand ``*`` and ``module.*`` wildcards."""
    if grants == "*":
        return set(all_names)
    result = set()
    for p in grants:
        if p.endswith(".*"):
            module = p[:-2]
            result.update(n for n in all_names if n.startswith(f"{module}."))
        elif p in all_names:
            result.add(p)
    return result


def seed_permissions() -> int:
    created = 0
    for name, description in PERMISSIONS:
        perm = Permission.query.filter_by(name=name).first()
        module, action = name.split(".", 1)
        if perm is None:
            db.session.add(Permission(name=name, module=module, action=action,
                                      display_name=description, description=description))
            created += 1
        else:
            perm.description = description
    db.session.flush()
    return created


def seed_capabilities() -> int:
    created = 0
    for name, category, description in CAPABILITIES:
        cap = Capability.query.filter_by(name=name).first()
        if cap is None:
            db.session.add(Capability(name=name, category=category, description=description))
            created += 1
        else:
            cap.category = category
            cap.description = description
    db.session.flush()
    return created


def _upsert_role(name, display_name, level) -> tuple[Role, bool]:
    role = Role.query.filter_by(name=name).first()
    if role is None:
        role = Role(name=name, display_name=display_name, level=level, is_system=True)
        db.session.add(role)
        db.session.flush()
        return role, True
    role.display_name = display_name
    role.level = level
    role.is_system = True
    return role, False


def _sync_grants(role: Role, perm_names: set[str], cap_names: set[str]) -> None:
    perms = {p.name: p for p in Permission.query.filter(Permission.name.in_(perm_names)).all()}
    have_perms = {rp.permission.name for rp in role.role_permissions.all() if rp.permission}
    for name in sorted(perm_names - have_perms):
        db.session.add(RolePermission(role_id=role.id, permission_id=perms[name].id, is_granted=True))

    caps = {c.name: c for c in Capability.query.filter(Capability.name.in_(cap_names)).all()}
    have_caps = {a.capability.name for a in role.capability_assignments.all() if a.capability}
    for name in sorted(cap_names - have_caps):
        db.session.add(RoleCapabilityAssignment(role_id=role.id, capability_id=caps[name].id))


def seed_roles() -> int:
    all_perms = {p[0] for p in PERMISSIONS}
    all_caps = {c[0] for c in CAPABILITIES}
    created = 0
    for name, (display_name, level, perm_spec, cap_spec) in ROLES.items():
        names = [name]
        if name in ORG_ERA_ROLES:
            names.append(f"{ORG_ROLE_PREFIX}{name}")
        for role_name in names:
            role, is_new = _upsert_role(role_name, display_name, level)
            created += int(is_new)
            _sync_grants(role, _expand(perm_spec, all_perms), _expand(cap_spec, all_caps))
    db.session.flush()
    return created


def seed_resources() -> int:
    created = 0
    by_path: dict[str, Resource] = {}
    for rtype, path, name, icon, parent_path, capability, sort_order, method in RESOURCES:
        candidates = Resource.query.filter_by(type=rtype, path=path).all()
        res = next((r for r in candidates if r.method == method), None)
        if res is None:
            res = Resource(type=rtype, path=path, name=name)
            db.session.add(res)
            created += 1
        res.name = name
        res.icon = icon
        res.required_capability = capability
        res.sort_order = sort_order
        res.metadata_json = {"method": method} if method else {}
        if rtype == "navigation":
            res.parent_id = by_path[parent_path].id if parent_path else None
            db.session.flush()
            by_path[path] = res
    db.session.flush()
    return created


def seed_admin_user(email: str, full_name: str = "Administrator") -> User:
    user = User.query.filter_by(email=email).first()
    if user is None:
        user = User(email=email, username=email.split("@")[0], full_name=full_name)
        db.session.add(user)
        db.session.flush()
    role = Role.query.filter_by(name="administrator").first()
    ur = UserRole.query.filter_by(user_id=user.id, role_id=role.id).first()
    if ur is None:
        db.session.add(UserRole(user_id=user.id, role_id=role.id, is_manually_assigned=False))
    else:
        ur.is_active = True
    return user


def seed_defaults(admin_email: str = None) -> dict:
    summary = {
        "permissions": seed_permissions(),
        "capabilities": seed_capabilities(),
        "roles": seed_roles(),
        "resources": seed_resources(),
    }
    if admin_email:
        seed_admin_user(admin_email)
    db.session.commit()
    summary["transitions"] = seed_default_transitions()
    invalidate_all_cache()
    logger.info("Seed complete: %s", summary)
    return summary
