"""Role administration tests: roles, grants, capabilities, resources, audit."""

import pytest

from docguard.core.exceptions import (
    ConflictError,
    NotFoundError,
    SystemRoleProtectedError,
    ValidationError,
)
from docguard.models import db
from docguard.models.audit import AuditLog
from docguard.models.auth import Role, UserRole
from docguard.models.resource import Resource
from docguard.services import permission_service as ps
from docguard.services import role_admin_service as ras
from docguard.services import user_service


# ═══════════════════════════════════════════════════════════════
# Roles
# ═══════════════════════════════════════════════════════════════

def test_create_role_normalizes_name(seeded):
    role = ras.create_role("Quality Auditor", level=35)
    assert role.name == "quality_auditor"
    assert role.display_name == "Quality Auditor"
    assert role.is_system is False
    assert AuditLog.query.filter_by(action="role.create", entity_id=str(role.id)).count() == 1


def test_create_role_rejects_blank_and_duplicates(seeded):
    with pytest.raises(ValidationError):
        ras.create_role("  ")
    with pytest.raises(ConflictError):
        ras.create_role("Manager")


def test_system_roles_protected(seeded):
    with pytest.raises(SystemRoleProtectedError) as exc:
        ras.delete_role("administrator")
    assert exc.value.reason == "system_role"
    with pytest.raises(SystemRoleProtectedError):
        ras.update_role("manager", is_active=False)

    role = ras.update_role("manager", level=65)
    assert role.level == 65


@pytest.mark.parametrize("level", ["senior", True, 2.5, -1, ""])
def test_role_level_must_be_a_non_negative_integer(seeded, level):
    with pytest.raises(ValidationError) as exc:
        ras.create_role("auditor", level=level)
    assert "level" in exc.value.details
    assert Role.query.filter_by(name="auditor").first() is None


def test_role_level_coerced_and_checked_on_update(seeded, make_user):
    assert ras.create_role("auditor", level="40").level == 40
    with pytest.raises(ValidationError):
        ras.update_role("auditor", level="high")
    with pytest.raises(ValidationError):
        ras.update_role("auditor", is_active="no")
    assert db.session.get(Role, ras.get_role("auditor").id).level == 40

    holder = make_user("manager", "auditor")
    assert ps.get_user_max_level(holder.id) == 60


def test_delete_role_blocked_while_assigned(seeded, make_user):
    ras.create_role("contractor", level=15)
    user = make_user("contractor")
    with pytest.raises(ValidationError) as exc:
        ras.delete_role("contractor")
    assert exc.value.details == {"assigned_users": 1}

    user_service.revoke_role(user.id, "contractor")
    assert ras.delete_role("contractor") is True
    assert Role.query.filter_by(name="contractor").first() is None
    assert UserRole.query.filter_by(user_id=user.id).count() == 0


def test_unknown_role_ref(seeded):
    with pytest.raises(NotFoundError):
        ras.get_role("nobody")
    with pytest.raises(NotFoundError):
        ras.get_role(99999)


def test_list_roles_ordered_by_level(seeded):
    ras.create_role("dormant", level=5)
    ras.update_role("dormant", is_active=False)
    names = [r["name"] for r in ras.list_roles()]
    assert names[0] == "administrator"
    assert "dormant" not in names
    assert "dormant" in [r["name"] for r in ras.list_roles(include_inactive=True)]


# ═══════════════════════════════════════════════════════════════
# Permissions (grant / explicit deny)
# ═══════════════════════════════════════════════════════════════

def test_explicit_deny_overrides_other_roles(seeded, make_user):
    user = make_user("manager", "members")
    assert "pdf.download" in ps.get_user_permissions(user.id)

    ras.set_role_permission("members", "pdf.download", granted=False)
    assert "pdf.download" not in ps.get_user_permissions(user.id)

    grants = ras.get_role_permissions("members")
    assert "pdf.download" in grants["denied"]

    ras.remove_role_permission("members", "pdf.download")
    assert "pdf.download" in ps.get_user_permissions(user.id)
    with pytest.raises(NotFoundError):
        ras.remove_role_permission("members", "pdf.download")


def test_create_permission_validates_name(seeded):
    with pytest.raises(ValidationError):
        ras.create_permission("Reports Export")
    with pytest.raises(ConflictError):
        ras.create_permission("documents.read")
    perm = ras.create_permission("reports.export", description="Export reports")
    assert (perm.module, perm.action) == ("reports", "export")


def test_delete_permission_removes_grants(seeded, make_user):
    user = make_user("manager")
    ras.delete_permission("pdf.download")
    assert "pdf.download" not in ps.get_user_permissions(user.id)


# ═══════════════════════════════════════════════════════════════
# Capabilities
# ═══════════════════════════════════════════════════════════════

def test_assign_and_revoke_capability(seeded, make_user):
    user = make_user("viewer")
    assert not ps.has_capability(user.id, "ANALYTICS_VIEW")
    ras.assign_capability("viewer", "ANALYTICS_VIEW")
    assert ps.has_capability(user.id, "ANALYTICS_VIEW")
    # Idempotent
    ras.assign_capability("viewer", "ANALYTICS_VIEW")

    assert ras.revoke_capability("viewer", "ANALYTICS_VIEW") is True
    assert ras.revoke_capability("viewer", "ANALYTICS_VIEW") is False
    assert not ps.has_capability(user.id, "ANALYTICS_VIEW")


def test_set_role_capabilities_replaces_set(seeded, make_user):
    user = make_user("members")
    result = ras.set_role_capabilities("members", ["DOCUMENT_VIEW", "AUDIT_VIEW", "AUDIT_VIEW"])
    assert result == ["AUDIT_VIEW", "DOCUMENT_VIEW"]
    assert ps.get_user_capabilities(user.id) == {"AUDIT_VIEW", "DOCUMENT_VIEW"}

    entry = AuditLog.query.filter_by(action="role_capability.replace").one()
    assert entry.diff["added"] == ["AUDIT_VIEW"]
    assert entry.diff["removed"] == ["DASHBOARD_VIEW"]

    with pytest.raises(NotFoundError):
        ras.set_role_capabilities("members", ["NOPE_NOPE"])


def test_create_capability(seeded):
    with pytest.raises(ValidationError):
        ras.create_capability("report.export")
    cap = ras.create_capability("REPORT_EXPORT")
    assert cap.category == "report"
    with pytest.raises(ConflictError):
        ras.create_capability("REPORT_EXPORT")


def test_capability_in_use_cannot_be_deleted(seeded):
    with pytest.raises(ValidationError):
        ras.delete_capability("DASHBOARD_VIEW")
    ras.create_capability("REPORT_EXPORT")
    assert ras.delete_capability("REPORT_EXPORT") is True


# ═══════════════════════════════════════════════════════════════
# Resources
# ═══════════════════════════════════════════════════════════════

def test_resource_crud(seeded, make_user):
    user = make_user("viewer")
    res = ras.create_resource("api", "/api/v1/reports/:id", "Report",
                              method="post", required_capability="ANALYTICS_VIEW")
    assert res.method == "POST"
    assert not ps.can_access_resource(user.id, "/api/v1/reports/4", "POST")
    assert ps.can_access_resource(user.id, "/api/v1/reports/4", "GET")

    ras.update_resource(res.id, required_capability=None)
    assert ps.can_access_resource(user.id, "/api/v1/reports/4", "POST")

    ras.update_resource(res.id, method="get")
    assert db.session.get(Resource, res.id).method == "GET"

    assert ras.delete_resource(res.id) is True
    with pytest.raises(NotFoundError):
        ras.delete_resource(res.id)


def test_resource_validation(seeded):
    with pytest.raises(ValidationError):
        ras.create_resource("widget", "/x", "X")
    with pytest.raises(ValidationError):
        ras.create_resource("route", "/x", "X", required_capability="MISSING_CAP")
    with pytest.raises(ValidationError):
        ras.create_resource("route", "", "X")
    with pytest.raises(NotFoundError):
        ras.create_resource("navigation", "/x", "X", parent_id=9999)


def test_delete_parent_resource_orphans_children(seeded):
    parent = Resource.query.filter_by(type="navigation", path="/admin").one()
    child_ids = [c.id for c in parent.children]
    assert child_ids
    ras.delete_resource(parent.id)
    for cid in child_ids:
        assert db.session.get(Resource, cid).parent_id is None


def test_list_resources_by_type(seeded):
    apis = ras.list_resources(type="api")
    assert apis and all(r["type"] == "api" for r in apis)
