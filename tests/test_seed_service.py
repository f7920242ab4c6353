"""Seed tests: default authorization configuration and idempotency."""

from docguard.models.auth import Capability, Permission, Role, User
from docguard.models.resource import Resource
from docguard.services import permission_service as ps
from docguard.services import seed_service
from docguard.services.workflow_service import DEFAULT_TRANSITIONS


def test_first_seed_counts(seeded):
    assert seeded == {
        "permissions": len(seed_service.PERMISSIONS),
        "capabilities": len(seed_service.CAPABILITIES),
        "roles": len(seed_service.ROLES) + len(seed_service.ORG_ERA_ROLES),
        "resources": len(seed_service.RESOURCES),
        "transitions": len(DEFAULT_TRANSITIONS),
    }


def test_reseed_is_idempotent(seeded):
    again = seed_service.seed_defaults()
    assert set(again.values()) == {0}
    assert Permission.query.count() == len(seed_service.PERMISSIONS)
    assert Capability.query.count() == len(seed_service.CAPABILITIES)
    assert Resource.query.count() == len(seed_service.RESOURCES)


def test_reseed_restores_role_level(seeded):
    role = Role.query.filter_by(name="gm").one()
    role.level = 1
    seed_service.seed_defaults()
    assert Role.query.filter_by(name="gm").one().level == 70


def test_org_era_roles_mirror_plain_roles(seeded, make_user):
    for name in seed_service.ORG_ERA_ROLES:
        plain = Role.query.filter_by(name=name).one()
        org = Role.query.filter_by(name=f"org_{name}").one()
        assert org.level == plain.level
        assert org.is_system and plain.is_system

    plain_user = make_user("kadiv")
    org_user = make_user("org_kadiv")
    assert ps.get_user_permissions(plain_user.id) == ps.get_user_permissions(org_user.id)
    assert ps.get_user_capabilities(plain_user.id) == ps.get_user_capabilities(org_user.id)


def test_wildcard_grants(seeded, make_user):
    ppd = make_user("ppd")
    perms = ps.get_user_permissions(ppd.id)
    assert {"documents.publish", "pdf.copy", "workflow.update"} <= perms
    assert "users.update" not in perms


def test_admin_user_seeded(seeded):
    seed_service.seed_defaults(admin_email="root@docguard.io")
    admin = User.query.filter_by(email="root@docguard.io").one()
    assert ps.is_superuser(admin.id)
    seed_service.seed_defaults(admin_email="root@docguard.io")
    assert User.query.filter_by(email="root@docguard.io").count() == 1
