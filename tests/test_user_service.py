"""User service tests: records, groups and role assignment lifecycle."""

import pytest

from docguard.core.exceptions import ConflictError, NotFoundError, ValidationError
from docguard.models.audit import AuditLog
from docguard.models.auth import UserRole
from docguard.services import permission_service as ps
from docguard.services import user_service as us


def test_create_user_normalizes_email_and_assigns_roles(seeded):
    user = us.create_user("alice@DOCGUARD.io", username="alice", role_names=["manager"])
    assert user.email == "alice@docguard.io"
    assert ps.get_user_role_names(user.id) == ["manager"]
    assert AuditLog.query.filter_by(action="user.create").count() == 1


@pytest.mark.parametrize("email", ["not-an-email", "a@@docguard.io", ""])
def test_create_user_rejects_invalid_email(seeded, email):
    with pytest.raises(ValidationError):
        us.create_user(email)


def test_create_user_conflicts(seeded):
    us.create_user("bob@docguard.io", username="bob")
    with pytest.raises(ConflictError):
        us.create_user("bob@DOCGUARD.io")
    with pytest.raises(ConflictError):
        us.create_user("robert@docguard.io", username="bob")
    with pytest.raises(NotFoundError):
        us.create_user("carol@docguard.io", group_id=404)
    with pytest.raises(NotFoundError):
        us.create_user("dave@docguard.io", role_names=["wizard"])


def test_update_user_ignores_unknown_fields(seeded, make_user):
    user = make_user()
    other = make_user()
    us.update_user(user.id, full_name="Renamed", is_active=False)
    assert user.full_name == "Renamed"
    assert user.is_active is True
    with pytest.raises(ConflictError):
        us.update_user(user.id, email=other.email)


def test_assign_revoke_reactivate(seeded, make_user):
    user = make_user()
    first = us.assign_role(user.id, "gm")
    assert ps.get_user_max_level(user.id) == 70

    with pytest.raises(ConflictError):
        us.assign_role(user.id, "gm")

    us.revoke_role(user.id, "gm")
    assert ps.get_user_role_names(user.id) == []
    row = UserRole.query.filter_by(user_id=user.id).one()
    assert row.is_active is False
    assert row.revoked_at is not None

    again = us.assign_role(user.id, "gm")
    assert again.id == first.id
    assert again.is_active is True
    assert again.revoked_at is None

    with pytest.raises(NotFoundError):
        us.revoke_role(user.id, "viewer")


def test_bulk_assign_role(seeded, make_user):
    fresh = make_user()
    holder = make_user("viewer")
    revoked = make_user("viewer")
    us.revoke_role(revoked.id, "viewer")

    result = us.bulk_assign_role([fresh.id, holder.id, revoked.id, 777, fresh.id], "viewer")
    assert result == {
        "assigned": [fresh.id],
        "reactivated": [revoked.id],
        "skipped": [holder.id],
        "missing": [777],
    }
    assert ps.get_user_role_names(revoked.id) == ["viewer"]


def test_deactivate_user_drops_authorization(seeded, make_user):
    user = make_user("manager")
    assert ps.get_user_permissions(user.id)
    us.deactivate_user(user.id)
    assert ps.get_user_role_names(user.id) == []
    assert ps.get_user_permissions(user.id) == set()


def test_groups(seeded, make_user):
    legal = us.create_group("Legal", level=3)
    with pytest.raises(ConflictError):
        us.create_group("Legal")
    with pytest.raises(ValidationError):
        us.create_group("")

    user = make_user()
    us.set_user_group(user.id, legal.id)
    assert [u["id"] for u in us.list_users(group_id=legal.id)] == [user.id]
    us.set_user_group(user.id, None)
    assert us.list_users(group_id=legal.id) == []
    with pytest.raises(NotFoundError):
        us.set_user_group(user.id, 404)
    assert [g.name for g in us.list_groups()] == ["Legal"]


def test_list_users_active_only(seeded, make_user):
    active = make_user("viewer")
    make_user(is_active=False)
    listed = us.list_users(active_only=True)
    assert [u["id"] for u in listed] == [active.id]
    assert listed[0]["roles"] == ["viewer"]
