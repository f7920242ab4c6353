"""
User Service — user records, groups and role assignments.

Role assignments are never deleted: revocation flips ``UserRole.is_active``
so the grant history stays queryable.  Every assignment change drops the
engine cache.
"""

import logging
from datetime import datetime, timezone

from email_validator import EmailNotValidError, validate_email

from docguard.core.exceptions import ConflictError, NotFoundError, ValidationError
from docguard.models import db
from docguard.models.audit import write_audit
from docguard.models.auth import Division, Group, Role, User, UserRole
from docguard.services.permission_service import invalidate_all_cache, invalidate_cache

logger = logging.getLogger(__name__)


def _normalize_email(email: str) -> str:
    try:
        return validate_email(email, check_deliverability=False).normalized
    except EmailNotValidError as e:
        raise ValidationError(f"Invalid email: {e}", details={"email": str(e)})


def _get_user(user_id: int) -> User:
    user = db.session.get(User, user_id)
    if not user:
        raise NotFoundError("User", user_id)
    return user


def _get_role(role_name: str) -> Role:
    role = Role.query.filter_by(name=role_name).first()
    if not role:
        raise NotFoundError("Role", role_name)
    return role


# ═══════════════════════════════════════════════════════════════
# User CRUD
# ═══════════════════════════════════════════════════════════════
def create_user(
    email: str,
    username: str = None,
    full_name: str = None,
    group_id: int = None,
    division_id: int = None,
    role_names: list[str] = None,
    assigned_by: int = None,
) -> User:
    """Create a user and optionally assign initial roles."""
    email = _normalize_email(email)
    if User.query.filter_by(email=email).first():
        raise ConflictError("User", "email", email)
    if username and User.query.filter_by(username=username).first():
        raise ConflictError("User", "username", username)
    if group_id is not None and db.session.get(Group, group_id) is None:
        raise NotFoundError("Group", group_id)
    if division_id is not None and db.session.get(Division, division_id) is None:
        raise NotFoundError("Division", division_id)

    user = User(
        email=email,
        username=username,
        full_name=full_name,
        group_id=group_id,
        division_id=division_id,
    )
    db.session.add(user)
    db.session.flush()  # Get user.id before assigning roles

    for rn in role_names or []:
        role = _get_role(rn)
        db.session.add(UserRole(
            user_id=user.id, role_id=role.id, assigned_by=assigned_by,
        ))

    write_audit(entity_type="user", entity_id=user.id, action="user.create",
                diff={"email": email, "roles": role_names or []})
    db.session.commit()
    invalidate_cache(user.id)
    return user


def get_user(user_id: int) -> User:
    return _get_user(user_id)


def update_user(user_id: int, **kwargs) -> User:
    """Update self-service profile fields; anything else is ignored."""
    user = _get_user(user_id)

    allowed = {"full_name", "username", "email"}
    changes = {}
    for key, val in kwargs.items():
        if key not in allowed:
            continue
        if key == "email":
            val = _normalize_email(val)
            clash = User.query.filter(User.email == val, User.id != user.id).first()
            if clash:
                raise ConflictError("User", "email", val)
        changes[key] = {"old": getattr(user, key), "new": val}
        setattr(user, key, val)

    if changes:
        write_audit(entity_type="user", entity_id=user.id, action="user.update", diff=changes)
    db.session.commit()
    return user


def deactivate_user(user_id: int) -> User:
    """Soft disable.  Sessions fail at their next snapshot refresh."""
    user = _get_user(user_id)
    user.is_active = False
    write_audit(entity_type="user", entity_id=user.id, action="user.deactivate")
    db.session.commit()
    invalidate_cache(user_id)
    logger.info("User %s deactivated", user_id)
    return user


def list_users(group_id: int = None, active_only: bool = False) -> list[dict]:
    q = User.query
    if group_id is not None:
        q = q.filter_by(group_id=group_id)
    if active_only:
        q = q.filter_by(is_active=True)
    return [u.to_dict(include_roles=True) for u in q.order_by(User.id).all()]


def set_user_group(user_id: int, group_id: int | None) -> User:
    user = _get_user(user_id)
    if group_id is not None and db.session.get(Group, group_id) is None:
        raise NotFoundError("Group", group_id)
    old = user.group_id
    user.group_id = group_id
    write_audit(entity_type="user", entity_id=user.id, action="user.set_group",
                diff={"group_id": {"old": old, "new": group_id}})
    db.session.commit()
    return user


# ═══════════════════════════════════════════════════════════════
# Groups
# ═══════════════════════════════════════════════════════════════
def create_group(name: str, display_name: str = None, level: int = 0,
                 description: str = None) -> Group:
    if not name or not name.strip():
        raise ValidationError("Group name is required", details={"name": "required"})
    name = name.strip()
    if Group.query.filter_by(name=name).first():
        raise ConflictError("Group", "name", name)
    group = Group(name=name, display_name=display_name or name, level=level,
                  description=description)
    db.session.add(group)
    db.session.flush()
    write_audit(entity_type="group", entity_id=group.id, action="group.create",
                diff={"name": name})
    db.session.commit()
    return group


def list_groups() -> list[Group]:
    return Group.query.order_by(Group.level.desc(), Group.name).all()


# ═══════════════════════════════════════════════════════════════
# Role Management
# ═══════════════════════════════════════════════════════════════
def assign_role(user_id: int, role_name: str, assigned_by: int = None,
                manual: bool = True) -> UserRole:
    """Assign a role, re-activating a previously revoked assignment."""
    _get_user(user_id)
    role = _get_role(role_name)

    ur = UserRole.query.filter_by(user_id=user_id, role_id=role.id).first()
    if ur and ur.is_active:
        raise ConflictError("UserRole", "role", role_name)
    if ur:
        ur.is_active = True
        ur.revoked_at = None
        ur.assigned_by = assigned_by
        ur.assigned_at = datetime.now(timezone.utc)
        ur.is_manually_assigned = manual
    else:
        ur = UserRole(user_id=user_id, role_id=role.id, assigned_by=assigned_by,
                      is_manually_assigned=manual)
        db.session.add(ur)

    write_audit(entity_type="user_role", entity_id=user_id, action="user_role.assign",
                actor_user_id=assigned_by, diff={"role": role_name})
    db.session.commit()
    invalidate_cache(user_id)
    return ur


def revoke_role(user_id: int, role_name: str) -> UserRole:
    """Deactivate an assignment; the row is kept."""
    _get_user(user_id)
    role = _get_role(role_name)

    ur = UserRole.query.filter_by(user_id=user_id, role_id=role.id, is_active=True).first()
    if not ur:
        raise NotFoundError("UserRole", f"{user_id}:{role_name}")

    ur.is_active = False
    ur.revoked_at = datetime.now(timezone.utc)
    write_audit(entity_type="user_role", entity_id=user_id, action="user_role.revoke",
                diff={"role": role_name})
    db.session.commit()
    invalidate_cache(user_id)
    return ur


def bulk_assign_role(user_ids: list[int], role_name: str, assigned_by: int = None) -> dict:
    """Assign one role to many users in a single transaction."""
    role = _get_role(role_name)
    result = {"assigned": [], "reactivated": [], "skipped": [], "missing": []}

    existing = {
        ur.user_id: ur
        for ur in UserRole.query.filter(
            UserRole.role_id == role.id, UserRole.user_id.in_(user_ids)
        ).all()
    }
    for uid in dict.fromkeys(user_ids):
        if db.session.get(User, uid) is None:
            result["missing"].append(uid)
            continue
        ur = existing.get(uid)
        if ur is None:
            db.session.add(UserRole(user_id=uid, role_id=role.id, assigned_by=assigned_by))
            result["assigned"].append(uid)
        elif not ur.is_active:
            ur.is_active = True
            ur.revoked_at = None
            ur.assigned_by = assigned_by
            result["reactivated"].append(uid)
        else:
            result["skipped"].append(uid)

    write_audit(entity_type="user_role", entity_id=role.id, action="user_role.bulk_assign",
                actor_user_id=assigned_by, diff={"role": role_name, **result})
    db.session.commit()
    invalidate_all_cache()
    logger.info(
        "Bulk assigned role %s: %d new, %d reactivated",
        role_name, len(result["assigned"]), len(result["reactivated"]),
    )
    return result
