"""
Auth Models — users, groups, roles, permissions, capabilities.

Two grant vocabularies coexist on the same Role rows:

  * Permission / RolePermission  — granular ``module.action`` names with an
    explicit grant/deny flag (``is_granted``).
  * Capability / RoleCapabilityAssignment — coarse ``CATEGORY_ACTION`` names;
    the presence of an assignment row *is* the grant.

Resolution of the effective sets lives in ``docguard.services.permission_service``.
"""

from datetime import datetime, timezone

from docguard.models import db
from docguard.services.authz_vocabulary import is_superuser_role


def _utcnow():
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════════════════════════════
# 1. GROUPS & DIVISIONS
# ═══════════════════════════════════════════════════════════════
class Group(db.Model):
    __tablename__ = "groups"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), unique=True, nullable=False)
    display_name = db.Column(db.String(200))
    description = db.Column(db.Text)
    level = db.Column(db.Integer, default=0)  # higher = more senior
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=_utcnow)

    users = db.relationship("User", back_populates="group", lazy="dynamic")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "display_name": self.display_name,
            "description": self.description,
            "level": self.level,
            "is_active": self.is_active,
        }


class Division(db.Model):
    __tablename__ = "divisions"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), unique=True, nullable=False)
    code = db.Column(db.String(30))

    def to_dict(self):
        return {"id": self.id, "name": self.name, "code": self.code}


# ═══════════════════════════════════════════════════════════════
# 2. USERS
# ═══════════════════════════════════════════════════════════════
class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(200), unique=True, nullable=False)
    username = db.Column(db.String(100), unique=True)
    full_name = db.Column(db.String(200))
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    group_id = db.Column(
        db.Integer, db.ForeignKey("groups.id", ondelete="SET NULL"), nullable=True
    )
    division_id = db.Column(
        db.Integer, db.ForeignKey("divisions.id", ondelete="SET NULL"), nullable=True
    )
    last_login_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=_utcnow)
    updated_at = db.Column(db.DateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        db.Index("ix_users_group_id", "group_id"),
    )

    # Relationships
    group = db.relationship("Group", back_populates="users")
    division = db.relationship("Division")
    user_roles = db.relationship(
        "UserRole", back_populates="user", lazy="dynamic",
        cascade="all, delete-orphan", foreign_keys="UserRole.user_id",
    )

    def active_roles(self):
        """Roles reachable through active, non-revoked assignments."""
        return [
            ur.role for ur in self.user_roles.filter_by(is_active=True).all()
            if ur.role is not None and ur.role.is_active
        ]

    @property
    def role_names(self):
        """List of active role names for this user."""
        return [r.name for r in self.active_roles()]

    def to_dict(self, include_roles=False):
        d = {
            "id": self.id,
            "email": self.email,
            "username": self.username,
            "full_name": self.full_name,
            "is_active": self.is_active,
            "group_id": self.group_id,
            "group_name": self.group.name if self.group else None,
            "division_id": self.division_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_roles:
            d["roles"] = self.role_names
        return d


# ═══════════════════════════════════════════════════════════════
# 3. ROLES
# ═══════════════════════════════════════════════════════════════
class Role(db.Model):
    __tablename__ = "roles"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), unique=True, nullable=False)
    display_name = db.Column(db.String(200))
    description = db.Column(db.Text)
    level = db.Column(db.Integer, default=0)  # seniority (higher = more senior)
    is_system = db.Column(db.Boolean, default=False)  # True = cannot be deleted
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=_utcnow)

    # Relationships
    role_permissions = db.relationship(
        "RolePermission", back_populates="role", lazy="dynamic", cascade="all, delete-orphan"
    )
    capability_assignments = db.relationship(
        "RoleCapabilityAssignment", back_populates="role", lazy="dynamic",
        cascade="all, delete-orphan",
    )
    user_roles = db.relationship("UserRole", back_populates="role", lazy="dynamic")

    @property
    def is_superuser(self) -> bool:
        return is_superuser_role(self.name)

    def to_dict(self, include_grants=False):
        d = {
            "id": self.id,
            "name": self.name,
            "display_name": self.display_name,
            "description": self.description,
            "level": self.level,
            "is_system": self.is_system,
            "is_active": self.is_active,
            "is_superuser": self.is_superuser,
        }
        if include_grants:
            d["permissions"] = sorted(
                rp.permission.name for rp in self.role_permissions.all()
                if rp.permission is not None and rp.is_granted
            )
            d["denied_permissions"] = sorted(
                rp.permission.name for rp in self.role_permissions.all()
                if rp.permission is not None and not rp.is_granted
            )
            d["capabilities"] = sorted(
                a.capability.name for a in self.capability_assignments.all()
                if a.capability is not None
            )
        return d


# ═══════════════════════════════════════════════════════════════
# 4. PERMISSIONS (legacy granular vocabulary)
# ═══════════════════════════════════════════════════════════════
class Permission(db.Model):
    __tablename__ = "permissions"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), unique=True, nullable=False)  # e.g. "documents.update"
    module = db.Column(db.String(50), nullable=False)  # e.g. "documents"
    action = db.Column(db.String(50), nullable=False)  # e.g. "update"
    resource = db.Column(db.String(100))  # optional qualifier
    display_name = db.Column(db.String(200))
    description = db.Column(db.Text)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=_utcnow)

    role_permissions = db.relationship("RolePermission", back_populates="permission", lazy="dynamic")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "module": self.module,
            "action": self.action,
            "resource": self.resource,
            "display_name": self.display_name,
            "description": self.description,
            "is_active": self.is_active,
        }


class RolePermission(db.Model):
    __tablename__ = "role_permissions"

    id = db.Column(db.Integer, primary_key=True)
    role_id = db.Column(
        db.Integer, db.ForeignKey("roles.id", ondelete="CASCADE"), nullable=False
    )
    permission_id = db.Column(
        db.Integer, db.ForeignKey("permissions.id", ondelete="CASCADE"), nullable=False
    )
    is_granted = db.Column(db.Boolean, default=True, nullable=False)  # False = explicit deny
    assigned_at = db.Column(db.DateTime, default=_utcnow)

    __table_args__ = (
        db.UniqueConstraint("role_id", "permission_id", name="uq_role_permission"),
    )

    role = db.relationship("Role", back_populates="role_permissions")
    permission = db.relationship("Permission", back_populates="role_permissions")


# ═══════════════════════════════════════════════════════════════
# 5. CAPABILITIES (coarse vocabulary)
# ═══════════════════════════════════════════════════════════════
class Capability(db.Model):
    __tablename__ = "capabilities"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), unique=True, nullable=False)  # e.g. "DOCUMENT_EDIT"
    category = db.Column(db.String(50), nullable=False)  # e.g. "document"
    description = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=_utcnow)

    assignments = db.relationship(
        "RoleCapabilityAssignment", back_populates="capability", lazy="dynamic",
        cascade="all, delete-orphan",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "category": self.category,
            "description": self.description,
        }


class RoleCapabilityAssignment(db.Model):
    __tablename__ = "role_capability_assignments"

    id = db.Column(db.Integer, primary_key=True)
    role_id = db.Column(
        db.Integer, db.ForeignKey("roles.id", ondelete="CASCADE"), nullable=False
    )
    capability_id = db.Column(
        db.Integer, db.ForeignKey("capabilities.id", ondelete="CASCADE"), nullable=False
    )
    assigned_at = db.Column(db.DateTime, default=_utcnow)

    __table_args__ = (
        db.UniqueConstraint("role_id", "capability_id", name="uq_role_capability"),
    )

    role = db.relationship("Role", back_populates="capability_assignments")
    capability = db.relationship("Capability", back_populates="assignments")


# ═══════════════════════════════════════════════════════════════
# 6. USER_ROLES (Junction table)
# ═══════════════════════════════════════════════════════════════
class UserRole(db.Model):
    __tablename__ = "user_roles"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    role_id = db.Column(
        db.Integer, db.ForeignKey("roles.id", ondelete="CASCADE"), nullable=False
    )
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    is_manually_assigned = db.Column(db.Boolean, default=True)
    assigned_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    assigned_at = db.Column(db.DateTime, default=_utcnow)
    revoked_at = db.Column(db.DateTime)

    __table_args__ = (
        db.UniqueConstraint("user_id", "role_id", name="uq_user_role"),
        db.Index("ix_user_roles_user_active", "user_id", "is_active"),
    )

    user = db.relationship("User", back_populates="user_roles", foreign_keys=[user_id])
    role = db.relationship("Role", back_populates="user_roles")

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "role_id": self.role_id,
            "role_name": self.role.name if self.role else None,
            "is_active": self.is_active,
            "is_manually_assigned": self.is_manually_assigned,
            "assigned_by": self.assigned_by,
            "assigned_at": self.assigned_at.isoformat() if self.assigned_at else None,
            "revoked_at": self.revoked_at.isoformat() if self.revoked_at else None,
        }
