"""
Auth Models — users, roles, permissions and their junction tables.

The workflow engine only reads these tables: transitions name the permission
codenames they require, stages name the role that handles them, and the
permission service resolves both through ``user_roles`` / ``role_permissions``.
Authentication itself lives outside this service.
"""

from datetime import datetime, timezone

from admissions.models import db


# ═══════════════════════════════════════════════════════════════
# 1. USERS
# ═══════════════════════════════════════════════════════════════
class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(200), nullable=False, unique=True)
    full_name = db.Column(db.String(200))
    status = db.Column(db.String(20), default="active")  # active, inactive, suspended
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    # Relationships
    user_roles = db.relationship(
        "UserRole", back_populates="user", lazy="dynamic",
        cascade="all, delete-orphan", foreign_keys="UserRole.user_id",
    )

    def to_dict(self, include_roles=False):
        d = {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_roles:
            d["roles"] = self.role_names
        return d

    @property
    def role_names(self):
        """List of role names for this user."""
        return [ur.role.name for ur in self.user_roles.all()]

    @property
    def display_name(self):
        return self.full_name or self.email

    def __repr__(self):
        return f"<User {self.id}: {self.email}>"


# ═══════════════════════════════════════════════════════════════
# 2. ROLES
# ═══════════════════════════════════════════════════════════════
class Role(db.Model):
    __tablename__ = "roles"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False, unique=True)  # e.g. "admissions_officer"
    display_name = db.Column(db.String(200))
    description = db.Column(db.Text)
    is_system = db.Column(db.Boolean, default=False)  # True = seeded, not editable
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    # Relationships
    role_permissions = db.relationship(
        "RolePermission", back_populates="role", lazy="dynamic", cascade="all, delete-orphan"
    )
    user_roles = db.relationship("UserRole", back_populates="role", lazy="dynamic")

    def to_dict(self, include_permissions=False):
        d = {
            "id": self.id,
            "name": self.name,
            "display_name": self.display_name,
            "description": self.description,
            "is_system": self.is_system,
        }
        if include_permissions:
            d["permissions"] = [
                rp.permission.codename for rp in self.role_permissions.all()
            ]
        return d


# ═══════════════════════════════════════════════════════════════
# 3. PERMISSIONS
# ═══════════════════════════════════════════════════════════════
class Permission(db.Model):
    __tablename__ = "permissions"

    id = db.Column(db.Integer, primary_key=True)
    codename = db.Column(db.String(100), unique=True, nullable=False)  # e.g. "complete_review"
    category = db.Column(db.String(50), nullable=False, default="workflow")
    display_name = db.Column(db.String(200))
    description = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    # Relationships
    role_permissions = db.relationship("RolePermission", back_populates="permission", lazy="dynamic")

    def to_dict(self):
        return {
            "id": self.id,
            "codename": self.codename,
            "category": self.category,
            "display_name": self.display_name,
            "description": self.description,
        }


# ═══════════════════════════════════════════════════════════════
# 4. ROLE_PERMISSIONS (Junction table)
# ═══════════════════════════════════════════════════════════════
class RolePermission(db.Model):
    __tablename__ = "role_permissions"

    id = db.Column(db.Integer, primary_key=True)
    role_id = db.Column(
        db.Integer, db.ForeignKey("roles.id", ondelete="CASCADE"), nullable=False
    )
    permission_id = db.Column(
        db.Integer, db.ForeignKey("permissions.id", ondelete="CASCADE"), nullable=False
    )

    __table_args__ = (
        db.UniqueConstraint("role_id", "permission_id", name="uq_role_permission"),
    )

    # Relationships
    role = db.relationship("Role", back_populates="role_permissions")
    permission = db.relationship("Permission", back_populates="role_permissions")


# ═══════════════════════════════════════════════════════════════
# 5. USER_ROLES (Junction table)
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
    assigned_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        db.UniqueConstraint("user_id", "role_id", name="uq_user_role"),
    )

    # Relationships
    user = db.relationship("User", back_populates="user_roles", foreign_keys=[user_id])
    role = db.relationship("Role", back_populates="user_roles")
