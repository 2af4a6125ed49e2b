"""
Auth Models — users (login subjects), roles, user_roles.

Sessions are owned by the external identity provider; these tables hold the
profile a bearer token's ``sub`` points at, the raw role labels the Role
Classifier consumes, and the credential set during first access.
"""

from datetime import UTC, datetime

from sqlalchemy.orm import validates

from agencyops.core.exceptions import ValidationError
from agencyops.models import db

USER_STATUSES = {"invited", "active", "inactive"}


# ═══════════════════════════════════════════════════════════════
# 1. USERS
# ═══════════════════════════════════════════════════════════════
class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(200), nullable=False, unique=True)
    password_hash = db.Column(db.String(256))  # NULL until first access completes
    full_name = db.Column(db.String(200))
    status = db.Column(db.String(20), nullable=False, default="invited")
    client_id = db.Column(
        db.Integer, db.ForeignKey("clients.id", ondelete="SET NULL"), nullable=True,
        comment="Set for client-portal users once activation links the profile",
    )
    activated_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(UTC))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    __table_args__ = (
        db.Index("ix_users_email", "email"),
        db.Index("ix_users_client_id", "client_id"),
    )

    # Relationships
    user_roles = db.relationship(
        "UserRole", back_populates="user", lazy="dynamic",
        cascade="all, delete-orphan",
    )

    @validates("status")
    def _validate_status(self, key, value):
        if value not in USER_STATUSES:
            raise ValidationError(f"Invalid user status: {value!r}")
        return value

    @property
    def role_names(self):
        """List of raw role labels for this user."""
        return [ur.role.name for ur in self.user_roles.all()]

    def to_dict(self, include_roles=False):
        d = {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "status": self.status,
            "client_id": self.client_id,
            "activated_at": self.activated_at.isoformat() if self.activated_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_roles:
            d["roles"] = self.role_names
        return d


# ═══════════════════════════════════════════════════════════════
# 2. ROLES
# ═══════════════════════════════════════════════════════════════
class Role(db.Model):
    __tablename__ = "roles"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False, unique=True)  # raw label, e.g. "video_editor"
    display_name = db.Column(db.String(200))
    description = db.Column(db.Text)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(UTC))

    user_roles = db.relationship("UserRole", back_populates="role", lazy="dynamic")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "display_name": self.display_name,
            "description": self.description,
        }


# ═══════════════════════════════════════════════════════════════
# 3. USER_ROLES (Junction table)
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
    assigned_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(UTC))

    __table_args__ = (
        db.UniqueConstraint("user_id", "role_id", name="uq_user_role"),
    )

    user = db.relationship("User", back_populates="user_roles")
    role = db.relationship("Role", back_populates="user_roles")
