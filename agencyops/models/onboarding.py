"""
Onboarding intake models.

Models:
    - OnboardingInstance: one intake questionnaire for a client.
    - OnboardingResponse: one answer per (instance, field_key). When
      ``is_sensitive`` is set, ``value`` holds Fernet ciphertext.
    - OnboardingAuditLog: append-only record of sensitive-field access.
"""

from datetime import UTC, datetime

from sqlalchemy.orm import validates

from agencyops.core.exceptions import ValidationError
from agencyops.models import db

ONBOARDING_STATUSES = {"in_progress", "submitted", "reviewed"}
ONBOARDING_AUDIT_ACTIONS = {"encrypt_sensitive", "decrypt_sensitive_view"}


class OnboardingInstance(db.Model):
    __tablename__ = "onboarding_instances"

    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(
        db.Integer, db.ForeignKey("clients.id", ondelete="CASCADE"), nullable=False, index=True
    )
    status = db.Column(db.String(20), nullable=False, default="in_progress")
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(UTC))

    responses = db.relationship(
        "OnboardingResponse", back_populates="instance", lazy="dynamic",
        cascade="all, delete-orphan",
    )

    @validates("status")
    def _validate_status(self, key, value):
        if value not in ONBOARDING_STATUSES:
            raise ValidationError(f"Invalid onboarding status: {value!r}")
        return value

    def to_dict(self):
        return {
            "id": self.id,
            "client_id": self.client_id,
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class OnboardingResponse(db.Model):
    __tablename__ = "onboarding_responses"
    __table_args__ = (
        db.UniqueConstraint("instance_id", "field_key", name="uq_onboarding_field"),
    )

    id = db.Column(db.Integer, primary_key=True)
    instance_id = db.Column(
        db.Integer, db.ForeignKey("onboarding_instances.id", ondelete="CASCADE"), nullable=False
    )
    field_key = db.Column(db.String(100), nullable=False)
    section = db.Column(db.String(100))
    value = db.Column(db.Text)
    is_sensitive = db.Column(db.Boolean, nullable=False, default=False)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    instance = db.relationship("OnboardingInstance", back_populates="responses")

    def to_dict(self):
        """Sensitive values are masked; use the vault to reveal them."""
        return {
            "id": self.id,
            "instance_id": self.instance_id,
            "field_key": self.field_key,
            "section": self.section,
            "value": None if self.is_sensitive else self.value,
            "is_sensitive": self.is_sensitive,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class OnboardingAuditLog(db.Model):
    """Never updated or deleted."""

    __tablename__ = "onboarding_audit_log"
    __table_args__ = (
        db.Index("idx_onboarding_audit_instance", "instance_id", "field_key"),
    )

    id = db.Column(db.Integer, primary_key=True)
    instance_id = db.Column(
        db.Integer, db.ForeignKey("onboarding_instances.id", ondelete="CASCADE"), nullable=False
    )
    field_key = db.Column(db.String(100), nullable=False)
    action = db.Column(db.String(40), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    @validates("action")
    def _validate_action(self, key, value):
        if value not in ONBOARDING_AUDIT_ACTIONS:
            raise ValidationError(f"Invalid onboarding audit action: {value!r}")
        return value

    def to_dict(self):
        return {
            "id": self.id,
            "instance_id": self.instance_id,
            "field_key": self.field_key,
            "action": self.action,
            "user_id": self.user_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
