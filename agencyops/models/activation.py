"""
Activation tokens — single-use, time-boxed links that let a new client or
collaborator set their first password.

Only the SHA-256 of the raw token is stored; the raw value leaves the
server exactly once, inside the welcome email.
"""

import hashlib
import secrets
from datetime import UTC, datetime

from agencyops.models import db

SUBJECT_TYPES = {"client", "collaborator"}


def hash_token(token: str) -> str:
    """SHA-256 hash of a token (for DB storage; raw tokens are never persisted)."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def generate_token() -> str:
    """Generate a secure random activation token."""
    return secrets.token_urlsafe(32)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


class ActivationToken(db.Model):
    __tablename__ = "activation_tokens"
    __table_args__ = (
        db.Index("idx_activation_subject", "subject_type", "subject_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    token_hash = db.Column(db.String(64), nullable=False, unique=True)
    subject_type = db.Column(db.String(20), nullable=False, default="client")
    subject_id = db.Column(db.Integer, nullable=False)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)
    used_at = db.Column(db.DateTime(timezone=True))
    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    @property
    def is_used(self) -> bool:
        return self.used_at is not None

    def is_expired(self, now: datetime | None = None) -> bool:
        now = now or datetime.now(UTC)
        return now >= as_utc(self.expires_at)

    def to_dict(self):
        return {
            "id": self.id,
            "subject_type": self.subject_type,
            "subject_id": self.subject_id,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "used_at": self.used_at.isoformat() if self.used_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        state = "used" if self.is_used else "open"
        return f"<ActivationToken {self.id} {self.subject_type}/{self.subject_id} [{state}]>"
