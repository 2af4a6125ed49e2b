"""
Client & catalog models.

Models:
    - Client: an agency customer; owns requests, projects and onboarding.
    - Product: catalog item with a list price and default SLA.
    - ClientService: the negotiated terms (price, SLA days) a client has
      for a product. Tasks freeze these values at creation.
    - Project: optional grouping of a client's tasks.
"""

from datetime import UTC, datetime

from sqlalchemy.orm import validates

from agencyops.core.exceptions import ValidationError
from agencyops.models import db

CLIENT_STATUSES = {"pending", "active", "inactive"}


class Client(db.Model):
    __tablename__ = "clients"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    email = db.Column(db.String(200), nullable=False, unique=True)
    status = db.Column(db.String(20), nullable=False, default="pending")
    # users.id, no DB-level FK since users.client_id points back here
    user_id = db.Column(db.Integer, nullable=True, index=True)
    activated_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(UTC))

    services = db.relationship("ClientService", back_populates="client", lazy="dynamic")

    @validates("status")
    def _validate_status(self, key, value):
        if value not in CLIENT_STATUSES:
            raise ValidationError(f"Invalid client status: {value!r}")
        return value

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "status": self.status,
            "user_id": self.user_id,
            "activated_at": self.activated_at.isoformat() if self.activated_at else None,
        }


class Product(db.Model):
    __tablename__ = "products"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    base_price = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    default_sla_days = db.Column(db.Integer, nullable=False, default=5)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "base_price": float(self.base_price or 0),
            "default_sla_days": self.default_sla_days,
            "is_active": self.is_active,
        }


class ClientService(db.Model):
    """Per-client contracted product. Editing it never touches existing tasks."""

    __tablename__ = "client_services"

    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(
        db.Integer, db.ForeignKey("clients.id", ondelete="CASCADE"), nullable=False
    )
    product_id = db.Column(
        db.Integer, db.ForeignKey("products.id", ondelete="CASCADE"), nullable=False
    )
    negotiated_price = db.Column(db.Numeric(12, 2), nullable=False)
    sla_days = db.Column(db.Integer, nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    __table_args__ = (
        db.UniqueConstraint("client_id", "product_id", name="uq_client_service"),
    )

    client = db.relationship("Client", back_populates="services")
    product = db.relationship("Product")

    def to_dict(self):
        return {
            "id": self.id,
            "client_id": self.client_id,
            "product_id": self.product_id,
            "negotiated_price": float(self.negotiated_price),
            "sla_days": self.sla_days,
            "is_active": self.is_active,
        }


class Project(db.Model):
    __tablename__ = "projects"

    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(
        db.Integer, db.ForeignKey("clients.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name = db.Column(db.String(200), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(UTC))

    def to_dict(self):
        return {"id": self.id, "client_id": self.client_id, "name": self.name}
