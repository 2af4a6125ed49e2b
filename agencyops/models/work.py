"""
Agency Operations Platform
Work item domain model — client requests and the tasks derived from them.

Models:
    - ClientRequest: client-initiated demand, reviewed by an admin.
    - Task: executable unit with frozen economics and a nine-state lifecycle.
    - TaskAttachment: input (reference) or output (deliverable) file.
    - TaskComment: append-only note on a task.

Status columns only accept values from the closed sets below; the
transition graphs are enforced by ``agencyops.services.work_lifecycle``.
"""

from datetime import UTC, datetime

from sqlalchemy.orm import validates

from agencyops.core.exceptions import ValidationError
from agencyops.models import db

# ── Request lifecycle ────────────────────────────────────────────────────────

REQUEST_PENDING = "pending"
REQUEST_UNDER_REVIEW = "under_review"
REQUEST_APPROVED = "approved"
REQUEST_REJECTED = "rejected"

REQUEST_STATUSES = {REQUEST_PENDING, REQUEST_UNDER_REVIEW, REQUEST_APPROVED, REQUEST_REJECTED}

REQUEST_TRANSITIONS = {
    REQUEST_PENDING:      [REQUEST_UNDER_REVIEW, REQUEST_APPROVED, REQUEST_REJECTED],
    REQUEST_UNDER_REVIEW: [REQUEST_APPROVED, REQUEST_REJECTED],
    REQUEST_APPROVED:     [],
    REQUEST_REJECTED:     [],
}

REQUEST_PRIORITIES = {"normal", "urgent"}

# ── Task lifecycle ───────────────────────────────────────────────────────────

TASK_BACKLOG = "backlog"
TASK_IN_PROGRESS = "in_progress"
TASK_IN_REVIEW = "in_review"
TASK_RELEASED_TO_CLIENT = "released_to_client"
TASK_ADJUSTMENTS_REQUESTED = "adjustments_requested"
TASK_CLIENT_APPROVED = "client_approved"
TASK_CLIENT_REQUESTED_CHANGES = "client_requested_changes"
TASK_PUBLISHED = "published"
TASK_CANCELLED = "cancelled"

TASK_STATUSES = (
    TASK_BACKLOG,
    TASK_IN_PROGRESS,
    TASK_IN_REVIEW,
    TASK_RELEASED_TO_CLIENT,
    TASK_ADJUSTMENTS_REQUESTED,
    TASK_CLIENT_APPROVED,
    TASK_CLIENT_REQUESTED_CHANGES,
    TASK_PUBLISHED,
    TASK_CANCELLED,
)

TASK_TRANSITIONS = {
    TASK_BACKLOG:                  [TASK_IN_PROGRESS, TASK_CANCELLED],
    TASK_IN_PROGRESS:              [TASK_IN_REVIEW, TASK_CANCELLED],
    TASK_IN_REVIEW:                [TASK_RELEASED_TO_CLIENT, TASK_ADJUSTMENTS_REQUESTED, TASK_CANCELLED],
    TASK_ADJUSTMENTS_REQUESTED:    [TASK_IN_PROGRESS, TASK_CANCELLED],
    TASK_RELEASED_TO_CLIENT:       [TASK_CLIENT_APPROVED, TASK_CLIENT_REQUESTED_CHANGES, TASK_CANCELLED],
    TASK_CLIENT_REQUESTED_CHANGES: [TASK_IN_PROGRESS, TASK_CANCELLED],
    TASK_CLIENT_APPROVED:          [TASK_PUBLISHED],
    TASK_PUBLISHED:                [],
    TASK_CANCELLED:                [],
}

# Tasks in these states no longer count toward SLA / overdue figures
TASK_CLOSED_STATUSES = {TASK_CLIENT_APPROVED, TASK_PUBLISHED, TASK_CANCELLED}

ATTACHMENT_DIRECTIONS = {"input", "output"}
COMMENT_KINDS = {"comment", "adjustment_request", "client_feedback"}


def validate_request_transition(old_status, new_status):
    """Return True if ClientRequest status transition is valid."""
    return new_status in REQUEST_TRANSITIONS.get(old_status, [])


def validate_task_transition(old_status, new_status):
    """Return True if Task status transition is valid."""
    return new_status in TASK_TRANSITIONS.get(old_status, [])


def _utcnow():
    return datetime.now(UTC)


# ═════════════════════════════════════════════════════════════════════════════
# CLIENT REQUEST
# ═════════════════════════════════════════════════════════════════════════════


class ClientRequest(db.Model):
    """
    Client-initiated work demand.

    ``reviewed_at`` / ``reviewed_by`` are set iff the request is approved or
    rejected. ``protocol_number`` is the external identifier and never
    changes after insert.
    """

    __tablename__ = "client_requests"
    __table_args__ = (
        db.Index("idx_request_client_status", "client_id", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    protocol_number = db.Column(db.String(30), nullable=False, unique=True)
    client_id = db.Column(
        db.Integer, db.ForeignKey("clients.id", ondelete="CASCADE"), nullable=False
    )
    product_id = db.Column(
        db.Integer, db.ForeignKey("products.id"), nullable=False
    )
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="SET NULL"), nullable=True
    )
    requested_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    priority = db.Column(db.String(10), nullable=False, default="normal")
    status = db.Column(db.String(20), nullable=False, default=REQUEST_PENDING)

    reviewed_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    review_notes = db.Column(db.Text)
    reviewed_at = db.Column(db.DateTime(timezone=True))

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    product = db.relationship("Product")
    client = db.relationship("Client")

    @validates("status")
    def _validate_status(self, key, value):
        if value not in REQUEST_STATUSES:
            raise ValidationError(f"Invalid request status: {value!r}")
        return value

    @validates("priority")
    def _validate_priority(self, key, value):
        if value not in REQUEST_PRIORITIES:
            raise ValidationError(
                f"priority must be one of {sorted(REQUEST_PRIORITIES)}",
                details={"priority": value},
            )
        return value

    @validates("protocol_number")
    def _validate_protocol(self, key, value):
        if self.protocol_number is not None and value != self.protocol_number:
            raise ValidationError("protocol_number is immutable")
        return value

    def to_dict(self):
        return {
            "id": self.id,
            "protocol_number": self.protocol_number,
            "client_id": self.client_id,
            "product_id": self.product_id,
            "product_name": self.product.name if self.product else None,
            "project_id": self.project_id,
            "requested_by": self.requested_by,
            "title": self.title,
            "description": self.description,
            "quantity": self.quantity,
            "priority": self.priority,
            "status": self.status,
            "reviewed_by": self.reviewed_by,
            "review_notes": self.review_notes,
            "reviewed_at": self.reviewed_at.isoformat() if self.reviewed_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<ClientRequest {self.protocol_number} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# TASK
# ═════════════════════════════════════════════════════════════════════════════


class Task(db.Model):
    """
    Executable unit of work.

    ``frozen_price`` / ``frozen_sla_days`` are captured from the client's
    contracted service at creation and are write-once: later catalog edits
    never change a committed task's economics.
    """

    __tablename__ = "tasks"
    __table_args__ = (
        db.Index("idx_task_assignee_status", "assignee_id", "status"),
        db.Index("idx_task_client_status", "client_id", "status"),
        db.Index("idx_task_due", "due_date"),
    )

    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(
        db.Integer, db.ForeignKey("client_requests.id", ondelete="SET NULL"),
        nullable=True, unique=True,
        comment="NULL for staff-created tasks; at most one task per request",
    )
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="SET NULL"), nullable=True
    )
    client_id = db.Column(
        db.Integer, db.ForeignKey("clients.id", ondelete="CASCADE"), nullable=False
    )
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    assignee_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))

    quantity = db.Column(db.Integer, nullable=False, default=1)
    due_date = db.Column(db.Date, nullable=False)
    frozen_price = db.Column(db.Numeric(12, 2), nullable=False)
    frozen_sla_days = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(30), nullable=False, default=TASK_BACKLOG)
    variant_description = db.Column(db.Text)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    product = db.relationship("Product")
    request = db.relationship("ClientRequest", backref=db.backref("task", uselist=False))
    attachments = db.relationship(
        "TaskAttachment", back_populates="task", lazy="dynamic",
        order_by="TaskAttachment.id",
    )
    comments = db.relationship(
        "TaskComment", back_populates="task", lazy="dynamic",
        order_by="TaskComment.id",
    )

    @validates("status")
    def _validate_status(self, key, value):
        if value not in TASK_STATUSES:
            raise ValidationError(f"Invalid task status: {value!r}")
        return value

    @validates("frozen_price", "frozen_sla_days")
    def _validate_frozen(self, key, value):
        current = getattr(self, key)
        if current is not None and value != current:
            raise ValidationError(f"{key} is frozen at task creation")
        return value

    def output_attachment_count(self) -> int:
        return self.attachments.filter_by(direction="output").count()

    def to_dict(self):
        return {
            "id": self.id,
            "request_id": self.request_id,
            "protocol_number": self.request.protocol_number if self.request else None,
            "project_id": self.project_id,
            "client_id": self.client_id,
            "product_id": self.product_id,
            "product_name": self.product.name if self.product else None,
            "assignee_id": self.assignee_id,
            "quantity": self.quantity,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "frozen_price": float(self.frozen_price) if self.frozen_price is not None else None,
            "frozen_sla_days": self.frozen_sla_days,
            "status": self.status,
            "variant_description": self.variant_description,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Task {self.id} [{self.status}]>"


class TaskAttachment(db.Model):
    """File reference bound to a task or to the request it came from."""

    __tablename__ = "task_attachments"

    id = db.Column(db.Integer, primary_key=True)
    task_id = db.Column(
        db.Integer, db.ForeignKey("tasks.id", ondelete="CASCADE"), nullable=True, index=True
    )
    request_id = db.Column(
        db.Integer, db.ForeignKey("client_requests.id", ondelete="CASCADE"), nullable=True, index=True
    )
    direction = db.Column(db.String(10), nullable=False)
    file_name = db.Column(db.String(255), nullable=False)
    content_type = db.Column(db.String(100), nullable=False)
    size_bytes = db.Column(db.Integer, nullable=False)
    url = db.Column(db.String(500), nullable=False)
    uploaded_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    task = db.relationship("Task", back_populates="attachments")

    @validates("direction")
    def _validate_direction(self, key, value):
        if value not in ATTACHMENT_DIRECTIONS:
            raise ValidationError(
                f"direction must be one of {sorted(ATTACHMENT_DIRECTIONS)}",
                details={"direction": value},
            )
        return value

    def to_dict(self):
        return {
            "id": self.id,
            "task_id": self.task_id,
            "request_id": self.request_id,
            "direction": self.direction,
            "file_name": self.file_name,
            "content_type": self.content_type,
            "size_bytes": self.size_bytes,
            "url": self.url,
            "uploaded_by": self.uploaded_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class TaskComment(db.Model):
    """Append-only note; never updated or deleted."""

    __tablename__ = "task_comments"

    id = db.Column(db.Integer, primary_key=True)
    task_id = db.Column(
        db.Integer, db.ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True
    )
    author_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    kind = db.Column(db.String(30), nullable=False, default="comment")
    body = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    task = db.relationship("Task", back_populates="comments")

    @validates("kind")
    def _validate_kind(self, key, value):
        if value not in COMMENT_KINDS:
            raise ValidationError(f"Invalid comment kind: {value!r}")
        return value

    def to_dict(self):
        return {
            "id": self.id,
            "task_id": self.task_id,
            "author_id": self.author_id,
            "kind": self.kind,
            "body": self.body,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
