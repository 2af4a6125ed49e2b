"""
Work Item Lifecycle — client requests and the tasks derived from them.

Request graph:
    pending → under_review → approved | rejected      (admin)
    pending → approved | rejected                     (admin)

Task graph (see ``agencyops.models.work.TASK_TRANSITIONS``):
    backlog → in_progress → in_review → released_to_client | adjustments_requested
    adjustments_requested → in_progress
    released_to_client → client_approved | client_requested_changes
    client_requested_changes → in_progress
    client_approved → published
    any state before client_approved → cancelled (admin)

Every status write is a compare-and-set:
    UPDATE tasks SET status=:new WHERE id=:id AND status=:expected
Zero rows means another actor got there first → StaleStateError.

Each transition writes exactly one AuditLog row in the same transaction.
Notifications and realtime events go out only after commit and never undo
a transition.

Guard order for ``advance_task``:
    1. caller classified               → AuthorizationError
    2. target is a known status        → ValidationError
    3. task within the caller's scope  → NotFoundError (same as the reads)
    4. in_review needs an output file  → ValidationError (any prior state)
    5. role gate for the target        → AuthorizationError
    6. not already in target           → StaleStateError
    7. edge exists in the graph        → InvalidTransitionError
    8. notes / deliverable rules       → ValidationError
    9. compare-and-set                 → StaleStateError

Nothing about the task's current state is reported before steps 3 and 5
have passed.
"""

import logging
from datetime import UTC, datetime

from flask import current_app
from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from werkzeug.utils import secure_filename

from agencyops.core.exceptions import (
    AuthorizationError,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    StaleStateError,
    ValidationError,
)
from agencyops.models import db
from agencyops.models.audit import AuditLog, write_audit
from agencyops.models.auth import Role, User, UserRole
from agencyops.models.client import Client, ClientService, Product, Project
from agencyops.models.work import (
    ATTACHMENT_DIRECTIONS,
    REQUEST_APPROVED,
    REQUEST_PENDING,
    REQUEST_PRIORITIES,
    REQUEST_REJECTED,
    REQUEST_UNDER_REVIEW,
    TASK_ADJUSTMENTS_REQUESTED,
    TASK_BACKLOG,
    TASK_CANCELLED,
    TASK_CLIENT_APPROVED,
    TASK_CLIENT_REQUESTED_CHANGES,
    TASK_CLOSED_STATUSES,
    TASK_IN_PROGRESS,
    TASK_IN_REVIEW,
    TASK_PUBLISHED,
    TASK_RELEASED_TO_CLIENT,
    TASK_STATUSES,
    ClientRequest,
    Task,
    TaskAttachment,
    TaskComment,
    validate_request_transition,
    validate_task_transition,
)
from agencyops.services.blob_store import get_blob_store
from agencyops.services.notifier import notify
from agencyops.services.realtime import publish_status
from agencyops.services.roles import ActingContext, RoleClass, classify_roles
from agencyops.services.sla import add_business_days, annotate_task
from agencyops.services.view_projection import (
    client_board,
    project_task,
    project_tasks,
    staff_board,
)
from agencyops.utils.helpers import clean_text, parse_date_input, parse_positive_int

logger = logging.getLogger(__name__)

# Who may drive each task edge, keyed by target status
_COLLABORATOR_TARGETS = {TASK_IN_PROGRESS, TASK_IN_REVIEW}
_ADMIN_TARGETS = {TASK_RELEASED_TO_CLIENT, TASK_ADJUSTMENTS_REQUESTED, TASK_PUBLISHED, TASK_CANCELLED}
_CLIENT_TARGETS = {TASK_CLIENT_APPROVED, TASK_CLIENT_REQUESTED_CHANGES}

# Targets whose notes are mandatory, and the comment kind they are stored as
_NOTES_REQUIRED = {
    TASK_ADJUSTMENTS_REQUESTED: "adjustment_request",
    TASK_CLIENT_REQUESTED_CHANGES: "client_feedback",
    TASK_CANCELLED: "comment",
}


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ═════════════════════════════════════════════════════════════════════════════
# Shared helpers
# ═════════════════════════════════════════════════════════════════════════════


def _require_classified(ctx: ActingContext) -> None:
    if ctx is None or ctx.role is RoleClass.UNCLASSIFIED:
        raise AuthorizationError("caller has no recognised role")


def _require_admin(ctx: ActingContext) -> None:
    _require_classified(ctx)
    if not ctx.is_admin:
        raise AuthorizationError("admin only")


def _admin_emails() -> list[str]:
    rows = (
        db.session.query(User.email, Role.name)
        .join(UserRole, UserRole.user_id == User.id)
        .join(Role, Role.id == UserRole.role_id)
        .filter(User.status == "active")
        .all()
    )
    return sorted({email for email, label in rows if classify_roles([label]) is RoleClass.ADMIN})


def _user_email(user_id) -> str | None:
    if user_id is None:
        return None
    user = db.session.get(User, user_id)
    return user.email if user is not None else None


def _client_email(client_id) -> str | None:
    client = db.session.get(Client, client_id)
    return client.email if client is not None else None


def _resolve_collaborator(assignee_id) -> User:
    assignee_id = parse_positive_int(assignee_id, "assignee_id")
    user = db.session.get(User, assignee_id)
    if user is None or classify_roles(user.role_names) is not RoleClass.COLLABORATOR:
        raise ValidationError(
            "assignee_id must reference a collaborator",
            details={"assignee_id": assignee_id},
        )
    if user.status == "inactive":
        raise ValidationError("assignee is inactive", details={"assignee_id": assignee_id})
    return user


def _active_service(client_id: int, product_id: int) -> ClientService:
    service = ClientService.query.filter_by(client_id=client_id, product_id=product_id).first()
    if service is None or not service.is_active:
        raise ValidationError(
            "Client has no active contract for this product",
            details={"client_id": client_id, "product_id": product_id},
        )
    return service


def _resolve_project(project_id, client_id: int) -> int | None:
    if project_id in (None, ""):
        return None
    project_id = parse_positive_int(project_id, "project_id")
    project = db.session.get(Project, project_id)
    if project is None or project.client_id != client_id:
        raise ValidationError("project_id does not belong to this client",
                              details={"project_id": project_id})
    return project_id


def _next_protocol_number(today) -> str:
    prefix = f"REQ-{today:%Y%m%d}-"
    last = (
        db.session.query(func.max(ClientRequest.protocol_number))
        .filter(ClientRequest.protocol_number.like(f"{prefix}%"))
        .scalar()
    )
    seq = int(last.rsplit("-", 1)[1]) + 1 if last else 1
    return f"{prefix}{seq:04d}"


def _compare_and_set(model, entity: str, record_id: int, expected: str, new: str, **values) -> None:
    """Conditional status write; raises StaleStateError when the row moved on."""
    result = db.session.execute(
        update(model)
        .where(model.id == record_id, model.status == expected)
        .values(status=new, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        actual = db.session.query(model.status).filter(model.id == record_id).scalar()
        raise StaleStateError(entity, record_id, expected=expected, actual=actual)


# ═════════════════════════════════════════════════════════════════════════════
# Requests
# ═════════════════════════════════════════════════════════════════════════════


def _get_request(request_id) -> ClientRequest:
    req = db.session.get(ClientRequest, request_id)
    if req is None:
        raise NotFoundError("ClientRequest", request_id)
    return req


def submit_request(ctx: ActingContext, client_id: int, payload: dict) -> ClientRequest:
    """Client (or an admin acting as that client) files a new request."""
    _require_classified(ctx)
    if not ctx.acts_for_client(client_id):
        raise AuthorizationError("requests are submitted by the owning client")

    client = db.session.get(Client, client_id)
    if client is None:
        raise NotFoundError("Client", client_id)

    title = clean_text(payload.get("title"))
    description = clean_text(payload.get("description"))
    errors = {}
    if not title:
        errors["title"] = "required"
    elif len(title) > 255:
        errors["title"] = "max 255 characters"
    if not description:
        errors["description"] = "required"
    if errors:
        raise ValidationError("Title and description are required", details=errors)

    product_id = parse_positive_int(payload.get("product_id"), "product_id")
    product = db.session.get(Product, product_id)
    if product is None or not product.is_active:
        raise ValidationError("Unknown or inactive product", details={"product_id": product_id})

    quantity = parse_positive_int(payload.get("quantity"), "quantity", default=1)
    priority = clean_text(payload.get("priority") or "normal").lower()
    if priority not in REQUEST_PRIORITIES:
        raise ValidationError(
            f"priority must be one of {sorted(REQUEST_PRIORITIES)}",
            details={"priority": priority},
        )
    project_id = _resolve_project(payload.get("project_id"), client.id)

    try:
        req = ClientRequest(
            protocol_number=_next_protocol_number(_utcnow().date()),
            client_id=client.id,
            product_id=product.id,
            project_id=project_id,
            requested_by=ctx.subject_id,
            title=title,
            description=description,
            quantity=quantity,
            priority=priority,
            status=REQUEST_PENDING,
        )
        db.session.add(req)
        db.session.flush()
        write_audit(
            entity_type="client_request",
            entity_id=req.id,
            action="request.submit",
            actor_user_id=ctx.subject_id,
            diff={"status": {"old": None, "new": REQUEST_PENDING}},
        )
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        raise ConflictError("ClientRequest", "protocol_number") from exc
    except Exception:
        db.session.rollback()
        raise

    logger.info("Request %s submitted by subject=%s for client=%s",
                req.protocol_number, ctx.subject_id, client.id)
    for admin_email in _admin_emails():
        notify("request_submitted", admin_email, {
            "protocol_number": req.protocol_number,
            "title": req.title,
            "client_name": client.name,
            "priority": req.priority,
            "quantity": req.quantity,
        })
    publish_status("client_request", req.id, req.status)
    return req


def _check_request_edge(req: ClientRequest, target: str) -> None:
    if req.status == target:
        raise StaleStateError("ClientRequest", req.id, expected=target, actual=req.status)
    if not validate_request_transition(req.status, target):
        raise InvalidTransitionError("ClientRequest", req.status, target)


def _after_request_review(req: ClientRequest) -> None:
    notify("request_status", _client_email(req.client_id), {
        "protocol_number": req.protocol_number,
        "title": req.title,
        "status": req.status,
        "notes": req.review_notes or "",
    })
    publish_status("client_request", req.id, req.status)


def start_review(ctx: ActingContext, request_id: int) -> ClientRequest:
    """Admin marks a pending request as being analysed."""
    _require_admin(ctx)
    req = _get_request(request_id)
    _check_request_edge(req, REQUEST_UNDER_REVIEW)

    try:
        _compare_and_set(ClientRequest, "ClientRequest", req.id, REQUEST_PENDING, REQUEST_UNDER_REVIEW)
        write_audit(
            entity_type="client_request",
            entity_id=req.id,
            action="request.start_review",
            actor_user_id=ctx.subject_id,
            diff={"status": {"old": REQUEST_PENDING, "new": REQUEST_UNDER_REVIEW}},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    db.session.refresh(req)
    _after_request_review(req)
    return req


def approve_request(ctx: ActingContext, request_id: int, assignee_id, due_date, notes=None) -> Task:
    """Approve a request and create its task, atomically.

    The request flips to ``approved`` and exactly one ``backlog`` task is
    inserted in the same transaction, with price and SLA frozen from the
    client's contracted service. Either both commit or neither does.
    """
    _require_admin(ctx)
    req = _get_request(request_id)
    _check_request_edge(req, REQUEST_APPROVED)

    assignee = _resolve_collaborator(assignee_id)
    due = parse_date_input(due_date, "due_date")
    if due is None:
        raise ValidationError("due_date is required", details={"due_date": "required"})
    service = _active_service(req.client_id, req.product_id)
    notes = clean_text(notes) or None
    previous = req.status
    now = _utcnow()

    try:
        _compare_and_set(
            ClientRequest, "ClientRequest", req.id, previous, REQUEST_APPROVED,
            reviewed_by=ctx.subject_id, reviewed_at=now, review_notes=notes,
        )
        task = Task(
            request_id=req.id,
            project_id=req.project_id,
            client_id=req.client_id,
            product_id=req.product_id,
            assignee_id=assignee.id,
            created_by=ctx.subject_id,
            quantity=req.quantity,
            due_date=due,
            frozen_price=service.negotiated_price,
            frozen_sla_days=service.sla_days,
            status=TASK_BACKLOG,
            variant_description=req.description,
        )
        db.session.add(task)
        db.session.flush()
        # Reference files uploaded with the request follow it onto the task
        TaskAttachment.query.filter_by(request_id=req.id, task_id=None).update(
            {TaskAttachment.task_id: task.id}, synchronize_session=False,
        )
        write_audit(
            entity_type="client_request",
            entity_id=req.id,
            action="request.approve",
            actor_user_id=ctx.subject_id,
            diff={"status": {"old": previous, "new": REQUEST_APPROVED},
                  "notes": notes, "task_id": task.id},
        )
        write_audit(
            entity_type="task",
            entity_id=task.id,
            action="task.create",
            actor_user_id=ctx.subject_id,
            diff={"status": {"old": None, "new": TASK_BACKLOG}, "request_id": req.id,
                  "frozen_price": service.negotiated_price, "frozen_sla_days": service.sla_days},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    db.session.refresh(req)
    logger.info("Request %s approved → task %s (assignee=%s due=%s)",
                req.protocol_number, task.id, assignee.id, due)
    notify("task_assigned", assignee.email, {
        "task_id": task.id,
        "product_name": task.product.name if task.product else "",
        "due_date": due.strftime("%d/%m/%Y"),
    })
    _after_request_review(req)
    publish_status("task", task.id, task.status)
    return task


def reject_request(ctx: ActingContext, request_id: int, notes) -> ClientRequest:
    """Admin rejects a request; notes are mandatory and shown to the client."""
    _require_admin(ctx)
    req = _get_request(request_id)
    notes = clean_text(notes)
    if not notes:
        raise ValidationError("Review notes are required to reject a request",
                              details={"notes": "required"})
    _check_request_edge(req, REQUEST_REJECTED)
    previous = req.status

    try:
        _compare_and_set(
            ClientRequest, "ClientRequest", req.id, previous, REQUEST_REJECTED,
            reviewed_by=ctx.subject_id, reviewed_at=_utcnow(), review_notes=notes,
        )
        write_audit(
            entity_type="client_request",
            entity_id=req.id,
            action="request.reject",
            actor_user_id=ctx.subject_id,
            diff={"status": {"old": previous, "new": REQUEST_REJECTED}, "notes": notes},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    db.session.refresh(req)
    logger.info("Request %s rejected by subject=%s", req.protocol_number, ctx.subject_id)
    _after_request_review(req)
    return req


def _visible_requests(ctx: ActingContext):
    _require_classified(ctx)
    query = ClientRequest.query
    if ctx.is_admin:
        if ctx.viewing_client_id is not None:
            query = query.filter(ClientRequest.client_id == ctx.viewing_client_id)
        return query
    if ctx.is_client and ctx.viewing_client_id is not None:
        return query.filter(ClientRequest.client_id == ctx.viewing_client_id)
    raise AuthorizationError("requests are visible to admins and clients")


def request_query_for(ctx: ActingContext, status: str | None = None):
    """Scoped, newest-first query; the caller paginates."""
    query = _visible_requests(ctx)
    if status:
        query = query.filter(ClientRequest.status == status)
    return query.order_by(ClientRequest.created_at.desc(), ClientRequest.id.desc())


def list_requests_for(ctx: ActingContext, status: str | None = None) -> list[ClientRequest]:
    return request_query_for(ctx, status).all()


def get_request_for(ctx: ActingContext, request_id: int) -> ClientRequest:
    req = _visible_requests(ctx).filter(ClientRequest.id == request_id).first()
    if req is None:
        raise NotFoundError("ClientRequest", request_id)
    return req


# ═════════════════════════════════════════════════════════════════════════════
# Tasks
# ═════════════════════════════════════════════════════════════════════════════


def create_task(ctx: ActingContext, payload: dict) -> Task:
    """Admin creates a task with no originating request.

    Economics are frozen from the client's contracted service exactly as on
    approval. Without an explicit due date the task is due ``sla_days``
    business days from today.
    """
    _require_admin(ctx)
    client_id = parse_positive_int(payload.get("client_id"), "client_id")
    client = db.session.get(Client, client_id)
    if client is None:
        raise NotFoundError("Client", client_id)
    product_id = parse_positive_int(payload.get("product_id"), "product_id")
    service = _active_service(client.id, product_id)
    quantity = parse_positive_int(payload.get("quantity"), "quantity", default=1)
    project_id = _resolve_project(payload.get("project_id"), client.id)

    assignee = None
    if payload.get("assignee_id") not in (None, ""):
        assignee = _resolve_collaborator(payload.get("assignee_id"))
    due = parse_date_input(payload.get("due_date"), "due_date")
    if due is None:
        due = add_business_days(_utcnow().date(), service.sla_days)

    try:
        task = Task(
            client_id=client.id,
            product_id=product_id,
            project_id=project_id,
            assignee_id=assignee.id if assignee else None,
            created_by=ctx.subject_id,
            quantity=quantity,
            due_date=due,
            frozen_price=service.negotiated_price,
            frozen_sla_days=service.sla_days,
            status=TASK_BACKLOG,
            variant_description=clean_text(payload.get("variant_description")) or None,
        )
        db.session.add(task)
        db.session.flush()
        write_audit(
            entity_type="task",
            entity_id=task.id,
            action="task.create",
            actor_user_id=ctx.subject_id,
            diff={"status": {"old": None, "new": TASK_BACKLOG}, "request_id": None,
                  "frozen_price": service.negotiated_price, "frozen_sla_days": service.sla_days},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("Task %s created directly by subject=%s for client=%s", task.id, ctx.subject_id, client.id)
    if assignee is not None:
        notify("task_assigned", assignee.email, {
            "task_id": task.id,
            "product_name": task.product.name if task.product else "",
            "due_date": due.strftime("%d/%m/%Y"),
        })
    publish_status("task", task.id, task.status)
    return task


def assign_task(ctx: ActingContext, task_id: int, assignee_id) -> Task:
    """Admin sets or replaces the collaborator responsible for an open task.

    The previous assignee loses access to the task. Re-assigning to the
    current assignee changes nothing and sends nothing.
    """
    _require_admin(ctx)
    task = _get_task(task_id)
    if task.status in TASK_CLOSED_STATUSES:
        raise ValidationError(
            "Closed tasks cannot be reassigned",
            details={"status": task.status},
        )
    assignee = _resolve_collaborator(assignee_id)
    previous = task.assignee_id
    if previous == assignee.id:
        return task

    try:
        task.assignee_id = assignee.id
        write_audit(
            entity_type="task",
            entity_id=task.id,
            action="task.assign",
            actor_user_id=ctx.subject_id,
            diff={"assignee_id": {"old": previous, "new": assignee.id}},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("Task %s assigned: %s → %s by subject=%s", task.id, previous, assignee.id, ctx.subject_id)
    notify("task_assigned", assignee.email, {
        "task_id": task.id,
        "product_name": task.product.name if task.product else "",
        "due_date": task.due_date.strftime("%d/%m/%Y"),
    })
    publish_status("task", task.id, task.status, assignee_id=assignee.id)
    return task


def _get_task(task_id) -> Task:
    task = db.session.get(Task, task_id)
    if task is None:
        raise NotFoundError("Task", task_id)
    return task


def _check_task_gate(ctx: ActingContext, task: Task, target: str) -> None:
    if target in _COLLABORATOR_TARGETS:
        allowed = ctx.is_collaborator and ctx.subject_id is not None and ctx.subject_id == task.assignee_id
    elif target in _ADMIN_TARGETS:
        allowed = ctx.is_admin
    elif target in _CLIENT_TARGETS:
        allowed = ctx.acts_for_client(task.client_id)
    else:
        # No edge leads here; the graph check rejects it
        return
    if not allowed:
        logger.warning("Task %s transition to %s denied for subject=%s role=%s",
                       task.id, target, ctx.subject_id, ctx.role.value)
        raise AuthorizationError(f"role gate failed for {target}")


def _after_task_transition(task: Task, target: str, notes: str | None) -> None:
    payload = {
        "task_id": task.id,
        "status": target,
        "notes": notes or "",
        "product_name": task.product.name if task.product else "",
    }
    if target in (TASK_ADJUSTMENTS_REQUESTED, TASK_CLIENT_REQUESTED_CHANGES):
        notify("task_feedback", _user_email(task.assignee_id), payload)
    elif target == TASK_RELEASED_TO_CLIENT:
        notify("task_released", _client_email(task.client_id), payload)
    publish_status("task", task.id, target)


def advance_task(ctx: ActingContext, task_id: int, target_status: str, notes=None) -> Task:
    """Move a task along its graph, role-gated and compare-and-set."""
    _require_classified(ctx)
    target = clean_text(target_status).lower()
    if target not in TASK_STATUSES:
        raise ValidationError(
            f"Unknown task status: {target_status!r}",
            details={"target_status": target_status},
        )

    task = _get_visible_task(ctx, task_id)
    current = task.status
    outputs = task.output_attachment_count()

    if target == TASK_IN_REVIEW and outputs == 0:
        raise ValidationError(
            "Upload at least one deliverable before submitting for review",
            details={"attachments": "output required"},
        )

    _check_task_gate(ctx, task, target)

    if current == target:
        raise StaleStateError("Task", task.id, expected=current, actual=current)
    if not validate_task_transition(current, target):
        raise InvalidTransitionError("Task", current, target)

    notes = clean_text(notes) or None
    if target in _NOTES_REQUIRED and not notes:
        raise ValidationError("Notes are required for this transition", details={"notes": "required"})
    if target == TASK_RELEASED_TO_CLIENT and outputs == 0:
        raise ValidationError(
            "A task cannot be released without a deliverable",
            details={"attachments": "output required"},
        )

    try:
        _compare_and_set(Task, "Task", task.id, current, target)
        if target in _NOTES_REQUIRED:
            db.session.add(TaskComment(
                task_id=task.id,
                author_id=ctx.subject_id,
                kind=_NOTES_REQUIRED[target],
                body=notes,
            ))
        write_audit(
            entity_type="task",
            entity_id=task.id,
            action="task.transition",
            actor_user_id=ctx.subject_id,
            diff={"status": {"old": current, "new": target}, "notes": notes,
                  "role": ctx.role.value},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    db.session.refresh(task)
    logger.info("Task %s: %s → %s by subject=%s (%s)",
                task.id, current, target, ctx.subject_id, ctx.role.value)
    _after_task_transition(task, target, notes)
    return task


# ═════════════════════════════════════════════════════════════════════════════
# Attachments & comments
# ═════════════════════════════════════════════════════════════════════════════


def _store_blob(data: bytes, content_type: str, filename: str) -> tuple[dict, str, str]:
    if not data:
        raise ValidationError("File is empty", details={"file": "empty"})
    limit = current_app.config.get("MAX_ATTACHMENT_BYTES")
    if limit and len(data) > limit:
        raise ValidationError(f"File exceeds {limit} bytes", details={"file": "too large"})
    content_type = clean_text(content_type) or "application/octet-stream"
    safe_name = secure_filename(filename or "") or "attachment"
    stored = get_blob_store().store(data, content_type)
    return stored, content_type, safe_name


def add_attachment(ctx: ActingContext, task_id: int, data: bytes, content_type: str,
                   filename: str, direction: str) -> TaskAttachment:
    """Upload a file to a task.

    Output files (deliverables) come from the assigned collaborator or an
    admin; input files (references) from the owning client or an admin.
    """
    task = _get_visible_task(ctx, task_id)
    direction = clean_text(direction).lower()
    if direction not in ATTACHMENT_DIRECTIONS:
        raise ValidationError(
            f"direction must be one of {sorted(ATTACHMENT_DIRECTIONS)}",
            details={"direction": direction},
        )
    if direction == "output":
        allowed = ctx.is_admin or (ctx.is_collaborator and ctx.subject_id == task.assignee_id)
    else:
        allowed = ctx.is_admin or ctx.acts_for_client(task.client_id)
    if not allowed:
        raise AuthorizationError(f"cannot upload {direction} files")

    stored, content_type, safe_name = _store_blob(data, content_type, filename)
    try:
        attachment = TaskAttachment(
            task_id=task.id,
            request_id=task.request_id,
            direction=direction,
            file_name=safe_name,
            content_type=content_type,
            size_bytes=stored["size"],
            url=stored["url"],
            uploaded_by=ctx.subject_id,
        )
        db.session.add(attachment)
        db.session.flush()
        write_audit(
            entity_type="task",
            entity_id=task.id,
            action="task.attach",
            actor_user_id=ctx.subject_id,
            diff={"attachment_id": attachment.id, "direction": direction, "file_name": safe_name},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    publish_status("task", task.id, task.status, attachment_id=attachment.id)
    return attachment


def add_request_attachment(ctx: ActingContext, request_id: int, data: bytes,
                           content_type: str, filename: str) -> TaskAttachment:
    """Reference file on a request; it moves onto the task at approval."""
    req = get_request_for(ctx, request_id)
    if req.status in (REQUEST_APPROVED, REQUEST_REJECTED):
        raise ValidationError("Request is already reviewed", details={"status": req.status})

    stored, content_type, safe_name = _store_blob(data, content_type, filename)
    try:
        attachment = TaskAttachment(
            request_id=req.id,
            direction="input",
            file_name=safe_name,
            content_type=content_type,
            size_bytes=stored["size"],
            url=stored["url"],
            uploaded_by=ctx.subject_id,
        )
        db.session.add(attachment)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return attachment


def add_comment(ctx: ActingContext, task_id: int, body) -> TaskComment:
    task = _get_visible_task(ctx, task_id)
    body = clean_text(body)
    if not body:
        raise ValidationError("Comment body is required", details={"body": "required"})

    try:
        comment = TaskComment(task_id=task.id, author_id=ctx.subject_id, kind="comment", body=body)
        db.session.add(comment)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    payload = {"task_id": task.id, "author": _user_email(ctx.subject_id) or "", "body": body}
    if not (ctx.is_collaborator and ctx.subject_id == task.assignee_id):
        notify("task_comment", _user_email(task.assignee_id), payload)
    if not ctx.is_client:
        notify("task_comment", _client_email(task.client_id), payload)
    return comment


# ═════════════════════════════════════════════════════════════════════════════
# Scoped queries
# ═════════════════════════════════════════════════════════════════════════════


def _visible_tasks(ctx: ActingContext):
    """Tasks the caller may see: admin all, collaborator assigned, client own."""
    _require_classified(ctx)
    query = Task.query
    if ctx.is_admin:
        if ctx.viewing_client_id is not None:
            query = query.filter(Task.client_id == ctx.viewing_client_id)
        return query
    if ctx.is_collaborator:
        return query.filter(Task.assignee_id == ctx.subject_id)
    if ctx.viewing_client_id is None:
        return query.filter(db.false())
    return query.filter(Task.client_id == ctx.viewing_client_id)


def _get_visible_task(ctx: ActingContext, task_id) -> Task:
    task = _visible_tasks(ctx).filter(Task.id == task_id).first()
    if task is None:
        raise NotFoundError("Task", task_id)
    return task


def list_tasks_for(ctx: ActingContext, status: str | None = None, now=None) -> list[dict]:
    """Caller's tasks, annotated with urgency and projected for their role."""
    now = now or _utcnow()
    query = _visible_tasks(ctx)
    if status:
        query = query.filter(Task.status == status)
    tasks = query.order_by(Task.due_date.asc(), Task.id.asc()).all()
    return project_tasks([annotate_task(t, now) for t in tasks], ctx.role)


def get_task_for(ctx: ActingContext, task_id: int, now=None) -> dict:
    task = _get_visible_task(ctx, task_id)
    projected = project_task(annotate_task(task, now or _utcnow()), ctx.role)
    if projected is None:
        raise NotFoundError("Task", task_id)
    projected["attachments"] = [a.to_dict() for a in task.attachments.all()]
    projected["comments"] = [c.to_dict() for c in task.comments.all()]
    return projected


def get_task_history(ctx: ActingContext, task_id: int) -> list[dict]:
    """Audit trail of a task. Staff only; clients see the projected view."""
    task = _get_visible_task(ctx, task_id)
    if ctx.is_client:
        raise AuthorizationError("history is staff only")
    rows = (
        AuditLog.query
        .filter_by(entity_type="task", entity_id=str(task.id))
        .order_by(AuditLog.id.asc())
        .all()
    )
    return [r.to_dict() for r in rows]


def task_board_for(ctx: ActingContext, now=None) -> dict[str, list[dict]]:
    """Kanban columns: three buckets for clients, literal statuses for staff."""
    now = now or _utcnow()
    tasks = _visible_tasks(ctx).order_by(Task.due_date.asc(), Task.id.asc()).all()
    annotated = [annotate_task(t, now) for t in tasks]
    if ctx.is_client:
        return client_board(annotated)
    return staff_board(annotated, ctx.role)
