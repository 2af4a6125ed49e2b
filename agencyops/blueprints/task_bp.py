"""
Agency Operations Platform
Task blueprint — production workflow, role-gated and projected per viewer.

Endpoints:
    POST /api/v1/tasks                          create without a request (admin)
    GET  /api/v1/tasks                          list visible tasks, with urgency
    GET  /api/v1/tasks/board                    kanban columns for the caller
    GET  /api/v1/tasks/<id>                     detail + attachments + comments
    POST /api/v1/tasks/<id>/advance             {target_status, notes?}
    POST /api/v1/tasks/<id>/assign              {assignee_id} (admin)
    POST /api/v1/tasks/<id>/attachments         multipart ``file`` + ``direction``
    POST /api/v1/tasks/<id>/comments            {body}
    GET  /api/v1/tasks/<id>/history             audit trail (staff)

Clients never receive a literal internal status from any of these.
"""

import logging
from datetime import UTC, datetime

from flask import Blueprint, jsonify, request

from agencyops.blueprints import acting, read_upload
from agencyops.core.exceptions import ValidationError
from agencyops.middleware.identity import require_identity
from agencyops.services import work_lifecycle
from agencyops.services.sla import annotate_task
from agencyops.services.view_projection import project_task

logger = logging.getLogger(__name__)

task_bp = Blueprint("tasks", __name__, url_prefix="/api/v1")


def _projected(task):
    """Serialize a freshly written task for the caller's role."""
    ctx = acting()
    return project_task(annotate_task(task, datetime.now(UTC)), ctx.role)


@task_bp.route("/tasks", methods=["POST"])
@require_identity
def create_task():
    """Body: {client_id, product_id, quantity?, due_date?, assignee_id?, project_id?, variant_description?}"""
    data = request.get_json(silent=True) or {}
    task = work_lifecycle.create_task(acting(), data)
    return jsonify(_projected(task)), 201


@task_bp.route("/tasks", methods=["GET"])
@require_identity
def list_tasks():
    tasks = work_lifecycle.list_tasks_for(acting(), status=request.args.get("status"))
    return jsonify({"items": tasks, "total": len(tasks)})


@task_bp.route("/tasks/board", methods=["GET"])
@require_identity
def task_board():
    return jsonify(work_lifecycle.task_board_for(acting()))


@task_bp.route("/tasks/<int:task_id>", methods=["GET"])
@require_identity
def get_task(task_id):
    return jsonify(work_lifecycle.get_task_for(acting(), task_id))


@task_bp.route("/tasks/<int:task_id>/advance", methods=["POST"])
@require_identity
def advance_task(task_id):
    data = request.get_json(silent=True) or {}
    target = data.get("target_status")
    if not target:
        raise ValidationError("target_status is required", details={"target_status": "required"})
    task = work_lifecycle.advance_task(acting(), task_id, target, notes=data.get("notes"))
    projected = _projected(task)
    if projected is None:
        # Cancelled tasks leave the client's view entirely
        return jsonify({"id": task.id}), 200
    return jsonify(projected)


@task_bp.route("/tasks/<int:task_id>/assign", methods=["POST"])
@require_identity
def assign_task(task_id):
    """Body: {assignee_id}; admin only."""
    data = request.get_json(silent=True) or {}
    task = work_lifecycle.assign_task(acting(), task_id, data.get("assignee_id"))
    return jsonify(_projected(task))


@task_bp.route("/tasks/<int:task_id>/attachments", methods=["POST"])
@require_identity
def upload_task_attachment(task_id):
    upload = read_upload()
    if upload is None:
        raise ValidationError("file is required", details={"file": "required"})
    data, content_type, filename = upload
    attachment = work_lifecycle.add_attachment(
        acting(), task_id, data, content_type, filename,
        direction=request.form.get("direction", "output"),
    )
    return jsonify(attachment.to_dict()), 201


@task_bp.route("/tasks/<int:task_id>/comments", methods=["POST"])
@require_identity
def add_comment(task_id):
    data = request.get_json(silent=True) or {}
    comment = work_lifecycle.add_comment(acting(), task_id, data.get("body"))
    return jsonify(comment.to_dict()), 201


@task_bp.route("/tasks/<int:task_id>/history", methods=["GET"])
@require_identity
def task_history(task_id):
    return jsonify({"items": work_lifecycle.get_task_history(acting(), task_id)})
