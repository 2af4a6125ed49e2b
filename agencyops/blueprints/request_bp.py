"""
Agency Operations Platform
Client request blueprint — intake and admin review.

Endpoints:
    POST /api/v1/requests                       submit (client, or admin acting as one)
    GET  /api/v1/requests                       list (admin all / client own)
    GET  /api/v1/requests/<id>                  detail
    POST /api/v1/requests/<id>/review           pending → under_review (admin)
    POST /api/v1/requests/<id>/approve          → approved + task (admin)
    POST /api/v1/requests/<id>/reject           → rejected, notes required (admin)
    POST /api/v1/requests/<id>/attachments      reference file (multipart ``file``)

Domain exceptions propagate to the handlers registered in ``create_app``.
"""

import logging

from flask import Blueprint, jsonify, request

from agencyops.blueprints import acting, paginate_query, read_upload
from agencyops.core.exceptions import ValidationError
from agencyops.middleware.identity import require_identity
from agencyops.services import work_lifecycle
from agencyops.utils.helpers import parse_positive_int

logger = logging.getLogger(__name__)

request_bp = Blueprint("requests", __name__, url_prefix="/api/v1")


@request_bp.route("/requests", methods=["POST"])
@require_identity
def submit_request():
    """Body: {title, description, product_id, quantity?, priority?, project_id?, client_id?}

    ``client_id`` defaults to the caller's own client.
    """
    ctx = acting()
    data = request.get_json(silent=True) or {}
    client_id = data.get("client_id")
    if client_id in (None, ""):
        client_id = ctx.viewing_client_id
    if client_id is None:
        raise ValidationError("client_id is required", details={"client_id": "required"})
    req = work_lifecycle.submit_request(ctx, parse_positive_int(client_id, "client_id"), data)
    return jsonify(req.to_dict()), 201


@request_bp.route("/requests", methods=["GET"])
@require_identity
def list_requests():
    query = work_lifecycle.request_query_for(acting(), status=request.args.get("status"))
    items, total = paginate_query(query)
    return jsonify({"items": [r.to_dict() for r in items], "total": total})


@request_bp.route("/requests/<int:request_id>", methods=["GET"])
@require_identity
def get_request(request_id):
    req = work_lifecycle.get_request_for(acting(), request_id)
    data = req.to_dict()
    data["task_id"] = req.task.id if req.task else None
    return jsonify(data)


@request_bp.route("/requests/<int:request_id>/review", methods=["POST"])
@require_identity
def start_review(request_id):
    req = work_lifecycle.start_review(acting(), request_id)
    return jsonify(req.to_dict())


@request_bp.route("/requests/<int:request_id>/approve", methods=["POST"])
@require_identity
def approve_request(request_id):
    """Body: {assignee_id, due_date (YYYY-MM-DD), notes?} → 201 {request, task}"""
    data = request.get_json(silent=True) or {}
    task = work_lifecycle.approve_request(
        acting(), request_id,
        assignee_id=data.get("assignee_id"),
        due_date=data.get("due_date"),
        notes=data.get("notes"),
    )
    return jsonify({"request": task.request.to_dict(), "task": task.to_dict()}), 201


@request_bp.route("/requests/<int:request_id>/reject", methods=["POST"])
@require_identity
def reject_request(request_id):
    """Body: {notes}"""
    data = request.get_json(silent=True) or {}
    req = work_lifecycle.reject_request(acting(), request_id, data.get("notes"))
    return jsonify(req.to_dict())


@request_bp.route("/requests/<int:request_id>/attachments", methods=["POST"])
@require_identity
def upload_request_attachment(request_id):
    upload = read_upload()
    if upload is None:
        raise ValidationError("file is required", details={"file": "required"})
    data, content_type, filename = upload
    attachment = work_lifecycle.add_request_attachment(
        acting(), request_id, data, content_type, filename
    )
    return jsonify(attachment.to_dict()), 201
