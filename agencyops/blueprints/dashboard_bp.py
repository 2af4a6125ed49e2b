"""
Dashboard blueprint.

Endpoints:
    GET  /api/v1/dashboard/stats            urgency and bucket counts for the caller
    POST /api/v1/dashboard/overdue-digest   send the overdue digest now (admin)
"""

from datetime import UTC, datetime

from flask import Blueprint, jsonify

from agencyops.blueprints import acting
from agencyops.core.exceptions import AuthorizationError
from agencyops.middleware.identity import require_identity
from agencyops.services.dashboard_service import dashboard_stats, send_overdue_digest

dashboard_bp = Blueprint("dashboard", __name__, url_prefix="/api/v1/dashboard")


@dashboard_bp.route("/stats", methods=["GET"])
@require_identity
def stats():
    return jsonify(dashboard_stats(acting(), datetime.now(UTC)))


@dashboard_bp.route("/overdue-digest", methods=["POST"])
@require_identity
def overdue_digest():
    if not acting().is_admin:
        raise AuthorizationError("digest is triggered by admins")
    sent = send_overdue_digest(datetime.now(UTC))
    return jsonify({"assignees": len(sent), "tasks": sum(sent.values())})
