"""
Agency Operations Platform
Activation blueprint — first-access links for clients and collaborators.

Endpoints:
    POST /api/v1/activation-tokens                      issue / re-issue (admin)
    GET  /api/v1/activation-tokens/<token>              who the link is for (public)
    POST /api/v1/activation-tokens/<token>/consume      set password, activate (public)

The two public endpoints are rate limited per IP (ACTIVATION_RATE_LIMIT).
"""

import logging

from flask import Blueprint, jsonify, request

from agencyops.blueprints import acting
from agencyops.middleware.identity import require_identity
from agencyops.services import activation_service
from agencyops.utils.helpers import parse_positive_int

logger = logging.getLogger(__name__)

activation_bp = Blueprint("activation", __name__, url_prefix="/api/v1")


@activation_bp.route("/activation-tokens", methods=["POST"])
@require_identity
def issue_token():
    """Body: {subject_id, subject_type: "client" | "collaborator"}"""
    data = request.get_json(silent=True) or {}
    result = activation_service.issue_activation_token(
        acting(),
        parse_positive_int(data.get("subject_id"), "subject_id"),
        (data.get("subject_type") or "").strip().lower(),
    )
    return jsonify(result), 201


@activation_bp.route("/activation-tokens/<token>", methods=["GET"])
def describe_token(token):
    return jsonify(activation_service.describe(token))


@activation_bp.route("/activation-tokens/<token>/consume", methods=["POST"])
def consume_token(token):
    """Body: {password} → the activated user with roles."""
    data = request.get_json(silent=True) or {}
    user = activation_service.consume_activation_token(token, data.get("password") or "")
    return jsonify({"user": user}), 200
