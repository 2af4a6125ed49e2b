"""
Agency Operations Platform
Onboarding blueprint — client intake questionnaire with encrypted fields.

Endpoints:
    POST /api/v1/onboarding                                     open for a client
    GET  /api/v1/onboarding/<id>/responses                      list (sensitive masked)
    PUT  /api/v1/onboarding/<id>/responses/<field_key>          upsert one answer
    POST /api/v1/onboarding/<id>/responses/<field_key>/decrypt  reveal (admin, audited)
"""

import logging

from flask import Blueprint, jsonify, request

from agencyops.blueprints import acting
from agencyops.core.exceptions import ValidationError
from agencyops.middleware.identity import require_identity
from agencyops.services import vault_service
from agencyops.utils.helpers import parse_positive_int

logger = logging.getLogger(__name__)

onboarding_bp = Blueprint("onboarding", __name__, url_prefix="/api/v1")


@onboarding_bp.route("/onboarding", methods=["POST"])
@require_identity
def open_instance():
    """Body: {client_id?} — defaults to the caller's own client."""
    ctx = acting()
    data = request.get_json(silent=True) or {}
    client_id = data.get("client_id")
    if client_id in (None, ""):
        client_id = ctx.viewing_client_id
    if client_id is None:
        raise ValidationError("client_id is required", details={"client_id": "required"})
    instance = vault_service.open_instance(ctx, parse_positive_int(client_id, "client_id"))
    return jsonify(instance.to_dict()), 201


@onboarding_bp.route("/onboarding/<int:instance_id>/responses", methods=["GET"])
@require_identity
def list_responses(instance_id):
    return jsonify({"items": vault_service.list_responses(acting(), instance_id)})


@onboarding_bp.route("/onboarding/<int:instance_id>/responses/<field_key>", methods=["PUT"])
@require_identity
def store_response(instance_id, field_key):
    """Body: {value, section?, is_sensitive?}"""
    data = request.get_json(silent=True) or {}
    response = vault_service.store_response(
        acting(), instance_id, field_key,
        section=data.get("section"),
        value=data.get("value"),
        is_sensitive=bool(data.get("is_sensitive", False)),
    )
    return jsonify(response.to_dict())


@onboarding_bp.route("/onboarding/<int:instance_id>/responses/<field_key>/decrypt", methods=["POST"])
@require_identity
def decrypt_response(instance_id, field_key):
    result = vault_service.decrypt_sensitive_field(acting(), instance_id, field_key)
    response = jsonify(result)
    # Plaintext must not be cached by proxies or the browser
    response.headers["Cache-Control"] = "no-store"
    return response
