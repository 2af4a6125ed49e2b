"""
Agency Operations Platform
Events blueprint — live status of one task or request.

Endpoints:
    GET /api/v1/events/<record_type>/<id>          SSE stream (text/event-stream)
    GET /api/v1/events/<record_type>/<id>/recent   recent events as JSON (poll transport)

record_type is ``task`` or ``client_request``. The caller must be able to
open the record; task statuses are relabelled for clients exactly as in
the task endpoints, and a task that leaves the client's view is announced
with a ``removed`` event carrying no status.
"""

import json
import logging
import queue

from flask import Blueprint, Response, jsonify, stream_with_context

from agencyops.blueprints import acting
from agencyops.core.exceptions import NotFoundError
from agencyops.middleware.identity import require_identity
from agencyops.services import work_lifecycle
from agencyops.services.realtime import Event, get_event_bus
from agencyops.services.roles import RoleClass
from agencyops.services.view_projection import project_status

logger = logging.getLogger(__name__)

events_bp = Blueprint("events", __name__, url_prefix="/api/v1/events")

RECORD_TYPES = ("task", "client_request")
HEARTBEAT_SECONDS = 15


def _current_status(ctx, record_type, record_id) -> str:
    """Scope check and snapshot in one read; raises NotFound outside scope."""
    if record_type == "task":
        return work_lifecycle.get_task_for(ctx, record_id)["status"]
    if record_type == "client_request":
        return work_lifecycle.get_request_for(ctx, record_id).status
    raise NotFoundError("EventChannel", record_type)


def _for_viewer(event: Event, role: RoleClass) -> Event:
    """Relabel a task event for a client viewer."""
    if event.record_type != "task" or role is not RoleClass.CLIENT:
        return event
    data = dict(event.data)
    view = project_status(data.get("status"), role)
    if view is None:
        return Event(event.id, "removed", event.record_type, event.record_id, {}, event.timestamp)
    data["status"] = view.label
    return Event(event.id, event.event_type, event.record_type, event.record_id, data, event.timestamp)


@events_bp.route("/<record_type>/<int:record_id>", methods=["GET"])
@require_identity
def stream(record_type, record_id):
    ctx = acting()
    status = _current_status(ctx, record_type, record_id)
    bus = get_event_bus()
    q = bus.subscribe(record_type, record_id)
    logger.debug("SSE subscribe %s/%s subject=%s", record_type, record_id, ctx.subject_id)

    def generate():
        try:
            yield f"event: snapshot\ndata: {json.dumps({'status': status})}\n\n"
            while True:
                try:
                    event = q.get(timeout=HEARTBEAT_SECONDS)
                except queue.Empty:
                    yield ": keep-alive\n\n"
                    continue
                yield _for_viewer(event, ctx.role).to_sse()
        finally:
            bus.unsubscribe(record_type, record_id, q)

    return Response(
        stream_with_context(generate()),
        mimetype="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )


@events_bp.route("/<record_type>/<int:record_id>/recent", methods=["GET"])
@require_identity
def recent(record_type, record_id):
    ctx = acting()
    status = _current_status(ctx, record_type, record_id)
    events = [
        _for_viewer(e, ctx.role).to_dict()
        for e in get_event_bus().history(record_type, record_id)
    ]
    return jsonify({"status": status, "events": events})
