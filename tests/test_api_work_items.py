"""
HTTP contract tests — status codes, error shapes and role projection
through the blueprints.
"""

import io
from datetime import UTC, datetime, timedelta

import jwt as pyjwt
import pytest

from tests.conftest import bearer, make_task


def _submit(client, headers, world, **overrides):
    body = {
        "title": "Launch teaser",
        "description": "15s teaser",
        "product_id": world.product.id,
    }
    body.update(overrides)
    return client.post("/api/v1/requests", json=body, headers=headers["client"])


class TestIdentity:
    def test_health_needs_no_token(self, client):
        res = client.get("/api/v1/health")
        assert res.status_code == 200
        assert res.get_json()["status"] == "ok"

    def test_missing_token_is_401(self, client):
        res = client.get("/api/v1/tasks")
        assert res.status_code == 401
        assert res.get_json()["code"] == "ERR_UNAUTHENTICATED"

    def test_bad_signature_is_401(self, client, world):
        token = pyjwt.encode({"sub": str(world.admin.id)}, "wrong-secret-with-enough-bytes-123", algorithm="HS256")
        res = client.get("/api/v1/tasks", headers={"Authorization": f"Bearer {token}"})
        assert res.status_code == 401

    def test_expired_token_is_401(self, app, client, world):
        headers = bearer(app, world.admin, exp=datetime.now(UTC) - timedelta(minutes=1))
        assert client.get("/api/v1/tasks", headers=headers).status_code == 401

    def test_roles_claim_wins_over_db_labels(self, app, client, world):
        headers = bearer(app, world.admin, roles=["Intern"])
        res = client.get("/api/v1/tasks", headers=headers)
        assert res.status_code == 403
        assert res.get_json()["error"] == "Not permitted"


class TestRequestEndpoints:
    def test_submit_and_read(self, client, headers, world):
        res = _submit(client, headers, world)
        assert res.status_code == 201
        body = res.get_json()
        assert body["status"] == "pending"

        res = client.get(f"/api/v1/requests/{body['id']}", headers=headers["client"])
        assert res.status_code == 200
        assert res.get_json()["task_id"] is None

    def test_validation_is_422_with_details(self, client, headers, world):
        res = _submit(client, headers, world, title="")
        assert res.status_code == 422
        assert res.get_json()["details"]["title"] == "required"

    def test_foreign_request_is_404(self, client, headers, world):
        req_id = _submit(client, headers, world).get_json()["id"]
        res = client.get(f"/api/v1/requests/{req_id}", headers=headers["other_client"])
        assert res.status_code == 404

    def test_approve_returns_task(self, client, headers, world):
        req_id = _submit(client, headers, world).get_json()["id"]
        res = client.post(
            f"/api/v1/requests/{req_id}/approve",
            json={"assignee_id": world.editor.id, "due_date": "2026-03-20"},
            headers=headers["admin"],
        )
        assert res.status_code == 201
        body = res.get_json()
        assert body["request"]["status"] == "approved"
        assert body["task"]["status"] == "backlog"

    def test_double_approve_is_409(self, client, headers, world):
        req_id = _submit(client, headers, world).get_json()["id"]
        payload = {"assignee_id": world.editor.id, "due_date": "2026-03-20"}
        client.post(f"/api/v1/requests/{req_id}/approve", json=payload, headers=headers["admin"])
        res = client.post(f"/api/v1/requests/{req_id}/approve", json=payload, headers=headers["admin"])
        assert res.status_code == 409
        assert res.get_json()["details"]["current_status"] == "approved"

    def test_client_cannot_approve(self, client, headers, world):
        req_id = _submit(client, headers, world).get_json()["id"]
        res = client.post(f"/api/v1/requests/{req_id}/approve", json={}, headers=headers["client"])
        assert res.status_code == 403

    def test_reject_without_notes_is_422(self, client, headers, world):
        req_id = _submit(client, headers, world).get_json()["id"]
        res = client.post(f"/api/v1/requests/{req_id}/reject", json={}, headers=headers["admin"])
        assert res.status_code == 422

    def test_list_is_paginated(self, client, headers, world):
        for _ in range(3):
            _submit(client, headers, world)
        res = client.get("/api/v1/requests?limit=2", headers=headers["admin"])
        body = res.get_json()
        assert body["total"] == 3
        assert len(body["items"]) == 2


class TestTaskEndpoints:
    def test_client_listing_is_projected(self, client, headers, world):
        make_task(world, "adjustments_requested", outputs=1)
        make_task(world, "cancelled")
        res = client.get("/api/v1/tasks", headers=headers["client"])
        items = res.get_json()["items"]
        assert [t["status"] for t in items] == ["Review"]

    def test_admin_listing_is_literal(self, client, headers, world):
        make_task(world, "adjustments_requested", outputs=1)
        items = client.get("/api/v1/tasks", headers=headers["admin"]).get_json()["items"]
        assert items[0]["status"] == "adjustments_requested"

    def test_admin_viewing_client_filters_listing(self, app, client, world):
        make_task(world)
        headers = bearer(app, world.admin, viewing_client_id=world.other_client.id)
        assert client.get("/api/v1/tasks", headers=headers).get_json()["items"] == []

    def test_board(self, client, headers, world):
        make_task(world, "in_review", outputs=1)
        board = client.get("/api/v1/tasks/board", headers=headers["client"]).get_json()
        assert list(board) == ["In Production", "Review", "Approved"]
        assert len(board["Review"]) == 1

    def test_advance_invalid_edge_is_422(self, client, headers, world):
        task = make_task(world)
        res = client.post(f"/api/v1/tasks/{task.id}/advance",
                          json={"target_status": "published"}, headers=headers["admin"])
        assert res.status_code == 422

    def test_advance_wrong_role_is_403(self, client, headers, world):
        task = make_task(world, "in_progress")
        res = client.post(f"/api/v1/tasks/{task.id}/advance",
                          json={"target_status": "in_progress"}, headers=headers["client"])
        assert res.status_code == 403
        assert res.get_json() == {"error": "Not permitted", "code": "ERR_FORBIDDEN"}

    @pytest.mark.parametrize("who,target", [
        ("designer", "in_progress"),
        ("other_client", "published"),
    ])
    def test_advance_outside_scope_is_404_without_status(self, client, headers, world, who, target):
        task = make_task(world, "in_progress")
        res = client.post(f"/api/v1/tasks/{task.id}/advance",
                          json={"target_status": target}, headers=headers[who])
        assert res.status_code == 404
        body = res.get_json()
        assert "details" not in body
        assert "in_progress" not in body["error"]

    def test_assign_then_start(self, client, headers, world):
        res = client.post("/api/v1/tasks", json={
            "client_id": world.client.id, "product_id": world.product.id,
        }, headers=headers["admin"])
        task_id = res.get_json()["id"]
        assert res.get_json()["assignee_id"] is None

        res = client.post(f"/api/v1/tasks/{task_id}/assign",
                          json={"assignee_id": world.designer.id}, headers=headers["editor"])
        assert res.status_code == 403

        res = client.post(f"/api/v1/tasks/{task_id}/assign",
                          json={"assignee_id": world.designer.id}, headers=headers["admin"])
        assert res.status_code == 200
        assert res.get_json()["assignee_id"] == world.designer.id

        res = client.post(f"/api/v1/tasks/{task_id}/advance",
                          json={"target_status": "in_progress"}, headers=headers["designer"])
        assert res.status_code == 200

    def test_advance_requires_target(self, client, headers, world):
        task = make_task(world)
        res = client.post(f"/api/v1/tasks/{task.id}/advance", json={}, headers=headers["editor"])
        assert res.status_code == 422

    def test_client_approval_response_is_projected(self, client, headers, world):
        task = make_task(world, "released_to_client", outputs=1)
        res = client.post(f"/api/v1/tasks/{task.id}/advance",
                          json={"target_status": "client_approved"}, headers=headers["client"])
        assert res.status_code == 200
        assert res.get_json()["status"] == "Approved"

    def test_multipart_upload(self, client, headers, world):
        task = make_task(world, "in_progress")
        res = client.post(
            f"/api/v1/tasks/{task.id}/attachments",
            data={"file": (io.BytesIO(b"frames"), "cut.mp4", "video/mp4"), "direction": "output"},
            headers=headers["editor"],
            content_type="multipart/form-data",
        )
        assert res.status_code == 201
        body = res.get_json()
        assert body["direction"] == "output"
        assert body["url"].startswith("memory://")

    def test_upload_without_file_is_422(self, client, headers, world):
        task = make_task(world, "in_progress")
        res = client.post(f"/api/v1/tasks/{task.id}/attachments", data={},
                          headers=headers["editor"], content_type="multipart/form-data")
        assert res.status_code == 422

    def test_history_forbidden_for_client(self, client, headers, world):
        task = make_task(world)
        assert client.get(f"/api/v1/tasks/{task.id}/history", headers=headers["client"]).status_code == 403
        assert client.get(f"/api/v1/tasks/{task.id}/history", headers=headers["admin"]).status_code == 200


class TestActivationEndpoints:
    @pytest.fixture()
    def pending_client(self):
        from agencyops.models import db
        from agencyops.models.client import Client

        c = Client(name="New Cafe", email="team@cafe.example.com", status="pending")
        db.session.add(c)
        db.session.commit()
        return c

    def test_issue_describe_consume(self, client, headers, pending_client):
        res = client.post("/api/v1/activation-tokens",
                          json={"subject_id": pending_client.id, "subject_type": "client"},
                          headers=headers["admin"])
        assert res.status_code == 201
        token = res.get_json()["token"]

        res = client.get(f"/api/v1/activation-tokens/{token}")
        assert res.get_json()["name"] == "New Cafe"

        res = client.post(f"/api/v1/activation-tokens/{token}/consume", json={"password": "pa55word!"})
        assert res.status_code == 200
        assert res.get_json()["user"]["roles"] == ["client"]

        res = client.post(f"/api/v1/activation-tokens/{token}/consume", json={"password": "pa55word!"})
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_TOKEN_USED"

    def test_unknown_token_is_404(self, client):
        res = client.get("/api/v1/activation-tokens/does-not-exist")
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_TOKEN_INVALID"

    def test_expired_token_is_410(self, client, pending_client):
        from agencyops.services import activation_service

        raw, _ = activation_service.issue(
            pending_client.id, "client", timedelta(hours=1),
            now=datetime.now(UTC) - timedelta(hours=2),
        )
        assert client.get(f"/api/v1/activation-tokens/{raw}").status_code == 410

    def test_collaborator_cannot_issue(self, client, headers, pending_client):
        res = client.post("/api/v1/activation-tokens",
                          json={"subject_id": pending_client.id, "subject_type": "client"},
                          headers=headers["editor"])
        assert res.status_code == 403


class TestOnboardingEndpoints:
    def test_store_and_reveal(self, client, headers, world):
        res = client.post("/api/v1/onboarding", json={}, headers=headers["client"])
        assert res.status_code == 201
        instance_id = res.get_json()["id"]

        res = client.put(
            f"/api/v1/onboarding/{instance_id}/responses/ig_password",
            json={"value": "s3cret", "section": "access", "is_sensitive": True},
            headers=headers["client"],
        )
        assert res.status_code == 200
        assert res.get_json()["value"] is None

        res = client.post(f"/api/v1/onboarding/{instance_id}/responses/ig_password/decrypt",
                          headers=headers["client"])
        assert res.status_code == 403

        res = client.post(f"/api/v1/onboarding/{instance_id}/responses/ig_password/decrypt",
                          headers=headers["admin"])
        assert res.status_code == 200
        assert res.get_json() == {"value": "s3cret", "encrypted": True}
        assert res.headers["Cache-Control"] == "no-store"


class TestDashboardAndEvents:
    def test_stats(self, client, headers, world):
        make_task(world)
        res = client.get("/api/v1/dashboard/stats", headers=headers["admin"])
        assert res.status_code == 200
        assert res.get_json()["total_tasks"] == 1

    def test_digest_is_admin_only(self, client, headers, world):
        assert client.post("/api/v1/dashboard/overdue-digest", headers=headers["editor"]).status_code == 403
        assert client.post("/api/v1/dashboard/overdue-digest", headers=headers["admin"]).status_code == 200

    def test_recent_events_are_projected_for_client(self, client, headers, world):
        task = make_task(world, "released_to_client", outputs=1)
        client.post(f"/api/v1/tasks/{task.id}/advance",
                    json={"target_status": "client_requested_changes", "notes": "Louder music"},
                    headers=headers["client"])
        res = client.get(f"/api/v1/events/task/{task.id}/recent", headers=headers["admin"])
        assert res.get_json()["events"][-1]["data"]["status"] == "client_requested_changes"

        res = client.get(f"/api/v1/events/task/{task.id}/recent", headers=headers["client"])
        assert res.status_code == 404

    def test_stream_starts_with_snapshot(self, client, headers, world):
        task = make_task(world, "in_review", outputs=1)
        res = client.get(f"/api/v1/events/task/{task.id}", headers=headers["client"], buffered=False)
        assert res.status_code == 200
        assert res.mimetype == "text/event-stream"
        first = next(iter(res.response))
        first = first.decode() if isinstance(first, bytes) else first
        assert first == 'event: snapshot\ndata: {"status": "Review"}\n\n'
        res.close()

    def test_stream_outside_scope_is_404(self, client, headers, world):
        task = make_task(world)
        assert client.get(f"/api/v1/events/task/{task.id}", headers=headers["other_client"]).status_code == 404
