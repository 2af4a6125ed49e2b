"""
Client request lifecycle tests — submit, review, approve (atomic task
creation), reject.

Request graph:
    pending → under_review | approved | rejected
    under_review → approved | rejected
"""

import re
from datetime import date

import pytest
from sqlalchemy.exc import SQLAlchemyError

from agencyops.core.exceptions import (
    AuthorizationError,
    InvalidTransitionError,
    NotFoundError,
    StaleStateError,
    ValidationError,
)
from agencyops.models import db
from agencyops.models.audit import AuditLog
from agencyops.models.work import ClientRequest, Task
from agencyops.services import work_lifecycle as wl

DUE = "2026-03-20"


def _submit(world, ctx=None, **overrides):
    payload = {
        "title": "Spring promo reel",
        "description": "30s reel for the spring menu",
        "product_id": world.product.id,
        "quantity": 2,
    }
    payload.update(overrides)
    return wl.submit_request(ctx or world.client_ctx, world.client.id, payload)


def _audit(entity_type, entity_id):
    return (
        AuditLog.query.filter_by(entity_type=entity_type, entity_id=str(entity_id))
        .order_by(AuditLog.id).all()
    )


# ═════════════════════════════════════════════════════════════════════════
# SUBMIT
# ═════════════════════════════════════════════════════════════════════════


class TestSubmit:
    def test_client_submits_pending_request(self, world):
        req = _submit(world)
        assert req.status == "pending"
        assert req.requested_by == world.client_user.id
        assert re.fullmatch(r"REQ-\d{8}-\d{4}", req.protocol_number)
        assert [a.action for a in _audit("client_request", req.id)] == ["request.submit"]

    def test_protocol_numbers_are_sequential_per_day(self, world):
        first = _submit(world)
        second = _submit(world)
        assert first.protocol_number[:-4] == second.protocol_number[:-4]
        assert int(second.protocol_number[-4:]) == int(first.protocol_number[-4:]) + 1

    def test_admin_acting_as_client_may_submit(self, world):
        req = _submit(world, ctx=world.admin_as(world.client))
        assert req.client_id == world.client.id

    def test_other_client_cannot_submit_for_client(self, world):
        with pytest.raises(AuthorizationError):
            _submit(world, ctx=world.other_client_ctx)

    def test_collaborator_cannot_submit(self, world):
        with pytest.raises(AuthorizationError):
            _submit(world, ctx=world.editor_ctx)

    def test_title_and_description_required(self, world):
        with pytest.raises(ValidationError) as exc:
            _submit(world, title="  ", description="")
        assert set(exc.value.details) == {"title", "description"}
        assert ClientRequest.query.count() == 0

    def test_unknown_priority(self, world):
        with pytest.raises(ValidationError):
            _submit(world, priority="asap")

    def test_urgent_priority(self, world):
        assert _submit(world, priority="URGENT").priority == "urgent"

    def test_admins_are_notified(self, world, outbox):
        _submit(world)
        sent = [m for m in outbox if m["template"] == "request_submitted"]
        assert [m["recipient"] for m in sent] == ["admin@agency.test"]


# ═════════════════════════════════════════════════════════════════════════
# REVIEW / APPROVE / REJECT
# ═════════════════════════════════════════════════════════════════════════


class TestStartReview:
    def test_pending_to_under_review(self, world):
        req = _submit(world)
        assert wl.start_review(world.admin_ctx, req.id).status == "under_review"

    def test_admin_only(self, world):
        req = _submit(world)
        with pytest.raises(AuthorizationError):
            wl.start_review(world.client_ctx, req.id)

    def test_twice_is_stale(self, world):
        req = _submit(world)
        wl.start_review(world.admin_ctx, req.id)
        with pytest.raises(StaleStateError):
            wl.start_review(world.admin_ctx, req.id)


class TestApprove:
    def test_approve_creates_exactly_one_backlog_task(self, world):
        req = _submit(world)
        task = wl.approve_request(world.admin_ctx, req.id, world.editor.id, DUE, notes="ok")

        db.session.refresh(req)
        assert req.status == "approved"
        assert req.reviewed_by == world.admin.id
        assert req.reviewed_at is not None
        assert Task.query.filter_by(request_id=req.id).count() == 1
        assert task.status == "backlog"
        assert task.assignee_id == world.editor.id
        assert task.quantity == 2
        assert task.due_date == date(2026, 3, 20)

    def test_task_freezes_contracted_terms(self, world):
        req = _submit(world)
        task = wl.approve_request(world.admin_ctx, req.id, world.editor.id, DUE)
        assert float(task.frozen_price) == 250
        assert task.frozen_sla_days == 3

        world.service.negotiated_price = 999
        world.service.sla_days = 10
        db.session.commit()
        db.session.refresh(task)
        assert float(task.frozen_price) == 250
        assert task.frozen_sla_days == 3

    def test_frozen_fields_cannot_be_rewritten(self, world):
        req = _submit(world)
        task = wl.approve_request(world.admin_ctx, req.id, world.editor.id, DUE)
        with pytest.raises(ValidationError):
            task.frozen_price = 1

    def test_approve_from_under_review(self, world):
        req = _submit(world)
        wl.start_review(world.admin_ctx, req.id)
        task = wl.approve_request(world.admin_ctx, req.id, world.editor.id, DUE)
        assert task.request_id == req.id

    def test_double_approve_is_stale_and_creates_no_second_task(self, world):
        req = _submit(world)
        wl.approve_request(world.admin_ctx, req.id, world.editor.id, DUE)
        with pytest.raises(StaleStateError):
            wl.approve_request(world.admin_ctx, req.id, world.editor.id, DUE)
        assert Task.query.count() == 1

    def test_approve_rejected_request_is_invalid(self, world):
        req = _submit(world)
        wl.reject_request(world.admin_ctx, req.id, "out of scope")
        with pytest.raises(InvalidTransitionError):
            wl.approve_request(world.admin_ctx, req.id, world.editor.id, DUE)

    def test_assignee_must_be_a_collaborator(self, world):
        req = _submit(world)
        with pytest.raises(ValidationError):
            wl.approve_request(world.admin_ctx, req.id, world.client_user.id, DUE)
        db.session.refresh(req)
        assert req.status == "pending"

    def test_due_date_required(self, world):
        req = _submit(world)
        with pytest.raises(ValidationError):
            wl.approve_request(world.admin_ctx, req.id, world.editor.id, None)

    def test_inactive_contract_blocks_approval(self, world):
        req = _submit(world)
        world.service.is_active = False
        db.session.commit()
        with pytest.raises(ValidationError):
            wl.approve_request(world.admin_ctx, req.id, world.editor.id, DUE)
        assert Task.query.count() == 0

    def test_task_insert_failure_rolls_back_request(self, world, monkeypatch):
        req = _submit(world)

        def _boom(**kwargs):
            if kwargs.get("action") == "task.create":
                raise SQLAlchemyError("disk full")

        monkeypatch.setattr(wl, "write_audit", _boom)
        with pytest.raises(SQLAlchemyError):
            wl.approve_request(world.admin_ctx, req.id, world.editor.id, DUE)

        db.session.refresh(req)
        assert req.status == "pending"
        assert req.reviewed_at is None
        assert Task.query.count() == 0

    def test_request_attachments_follow_onto_task(self, world):
        req = _submit(world)
        wl.add_request_attachment(world.client_ctx, req.id, b"logo", "image/png", "logo.png")
        task = wl.approve_request(world.admin_ctx, req.id, world.editor.id, DUE)
        files = task.attachments.all()
        assert [(a.file_name, a.direction) for a in files] == [("logo.png", "input")]

    def test_assignee_and_client_are_notified(self, world, outbox):
        req = _submit(world)
        outbox.clear()
        wl.approve_request(world.admin_ctx, req.id, world.editor.id, DUE)
        assert {(m["template"], m["recipient"]) for m in outbox} == {
            ("task_assigned", "editor@agency.test"),
            ("request_status", "owner@acme.test"),
        }

    def test_audit_rows(self, world):
        req = _submit(world)
        task = wl.approve_request(world.admin_ctx, req.id, world.editor.id, DUE)
        assert [a.action for a in _audit("client_request", req.id)] == [
            "request.submit", "request.approve",
        ]
        created = _audit("task", task.id)
        assert [a.action for a in created] == ["task.create"]
        assert created[0].diff["status"] == {"old": None, "new": "backlog"}


class TestReject:
    def test_reject_requires_notes(self, world):
        req = _submit(world)
        with pytest.raises(ValidationError):
            wl.reject_request(world.admin_ctx, req.id, "   ")
        db.session.refresh(req)
        assert req.status == "pending"

    def test_reject_sets_review_fields(self, world):
        req = _submit(world)
        req = wl.reject_request(world.admin_ctx, req.id, "Budget exhausted")
        assert req.status == "rejected"
        assert req.review_notes == "Budget exhausted"
        assert req.reviewed_by == world.admin.id
        assert Task.query.count() == 0

    def test_reject_approved_is_invalid(self, world):
        req = _submit(world)
        wl.approve_request(world.admin_ctx, req.id, world.editor.id, DUE)
        with pytest.raises(InvalidTransitionError):
            wl.reject_request(world.admin_ctx, req.id, "changed my mind")

    def test_protocol_number_is_immutable(self, world):
        req = _submit(world)
        with pytest.raises(ValidationError):
            req.protocol_number = "REQ-19990101-0001"


# ═════════════════════════════════════════════════════════════════════════
# SCOPED READS
# ═════════════════════════════════════════════════════════════════════════


class TestVisibility:
    def test_client_sees_only_own_requests(self, world):
        mine = _submit(world)
        wl.submit_request(world.other_client_ctx, world.other_client.id, {
            "title": "Gym flyer", "description": "A4", "product_id": world.other_product.id,
        })
        assert [r.id for r in wl.list_requests_for(world.client_ctx)] == [mine.id]
        assert len(wl.list_requests_for(world.admin_ctx)) == 2

    def test_foreign_request_is_not_found(self, world):
        req = _submit(world)
        with pytest.raises(NotFoundError):
            wl.get_request_for(world.other_client_ctx, req.id)

    def test_collaborators_do_not_list_requests(self, world):
        with pytest.raises(AuthorizationError):
            wl.list_requests_for(world.editor_ctx)

    def test_admin_viewing_client_filters(self, world):
        _submit(world)
        assert wl.list_requests_for(world.admin_as(world.other_client)) == []
