"""
Dashboard figures and the overdue digest.
"""

from datetime import timedelta

from agencyops.models import db
from agencyops.services import work_lifecycle as wl
from agencyops.services.dashboard_service import dashboard_stats, send_overdue_digest
from agencyops.services.notifier import EmailNotifier
from tests.conftest import TODAY, make_task


class TestDashboardStats:
    def test_admin_counts_by_urgency_and_status(self, world):
        make_task(world, "in_progress", due=TODAY)                       # overdue
        make_task(world, "backlog", due=TODAY + timedelta(days=2))       # at risk
        make_task(world, "backlog", due=TODAY + timedelta(days=14))      # normal
        make_task(world, "published", due=TODAY - timedelta(days=9))     # closed
        wl.submit_request(world.client_ctx, world.client.id, {
            "title": "Menu video", "description": "60s", "product_id": world.product.id,
        })

        stats = dashboard_stats(world.admin_ctx, TODAY)
        assert stats["total_tasks"] == 4
        assert stats["by_urgency"] == {"overdue": 1, "at_risk": 1, "normal": 1}
        assert stats["by_bucket"]["backlog"] == 2
        assert stats["open_requests"] == 1

    def test_client_counts_only_visible_buckets(self, world):
        make_task(world, "in_progress", due=TODAY)
        make_task(world, "client_requested_changes", due=TODAY)
        make_task(world, "cancelled", due=TODAY)

        stats = dashboard_stats(world.client_ctx, TODAY)
        assert stats["total_tasks"] == 1
        assert stats["by_bucket"] == {"In Production": 1}
        assert "open_requests" not in stats

    def test_collaborator_counts_only_assigned(self, world):
        make_task(world, assignee=world.editor)
        make_task(world, assignee=world.designer)
        assert dashboard_stats(world.designer_ctx, TODAY)["total_tasks"] == 1


class TestOverdueDigest:
    def test_one_email_per_assignee(self, world, outbox):
        make_task(world, "in_progress", assignee=world.editor, due=TODAY)
        make_task(world, "in_review", assignee=world.editor, due=TODAY - timedelta(days=3), outputs=1)
        make_task(world, "backlog", assignee=world.designer, due=TODAY - timedelta(days=1))
        make_task(world, "backlog", assignee=world.designer, due=TODAY + timedelta(days=7))
        make_task(world, "client_approved", assignee=world.designer, due=TODAY - timedelta(days=7))

        sent = send_overdue_digest(TODAY)

        assert sent == {world.editor.id: 2, world.designer.id: 1}
        digests = [m for m in outbox if m["template"] == "overdue_digest"]
        assert sorted(m["recipient"] for m in digests) == [
            "designer@agency.test", "editor@agency.test",
        ]

    def test_nothing_overdue(self, world, outbox):
        make_task(world, due=TODAY + timedelta(days=10))
        assert send_overdue_digest(TODAY) == {}
        assert list(outbox) == []

    def test_digest_rows_render_as_list_items_with_escaped_names(self, world, outbox):
        world.product.name = "Reel <b>XL</b>"
        db.session.commit()
        task = make_task(world, "in_progress", due=TODAY)

        send_overdue_digest(TODAY)

        _, html = EmailNotifier.render("overdue_digest", outbox[-1]["payload"])
        assert f"<li>#{task.id} Reel &lt;b&gt;XL&lt;/b&gt; (due 04/03/2026)</li>" in html
