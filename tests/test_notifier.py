"""
Email notifier tests — template rendering and best-effort delivery.
"""

import pytest
from markupsafe import Markup

from agencyops.services.notifier import EmailNotifier, get_notifier, notify


class TestRender:
    def test_client_welcome_contains_link(self):
        subject, html = EmailNotifier.render("client_welcome", {
            "name": "Acme", "activation_url": "http://x/first-access?token=t", "expires_at": "01/01/2027",
        })
        assert subject
        assert "http://x/first-access?token=t" in html

    def test_missing_payload_keys_do_not_raise(self):
        subject, html = EmailNotifier.render("task_feedback", {})
        assert "{task_id}" in subject + html

    def test_client_text_is_escaped_in_body(self):
        subject, html = EmailNotifier.render("request_submitted", {
            "protocol_number": "REQ-1", "title": "<script>alert(1)</script>",
            "client_name": "Acme <a href=\"http://evil.example.com\">click</a>",
            "priority": "normal", "quantity": 1,
        })
        assert "<script>" not in html
        assert "&lt;script&gt;alert(1)&lt;/script&gt;" in html
        assert "<a href" not in html
        # Subjects are plain text headers, not HTML
        assert subject == "New request REQ-1: <script>alert(1)</script>"

    def test_comment_body_is_escaped(self):
        _, html = EmailNotifier.render("task_comment", {"task_id": 3, "author": "a@b", "body": "<img src=x>"})
        assert "&lt;img src=x&gt;" in html

    def test_markup_rows_pass_through(self):
        _, html = EmailNotifier.render("overdue_digest", {
            "count": 1, "task_list": Markup("<li>#{}</li>").format("<b>"),
        })
        assert "<li>#&lt;b&gt;</li>" in html

    def test_subject_has_no_line_breaks(self):
        subject, _ = EmailNotifier.render("request_submitted", {
            "protocol_number": "REQ-1", "title": "Logo\r\nBcc: victim@example.com",
        })
        assert "\n" not in subject and "\r" not in subject

    def test_unknown_template(self):
        with pytest.raises(KeyError):
            EmailNotifier.render("nope", {})


class TestNotify:
    def test_log_only_mode_records_outbox(self, outbox):
        assert notify("request_status", "a@b.example.com", {"protocol_number": "REQ-1"}) is True
        assert outbox[-1]["recipient"] == "a@b.example.com"
        assert outbox[-1]["template"] == "request_status"

    def test_missing_recipient_is_skipped(self, outbox):
        assert notify("request_status", None, {}) is False
        assert list(outbox) == []

    def test_failures_are_swallowed(self, monkeypatch):
        def _down(*args, **kwargs):
            raise OSError("connection refused")

        monkeypatch.setattr(get_notifier(), "send", _down)
        assert notify("task_released", "a@b.example.com", {}) is False

    def test_smtp_used_when_configured(self, monkeypatch):
        notifier = EmailNotifier({"MAIL_SERVER": "smtp.example.com", "MAIL_USE_TLS": False})
        sent = []
        monkeypatch.setattr(notifier, "_send_smtp", lambda to, subject, html: sent.append(to))
        notifier.send("task_assigned", "ed@example.com", {"task_id": 1})
        assert sent == ["ed@example.com"]
        assert list(notifier.outbox) == []
