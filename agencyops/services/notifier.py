"""
Agency Operations Platform
Notifier — fire-and-forget outbound email.

Lifecycle services call ``notify()`` *after* their transaction commits. A
notification failure is logged and swallowed; it never undoes a state
transition.

When SMTP is not configured (dev/test), messages are rendered, logged and
kept in ``EmailNotifier.outbox`` instead of being delivered.

Configuration (env vars):
    MAIL_SERVER     SMTP host (default: None → log-only mode)
    MAIL_PORT       SMTP port (default: 587)
    MAIL_USE_TLS    Use TLS (default: true)
    MAIL_USERNAME   SMTP username
    MAIL_PASSWORD   SMTP password
    MAIL_DEFAULT_SENDER  Default from address
"""

from __future__ import annotations

import logging
import smtplib
from collections import deque
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any

from flask import current_app
from markupsafe import escape

logger = logging.getLogger(__name__)

EXTENSION_KEY = "agencyops.notifier"


_LAYOUT = """
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
    <div style="background: #1e293b; color: white; padding: 16px 24px;">
        <h2 style="margin: 0; font-size: 18px;">{heading}</h2>
    </div>
    <div style="background: #f8fafc; padding: 24px; border: 1px solid #e2e8f0;">
        {body}
    </div>
</div>
"""

_TEMPLATES: dict[str, dict[str, str]] = {
    "client_welcome": {
        "subject": "Welcome, {name}: activate your client portal",
        "heading": "Welcome to the client portal",
        "body": "<p>Hi {name},</p><p>Set your password to access your portal:</p>"
                "<p><a href=\"{activation_url}\">{activation_url}</a></p>"
                "<p>This link expires on {expires_at} and works once.</p>",
    },
    "collaborator_welcome": {
        "subject": "Welcome to the team, {name}",
        "heading": "Your collaborator account",
        "body": "<p>Hi {name},</p><p>Set your password to start working:</p>"
                "<p><a href=\"{activation_url}\">{activation_url}</a></p>"
                "<p>This link expires on {expires_at} and works once.</p>",
    },
    "request_submitted": {
        "subject": "New request {protocol_number}: {title}",
        "heading": "New client request",
        "body": "<p>{client_name} submitted <strong>{title}</strong> "
                "({priority}, quantity {quantity}).</p>",
    },
    "request_status": {
        "subject": "Request {protocol_number} is now {status}",
        "heading": "Request update",
        "body": "<p>Your request <strong>{title}</strong> is now <strong>{status}</strong>.</p>"
                "<p>{notes}</p>",
    },
    "task_assigned": {
        "subject": "New task assigned: {product_name}",
        "heading": "You have a new task",
        "body": "<p>Task #{task_id} ({product_name}) is due on {due_date}.</p>",
    },
    "task_feedback": {
        "subject": "Changes requested on task #{task_id}",
        "heading": "Task sent back",
        "body": "<p>Task #{task_id} moved to <strong>{status}</strong>.</p><p>{notes}</p>",
    },
    "task_released": {
        "subject": "A deliverable is ready for your approval",
        "heading": "Ready for review",
        "body": "<p>Task #{task_id} ({product_name}) is ready for your approval.</p>",
    },
    "task_comment": {
        "subject": "New comment on task #{task_id}",
        "heading": "New comment",
        "body": "<p>{author}: {body}</p>",
    },
    "overdue_digest": {
        "subject": "{count} overdue task(s) need attention",
        "heading": "Overdue tasks",
        "body": "<ul>{task_list}</ul>",
    },
}


class _SafeDict(dict):
    """Dict that returns {key} for missing keys instead of raising."""

    def __missing__(self, key):
        return f"{{{key}}}"


def _plain(value) -> str:
    """Header-safe text: no line breaks inside a subject."""
    return " ".join(str(value).split())


class EmailNotifier:
    """Renders templates and sends via SMTP, or only logs when unconfigured."""

    def __init__(self, config: dict[str, Any], outbox_size: int = 200):
        self.config = config
        self.outbox: deque[dict[str, Any]] = deque(maxlen=outbox_size)

    def is_configured(self) -> bool:
        return bool(self.config.get("MAIL_SERVER"))

    @staticmethod
    def render(template_name: str, payload: dict[str, Any]) -> tuple[str, str]:
        template = _TEMPLATES.get(template_name)
        if template is None:
            raise KeyError(f"Unknown email template: {template_name}")
        # Payload text is client-supplied; the body escapes it, Markup passes through
        subject = _plain(template["subject"].format_map(_SafeDict(payload)))
        body = template["body"].format_map(_SafeDict({k: escape(v) for k, v in payload.items()}))
        html = _LAYOUT.format(heading=template["heading"], body=body)
        return subject, html

    def send(self, template_name: str, recipient: str, payload: dict[str, Any]) -> None:
        subject, html = self.render(template_name, payload)
        if not self.is_configured():
            self.outbox.append({
                "template": template_name,
                "recipient": recipient,
                "subject": subject,
                "payload": dict(payload),
            })
            logger.info(
                "Email (log-only): to=%s subject='%s' template=%s",
                recipient, subject, template_name,
            )
            return
        self._send_smtp(recipient, subject, html)
        logger.info("Email sent: to=%s template=%s", recipient, template_name)

    def _send_smtp(self, to_email: str, subject: str, html_body: str) -> None:
        cfg = self.config
        server = cfg.get("MAIL_SERVER")
        port = cfg.get("MAIL_PORT", 587)
        username = cfg.get("MAIL_USERNAME")
        password = cfg.get("MAIL_PASSWORD")
        sender = cfg.get("MAIL_DEFAULT_SENDER") or f"noreply@{server}"

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = sender
        msg["To"] = to_email
        msg.attach(MIMEText(html_body, "html"))

        with smtplib.SMTP(server, port, timeout=30) as smtp:
            if cfg.get("MAIL_USE_TLS", True):
                smtp.starttls()
            if username and password:
                smtp.login(username, password)
            smtp.send_message(msg)


def init_notifier(app) -> EmailNotifier:
    notifier = EmailNotifier(app.config)
    app.extensions[EXTENSION_KEY] = notifier
    return notifier


def get_notifier():
    return current_app.extensions[EXTENSION_KEY]


def notify(template: str, recipient: str | None, payload: dict[str, Any]) -> bool:
    """Best-effort delivery. Returns False (and logs) on any failure."""
    if not recipient:
        logger.debug("Notification %s skipped: no recipient", template)
        return False
    try:
        get_notifier().send(template, recipient, payload)
        return True
    except Exception:
        logger.exception("Notification %s to %s failed", template, recipient)
        return False
