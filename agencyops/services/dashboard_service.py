"""
Dashboard figures and the overdue digest.

Both read through the same scoped, projected task listing the portals use,
so a count on the dashboard always matches what the caller can open.
"""

import logging
from collections import Counter, defaultdict

from markupsafe import Markup

from agencyops.models import db
from agencyops.models.auth import User
from agencyops.models.work import (
    REQUEST_PENDING,
    REQUEST_UNDER_REVIEW,
    TASK_CLOSED_STATUSES,
    ClientRequest,
    Task,
)
from agencyops.services.notifier import notify
from agencyops.services.sla import Urgency, classify_urgency
from agencyops.services.work_lifecycle import list_tasks_for

logger = logging.getLogger(__name__)


def dashboard_stats(ctx, now) -> dict:
    """Counts of the caller's visible tasks by urgency and by bucket."""
    tasks = list_tasks_for(ctx, now=now)

    by_urgency = Counter({u.value: 0 for u in Urgency})
    by_urgency.update(t["urgency"] for t in tasks if t.get("urgency"))
    by_bucket = Counter(t["bucket"] for t in tasks)

    stats = {
        "total_tasks": len(tasks),
        "by_urgency": dict(by_urgency),
        "by_bucket": dict(by_bucket),
    }
    if ctx.is_admin:
        query = ClientRequest.query.filter(
            ClientRequest.status.in_((REQUEST_PENDING, REQUEST_UNDER_REVIEW))
        )
        if ctx.viewing_client_id is not None:
            query = query.filter(ClientRequest.client_id == ctx.viewing_client_id)
        stats["open_requests"] = query.count()
    return stats


def send_overdue_digest(now) -> dict[int, int]:
    """Email each assignee one list of their overdue open tasks.

    Returns ``{assignee_id: task_count}`` for the digests attempted.
    """
    open_tasks = (
        Task.query
        .filter(Task.status.notin_(TASK_CLOSED_STATUSES), Task.assignee_id.isnot(None))
        .order_by(Task.due_date.asc())
        .all()
    )
    grouped = defaultdict(list)
    for task in open_tasks:
        if classify_urgency(task.due_date, now) is Urgency.OVERDUE:
            grouped[task.assignee_id].append(task)

    sent = {}
    for assignee_id, tasks in grouped.items():
        assignee = db.session.get(User, assignee_id)
        if assignee is None:
            continue
        rows = Markup("").join(
            Markup("<li>#{} {} (due {})</li>").format(
                t.id, t.product.name if t.product else "", t.due_date.strftime("%d/%m/%Y"),
            )
            for t in tasks
        )
        notify("overdue_digest", assignee.email, {"count": len(tasks), "task_list": rows})
        sent[assignee_id] = len(tasks)

    logger.info("Overdue digest: %d task(s) across %d assignee(s)",
                sum(sent.values()), len(sent))
    return sent
