"""
Role-Gated View Projection.

The single place where canonical task statuses are relabelled for a
viewer. Admins and collaborators see the literal status; clients see three
buckets and never see a task whose status has no bucket.

Pure and stateless: nothing here touches the session or mutates a task.
"""

from dataclasses import dataclass

from agencyops.models.work import (
    TASK_ADJUSTMENTS_REQUESTED,
    TASK_BACKLOG,
    TASK_CLIENT_APPROVED,
    TASK_IN_PROGRESS,
    TASK_IN_REVIEW,
    TASK_PUBLISHED,
    TASK_RELEASED_TO_CLIENT,
    TASK_STATUSES,
)
from agencyops.services.roles import RoleClass

BUCKET_IN_PRODUCTION = "In Production"
BUCKET_REVIEW = "Review"
BUCKET_APPROVED = "Approved"

CLIENT_BUCKETS = (BUCKET_IN_PRODUCTION, BUCKET_REVIEW, BUCKET_APPROVED)

CLIENT_STATUS_BUCKETS = {
    TASK_BACKLOG:               BUCKET_IN_PRODUCTION,
    TASK_IN_PROGRESS:           BUCKET_IN_PRODUCTION,
    TASK_IN_REVIEW:             BUCKET_REVIEW,
    TASK_RELEASED_TO_CLIENT:    BUCKET_REVIEW,
    TASK_ADJUSTMENTS_REQUESTED: BUCKET_REVIEW,
    TASK_CLIENT_APPROVED:       BUCKET_APPROVED,
    TASK_PUBLISHED:             BUCKET_APPROVED,
}


@dataclass(frozen=True)
class StatusView:
    label: str
    bucket: str


def project_status(status: str, role: RoleClass) -> StatusView | None:
    """Return what ``role`` may see of ``status``, or None if hidden."""
    if status not in TASK_STATUSES:
        return None
    if role in (RoleClass.ADMIN, RoleClass.COLLABORATOR):
        return StatusView(label=status, bucket=status)
    if role is RoleClass.CLIENT:
        bucket = CLIENT_STATUS_BUCKETS.get(status)
        if bucket is None:
            return None
        return StatusView(label=bucket, bucket=bucket)
    return None


def project_task(task_dict: dict, role: RoleClass) -> dict | None:
    view = project_status(task_dict.get("status"), role)
    if view is None:
        return None
    projected = dict(task_dict)
    if role is RoleClass.CLIENT:
        # Clients never see the internal status
        projected["status"] = view.label
    projected["status_label"] = view.label
    projected["bucket"] = view.bucket
    return projected


def project_tasks(task_dicts, role: RoleClass) -> list[dict]:
    """Relabel each task for ``role``; hidden tasks are dropped, not blanked."""
    projected = []
    for item in task_dicts:
        view = project_task(item, role)
        if view is not None:
            projected.append(view)
    return projected


def client_board(task_dicts) -> dict[str, list[dict]]:
    """Group a client's tasks into the three kanban columns, in fixed order."""
    board = {bucket: [] for bucket in CLIENT_BUCKETS}
    for item in project_tasks(task_dicts, RoleClass.CLIENT):
        board[item["bucket"]].append(item)
    return board


def staff_board(task_dicts, role: RoleClass) -> dict[str, list[dict]]:
    """One column per literal status, in lifecycle order."""
    board = {status: [] for status in TASK_STATUSES}
    for item in project_tasks(task_dicts, role):
        board[item["status"]].append(item)
    return board
