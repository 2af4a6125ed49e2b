"""
SLA / Urgency Calculator.

Pure functions over dates; callers always pass ``now`` explicitly so tests
never need to patch the clock. Datetimes are truncated to their date.
"""

from datetime import date, datetime, timedelta
from enum import Enum

from agencyops.models.work import TASK_CLOSED_STATUSES


class Urgency(str, Enum):
    OVERDUE = "overdue"
    AT_RISK = "at_risk"
    NORMAL = "normal"


AT_RISK_THRESHOLD_DAYS = 3


def _as_date(value) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raise TypeError(f"Expected date or datetime, got {type(value).__name__}")


def _is_business_day(day: date) -> bool:
    return day.weekday() < 5


def business_days_between(start, end) -> int:
    """Count Mon–Fri days in the inclusive range [start, end].

    Returns 0 when ``end`` precedes ``start``.
    """
    start, end = _as_date(start), _as_date(end)
    if end < start:
        return 0
    total_days = (end - start).days + 1
    full_weeks, remainder = divmod(total_days, 7)
    count = full_weeks * 5
    for offset in range(remainder):
        if _is_business_day(start + timedelta(days=full_weeks * 7 + offset)):
            count += 1
    return count


def classify_urgency(due, now) -> Urgency:
    """Classify a due date against ``now``.

    Overdue when due ≤ today. Otherwise the business days left after today
    decide: ≤ 3 is at risk (0 happens when only a weekend separates them),
    anything more is normal.
    """
    due_day, today = _as_date(due), _as_date(now)
    if due_day <= today:
        return Urgency.OVERDUE
    remaining = business_days_between(today, due_day) - 1
    if remaining <= AT_RISK_THRESHOLD_DAYS:
        return Urgency.AT_RISK
    return Urgency.NORMAL


def add_business_days(start, days: int) -> date:
    """Return the date ``days`` business days after ``start`` (start not counted)."""
    current = _as_date(start)
    added = 0
    while added < days:
        current += timedelta(days=1)
        if _is_business_day(current):
            added += 1
    return current


def annotate_task(task, now) -> dict:
    """Task dict plus its ``urgency``; closed tasks carry ``None``."""
    data = task.to_dict()
    if task.status in TASK_CLOSED_STATUSES or task.due_date is None:
        data["urgency"] = None
    else:
        data["urgency"] = classify_urgency(task.due_date, now).value
    return data
