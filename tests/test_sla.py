"""
SLA / urgency calculator tests. Dates are fixed; the calculator never
reads the clock.
"""

from datetime import date, datetime, timedelta

import pytest

from agencyops.services.sla import (
    Urgency,
    add_business_days,
    annotate_task,
    business_days_between,
    classify_urgency,
)
from tests.conftest import TODAY, make_task

MON = date(2026, 3, 2)
FRI = date(2026, 3, 6)
SAT = date(2026, 3, 7)
NEXT_MON = date(2026, 3, 9)


class TestBusinessDaysBetween:
    def test_inclusive_week(self):
        assert business_days_between(MON, FRI) == 5

    def test_weekend_only(self):
        assert business_days_between(SAT, SAT + timedelta(days=1)) == 0

    def test_across_weekend(self):
        assert business_days_between(FRI, NEXT_MON) == 2

    def test_reversed_range_is_zero(self):
        assert business_days_between(FRI, MON) == 0

    def test_long_range(self):
        assert business_days_between(MON, MON + timedelta(days=27)) == 20


class TestClassifyUrgency:
    def test_due_today_is_overdue(self):
        assert classify_urgency(TODAY, TODAY) is Urgency.OVERDUE

    def test_past_due_is_overdue(self):
        assert classify_urgency(TODAY - timedelta(days=1), TODAY) is Urgency.OVERDUE

    def test_within_three_business_days_is_at_risk(self):
        # Wed → Mon: Thu, Fri, Mon remain
        assert classify_urgency(NEXT_MON, TODAY) is Urgency.AT_RISK

    def test_four_business_days_is_normal(self):
        # Wed → Tue: Thu, Fri, Mon, Tue
        assert classify_urgency(NEXT_MON + timedelta(days=1), TODAY) is Urgency.NORMAL

    def test_only_weekend_between_is_at_risk(self):
        # Friday → Sunday: zero business days left, not yet due
        assert classify_urgency(SAT + timedelta(days=1), FRI) is Urgency.AT_RISK

    def test_accepts_datetime_now(self):
        now = datetime(2026, 3, 4, 23, 59)
        assert classify_urgency(TODAY, now) is Urgency.OVERDUE

    def test_rejects_strings(self):
        with pytest.raises(TypeError):
            classify_urgency("2026-03-04", TODAY)


class TestAddBusinessDays:
    def test_skips_weekend(self):
        assert add_business_days(FRI, 1) == NEXT_MON

    def test_start_not_counted(self):
        assert add_business_days(MON, 4) == FRI

    def test_zero(self):
        assert add_business_days(SAT, 0) == SAT


class TestAnnotateTask:
    def test_open_task_gets_urgency(self, world):
        task = make_task(world, "in_progress", due=TODAY)
        assert annotate_task(task, TODAY)["urgency"] == "overdue"

    @pytest.mark.parametrize("status", ["client_approved", "published", "cancelled"])
    def test_closed_task_has_no_urgency(self, world, status):
        task = make_task(world, status, due=TODAY - timedelta(days=30))
        assert annotate_task(task, TODAY)["urgency"] is None
