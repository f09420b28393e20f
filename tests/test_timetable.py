"""
时间表测试 — 调度点计算。

运行方式:
    pytest tests/test_timetable.py -v
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from dag.graph import TaskDAG
from dag.timetable import due_logical_dates, iter_logical_dates, next_logical_date

START = datetime(2024, 1, 1, tzinfo=timezone.utc)
HOUR = timedelta(hours=1)


def _hourly(catchup: bool = True) -> TaskDAG:
    return TaskDAG("hourly", schedule_interval=HOUR, start_date=START, catchup=catchup)


class TestIterLogicalDates:
    """验证只有区间完全结束的调度点才会产出."""

    def test_interval_must_elapse(self):
        assert list(iter_logical_dates(START, HOUR, START + timedelta(minutes=59))) == []
        assert list(iter_logical_dates(START, HOUR, START + HOUR)) == [START]

    def test_naive_datetimes_are_utc(self):
        naive = datetime(2024, 1, 1)
        assert list(iter_logical_dates(naive, HOUR, naive + 2 * HOUR)) == [START, START + HOUR]

    def test_non_positive_interval(self):
        with pytest.raises(ValueError):
            list(iter_logical_dates(START, timedelta(0), START + HOUR))


class TestDueLogicalDates:
    """验证 catchup 行为与已有 Run 的排除."""

    def test_catchup(self):
        now = START + timedelta(hours=3, minutes=30)
        assert due_logical_dates(_hourly(), now) == [START, START + HOUR, START + 2 * HOUR]

    def test_existing_runs_excluded(self):
        now = START + 3 * HOUR
        assert due_logical_dates(_hourly(), now, existing={START, START + HOUR}) == [START + 2 * HOUR]

    def test_no_catchup(self):
        now = START + timedelta(hours=3, minutes=30)
        assert due_logical_dates(_hourly(catchup=False), now) == [START + 2 * HOUR]
        assert due_logical_dates(_hourly(catchup=False), now, existing={START + 2 * HOUR}) == []

    def test_unscheduled(self):
        assert due_logical_dates(TaskDAG("manual"), START + 10 * HOUR) == []


class TestNextLogicalDate:
    def test_before_start(self):
        assert next_logical_date(_hourly(), START - HOUR) == START

    def test_strictly_after(self):
        assert next_logical_date(_hourly(), START) == START + HOUR
        assert next_logical_date(_hourly(), START + timedelta(minutes=90)) == START + 2 * HOUR

    def test_unscheduled(self):
        assert next_logical_date(TaskDAG("manual"), START) is None
