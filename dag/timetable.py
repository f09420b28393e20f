"""
Timetable - Schedule-point arithmetic for interval-scheduled DAGs.
时间表 —— 按固定间隔调度的 DAG 的调度点计算。

A run's logical_date is the START of the interval it covers; it becomes
due once the interval has fully elapsed:
Run 的 logical_date 是其覆盖区间的起点；区间完全结束后该 Run 才到期：

    start_date            start_date + i       start_date + 2i
        |------ run #1 ------|------ run #2 ------|
                             ^ run #1 due here    ^ run #2 due here
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterator

from dag.graph import TaskDAG
from schema import as_utc


def iter_logical_dates(start_date: datetime, interval: timedelta, until: datetime) -> Iterator[datetime]:
    """
    Yield every logical date whose interval has ended by `until`.
    依次产出所有在 `until` 之前已结束区间的逻辑时间。
    """
    if interval <= timedelta(0):
        raise ValueError("schedule interval must be positive")
    current = as_utc(start_date)
    until = as_utc(until)
    while current + interval <= until:
        yield current
        current += interval


def due_logical_dates(dag: TaskDAG, now: datetime, existing: set[datetime] | None = None) -> list[datetime]:
    """
    Logical dates that should get a scheduled run at `now`.
    返回在 `now` 时刻应当创建调度 Run 的逻辑时间列表。

    catchup=True:  every due point without an existing run (backfill)
    catchup=False: only the most recent due point, if it has no run yet
    catchup=True： 所有尚无 Run 的到期调度点（补跑）
    catchup=False：只取最近一个到期调度点（若尚无 Run）
    """
    if dag.schedule_interval is None or dag.start_date is None:
        return []
    existing = {as_utc(d) for d in (existing or set())}
    points = list(iter_logical_dates(dag.start_date, dag.schedule_interval, now))
    if not dag.catchup:
        points = points[-1:]
    return [p for p in points if p not in existing]


def next_logical_date(dag: TaskDAG, after: datetime) -> datetime | None:
    """
    First schedule point strictly after `after`, or None for unscheduled DAGs.
    返回严格晚于 `after` 的第一个调度点；未配置调度的 DAG 返回 None。
    """
    if dag.schedule_interval is None or dag.start_date is None:
        return None
    start = as_utc(dag.start_date)
    after = as_utc(after)
    if after < start:
        return start
    steps = (after - start) // dag.schedule_interval + 1
    return start + steps * dag.schedule_interval
