"""
运行状态追踪器测试 — 覆盖：
  1. Run 创建 / 重复 / 查询 / 清除
  2. set_status 的元数据记录与自动封存
  3. 取消、致命中止、封存后拒绝修改
  4. 检查点

运行方式:
    pytest tests/test_tracker.py -v
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from dag.errors import DuplicateRunError, InvalidTransitionError, RunFinalizedError
from dag.graph import TaskDAG
from dag.tracker import RunStateTracker, make_run_id
from operators import EmptyOperator
from schema import RunState, RunType, TaskStatus

D1 = datetime(2024, 1, 1, tzinfo=timezone.utc)
D2 = datetime(2024, 1, 2, tzinfo=timezone.utc)


def _dag() -> TaskDAG:
    dag = TaskDAG("etl")
    for tid in ("extract", "transform", "load"):
        dag.add_task(tid, EmptyOperator())
    dag.chain("extract", "transform", "load")
    return dag


def _finish(tracker: RunStateTracker, run, task_id: str, status: TaskStatus = TaskStatus.SUCCESS):
    tracker.set_status(run, task_id, TaskStatus.READY)
    tracker.set_status(run, task_id, TaskStatus.RUNNING)
    tracker.set_status(run, task_id, status)


class TestRunLifecycle:
    """验证 Run 的创建、查询与清除."""

    def test_create_run(self):
        tracker = RunStateTracker()
        run = tracker.create_run(_dag(), logical_date=D1)

        assert run.run_id == make_run_id(RunType.MANUAL, D1) == "manual__2024-01-01T00:00:00+00:00"
        assert run.state == RunState.QUEUED
        assert list(run.task_instances) == ["extract", "transform", "load"], "按拓扑顺序创建实例"
        assert all(ti.status == TaskStatus.PENDING for ti in run.task_instances.values())
        assert tracker.get_run("etl", run.run_id) is run
        assert tracker.get_run("other", run.run_id) is None

    def test_duplicate_run_rejected(self):
        tracker = RunStateTracker()
        tracker.create_run(_dag(), logical_date=D1)
        with pytest.raises(DuplicateRunError):
            tracker.create_run(_dag(), logical_date=D1)

    def test_find_and_list_runs(self):
        tracker = RunStateTracker()
        late = tracker.create_run(_dag(), logical_date=D2, run_type=RunType.SCHEDULED)
        early = tracker.create_run(_dag(), logical_date=D1, run_type=RunType.SCHEDULED)

        assert tracker.find_run("etl", D1) is early
        assert tracker.find_run("etl", D2 + timedelta(days=1)) is None
        assert tracker.list_runs("etl") == [early, late], "按逻辑时间排序"
        assert tracker.list_runs("other") == []
        assert tracker.list_runs(state=RunState.SUCCESS) == []

    def test_purge_keeps_unfinished_runs(self):
        tracker = RunStateTracker()
        old = tracker.create_run(_dag(), logical_date=D1)
        active = tracker.create_run(_dag(), logical_date=D1 - timedelta(days=1), run_id="still_running")
        tracker.cancel(old)

        assert tracker.purge_before(D2) == 1
        assert tracker.get_run("etl", old.run_id) is None
        assert tracker.get_run("etl", active.run_id) is active

        assert tracker.purge("other", active.run_id) is False
        assert tracker.purge("etl", active.run_id) is True
        assert tracker.purge("etl", active.run_id) is False

    def test_same_run_id_in_different_dags(self):
        """run_id 只在同一个 DAG 内唯一。"""
        tracker = RunStateTracker()
        other = TaskDAG("reports")
        other.add_task("t", EmptyOperator())

        etl_run = tracker.create_run(_dag(), logical_date=D1)
        report_run = tracker.create_run(other, logical_date=D1)

        assert etl_run.run_id == report_run.run_id
        assert tracker.get_run("etl", etl_run.run_id) is etl_run
        assert tracker.get_run("reports", report_run.run_id) is report_run
        assert tracker.find_run("reports", D1) is report_run
        with pytest.raises(DuplicateRunError):
            tracker.create_run(other, logical_date=D1)

        tracker.cancel(etl_run)
        assert tracker.purge_before(D2, dag_id="etl") == 1
        assert tracker.get_run("reports", report_run.run_id) is report_run

    def test_naive_dates_normalised_to_utc(self):
        """naive 时间按 UTC 存储，排序、查找、清除都不会因混用而报错。"""
        tracker = RunStateTracker()
        naive = tracker.create_run(_dag(), logical_date=datetime(2024, 1, 1))
        aware = tracker.create_run(_dag(), logical_date=D2)

        assert naive.logical_date == D1 and naive.logical_date.tzinfo is not None
        assert naive.run_id == make_run_id(RunType.MANUAL, D1)
        with pytest.raises(DuplicateRunError):
            tracker.create_run(_dag(), logical_date=D1)
        assert tracker.list_runs("etl") == [naive, aware]

        tracker.cancel(naive)
        tracker.cancel(aware)
        assert tracker.purge_before(datetime(2024, 1, 2)) == 1
        assert tracker.list_runs("etl") == [aware]


class TestStatusChanges:
    """验证状态变更的元数据记录与自动封存."""

    def test_running_stamps_try_number(self):
        tracker = RunStateTracker()
        run = tracker.create_run(_dag(), logical_date=D1)
        tracker.set_status(run, "extract", TaskStatus.READY)
        ti = tracker.set_status(run, "extract", TaskStatus.RUNNING)
        assert ti.try_number == 1
        assert ti.start_date is not None and ti.end_date is None

        retry_at = D2
        tracker.set_status(run, "extract", TaskStatus.RETRYING, error="boom", next_retry_at=retry_at)
        assert ti.next_retry_at == retry_at and ti.error == "boom"

        tracker.set_status(run, "extract", TaskStatus.RUNNING)
        assert ti.try_number == 2
        assert ti.error is None and ti.next_retry_at is None

        tracker.set_status(run, "extract", TaskStatus.SUCCESS, output=42)
        assert ti.output == 42 and ti.duration is not None

    def test_run_finalizes_when_all_terminal(self):
        tracker = RunStateTracker()
        run = tracker.create_run(_dag(), logical_date=D1)
        for tid in ("extract", "transform", "load"):
            _finish(tracker, run, tid)
        assert run.state == RunState.SUCCESS
        assert run.end_date is not None

    def test_any_failure_fails_run(self):
        tracker = RunStateTracker()
        run = tracker.create_run(_dag(), logical_date=D1)
        _finish(tracker, run, "extract", TaskStatus.FAILED)
        assert tracker.skip_tasks(run, ["transform", "load"], reason="upstream failed") == ["transform", "load"]
        assert run.state == RunState.FAILED

    def test_finalized_run_rejects_mutation(self):
        tracker = RunStateTracker()
        run = tracker.create_run(_dag(), logical_date=D1)
        tracker.cancel(run)
        with pytest.raises(RunFinalizedError):
            tracker.set_status(run, "extract", TaskStatus.READY)

    def test_invalid_transition_propagates(self):
        tracker = RunStateTracker()
        run = tracker.create_run(_dag(), logical_date=D1)
        with pytest.raises(InvalidTransitionError):
            tracker.set_status(run, "extract", TaskStatus.SUCCESS)

    def test_listeners_see_every_transition(self):
        listener = MagicMock()
        tracker = RunStateTracker(on_transition=listener)
        run = tracker.create_run(_dag(), logical_date=D1)
        tracker.set_status(run, "extract", TaskStatus.READY)
        listener.assert_called_once_with(run, "extract", TaskStatus.PENDING, TaskStatus.READY)

        tracker.remove_listener(listener)
        tracker.set_status(run, "extract", TaskStatus.RUNNING)
        assert listener.call_count == 1


class TestCancelAndAbort:
    """验证取消与致命中止."""

    def test_cancel_skips_non_terminal(self):
        tracker = RunStateTracker()
        run = tracker.create_run(_dag(), logical_date=D1)
        _finish(tracker, run, "extract")
        tracker.set_status(run, "transform", TaskStatus.READY)
        tracker.set_status(run, "transform", TaskStatus.RUNNING)

        skipped = tracker.cancel(run)

        assert skipped == ["transform", "load"]
        assert run.state == RunState.CANCELLED
        assert run.task_instances["extract"].status == TaskStatus.SUCCESS, "已终态任务保持不变"
        assert run.task_instances["transform"].status == TaskStatus.SKIPPED
        assert run.task_instances["load"].error == "run cancelled"

    def test_cancel_finished_run_is_noop(self):
        tracker = RunStateTracker()
        run = tracker.create_run(_dag(), logical_date=D1)
        for tid in ("extract", "transform", "load"):
            _finish(tracker, run, tid)
        assert tracker.cancel(run) == []
        assert run.state == RunState.SUCCESS

    def test_fail_run(self):
        tracker = RunStateTracker()
        run = tracker.create_run(_dag(), logical_date=D1)
        tracker.start_run(run)
        tracker.fail_run(run, "scheduler stalled")
        assert run.state == RunState.FAILED
        assert all(ti.status == TaskStatus.SKIPPED for ti in run.task_instances.values())


class TestCheckpoints:
    """验证检查点快照与保留上限."""

    def test_checkpoints_are_trimmed(self):
        tracker = RunStateTracker(max_checkpoints=2)
        run = tracker.create_run(_dag(), logical_date=D1)
        tracker.save_checkpoint(run)
        tracker.set_status(run, "extract", TaskStatus.READY)
        tracker.save_checkpoint(run)
        tracker.save_checkpoint(run)

        assert len(run.checkpoints) == 2
        assert run.checkpoints[-1]["tasks"]["extract"] == "ready"
        assert run.checkpoints[0]["state"] == "queued"

    def test_summary(self):
        tracker = RunStateTracker()
        run = tracker.create_run(_dag(), logical_date=D1, run_id="r1")
        assert tracker.summary(run) == "Run[r1: queued | 3 pending]"
