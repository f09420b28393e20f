"""
Run-State Tracker - Owns every DagRun and every task status change.
运行状态追踪器 —— 持有所有 DagRun，负责每一次任务状态变更。

All mutations go through `set_status()`, which:
  1. refuses to touch a finished run (RunFinalizedError)
  2. validates the change against the TaskStateMachine
  3. stamps try_number / start_date / end_date
  4. finalizes the run once every task is terminal

所有状态变更都经过 `set_status()`：
  1. 拒绝修改已封存的 Run（RunFinalizedError）
  2. 通过 TaskStateMachine 校验合法性
  3. 记录 try_number / start_date / end_date
  4. 所有任务终态后封存 Run

Runs are keyed by (dag_id, run_id) and retained in memory until purged
(`purge`, `purge_before`). Logical dates are stored as aware UTC.
Run 以 (dag_id, run_id) 为键，一直保留在内存中直到被显式清除
（`purge`、`purge_before`）。逻辑时间统一存储为带时区的 UTC。
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Any, Callable

import config
from dag.errors import DuplicateRunError, RunFinalizedError
from dag.graph import TaskDAG
from dag.state_machine import TaskStateMachine
from schema import DagRun, RunState, RunType, TaskInstance, TaskStatus, as_utc, utcnow

logger = logging.getLogger(__name__)


def make_run_id(run_type: RunType, logical_date: datetime) -> str:
    """e.g. manual__2024-01-01T00:00:00+00:00"""
    return f"{run_type.value}__{logical_date.isoformat()}"


class RunStateTracker:
    """
    In-memory registry of DagRuns and the single writer of task statuses.
    DagRun 的内存注册表，也是任务状态的唯一写入者。

    A re-entrant lock guards every mutation so executor callbacks coming
    from worker threads cannot interleave with the scheduler loop.
    可重入锁保护每一次变更，使来自工作线程的执行器回调不会与调度循环交错。
    """

    def __init__(
        self,
        on_transition: Callable[[DagRun, str, TaskStatus, TaskStatus], None] | None = None,
        max_checkpoints: int | None = None,
    ):
        self._runs: dict[tuple[str, str], DagRun] = {}
        self._lock = threading.RLock()
        self._listeners: list[Callable[[DagRun, str, TaskStatus, TaskStatus], None]] = []
        if on_transition is not None:
            self._listeners.append(on_transition)
        self._max_checkpoints = max_checkpoints if max_checkpoints is not None else config.MAX_CHECKPOINTS

    # ------------------------------------------------------------------
    # Run lifecycle
    # Run 生命周期
    # ------------------------------------------------------------------

    def create_run(
        self,
        dag: TaskDAG,
        logical_date: datetime | None = None,
        run_type: RunType = RunType.MANUAL,
        run_id: str | None = None,
    ) -> DagRun:
        """
        Create a run with one PENDING TaskInstance per task.
        创建 Run，为每个任务生成一个 PENDING 状态的 TaskInstance。
        """
        logical_date = as_utc(logical_date) if logical_date is not None else utcnow()
        run_id = run_id or make_run_id(run_type, logical_date)
        key = (dag.dag_id, run_id)
        with self._lock:
            if key in self._runs:
                raise DuplicateRunError(f"Run '{run_id}' already exists for DAG '{dag.dag_id}'")
            run = DagRun(
                run_id=run_id,
                dag_id=dag.dag_id,
                logical_date=logical_date,
                run_type=run_type,
                task_instances={tid: TaskInstance(task_id=tid) for tid in dag.topological_sort()},
            )
            self._runs[key] = run
        logger.info("[Tracker] Run created: %s (%s, %d tasks)", run_id, dag.dag_id, len(run.task_instances))
        return run

    def add_listener(self, listener: Callable[[DagRun, str, TaskStatus, TaskStatus], None]) -> None:
        """Register callback(run, task_id, old, new) for every transition. 注册状态转移监听器。"""
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[DagRun, str, TaskStatus, TaskStatus], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def start_run(self, run: DagRun) -> None:
        with self._lock:
            self._ensure_mutable(run)
            if run.state == RunState.QUEUED:
                run.state = RunState.RUNNING
                run.start_date = utcnow()

    def get_run(self, dag_id: str, run_id: str) -> DagRun | None:
        return self._runs.get((dag_id, run_id))

    def find_run(self, dag_id: str, logical_date: datetime) -> DagRun | None:
        """Look up a run by its schedule point. 按调度时间点查找 Run。"""
        logical_date = as_utc(logical_date)
        for run in self._runs.values():
            if run.dag_id == dag_id and run.logical_date == logical_date:
                return run
        return None

    def list_runs(self, dag_id: str | None = None, state: RunState | None = None) -> list[DagRun]:
        """Runs ordered by logical date. 按逻辑时间排序的 Run 列表。"""
        runs = [
            r for r in self._runs.values()
            if (dag_id is None or r.dag_id == dag_id) and (state is None or r.state == state)
        ]
        return sorted(runs, key=lambda r: r.logical_date)

    def purge(self, dag_id: str, run_id: str) -> bool:
        """Forget a run. 删除一个 Run 的记录。"""
        with self._lock:
            removed = self._runs.pop((dag_id, run_id), None) is not None
        if removed:
            logger.info("[Tracker] Run purged: %s (%s)", run_id, dag_id)
        return removed

    def purge_before(self, cutoff: datetime, dag_id: str | None = None) -> int:
        """
        Forget finished runs whose logical date is before `cutoff`.
        删除逻辑时间早于 `cutoff` 的已结束 Run，返回删除数量。
        Runs still in progress are never purged. 进行中的 Run 不会被删除。
        """
        cutoff = as_utc(cutoff)
        with self._lock:
            doomed = [
                key for key, r in self._runs.items()
                if r.is_finished and r.logical_date < cutoff and (dag_id is None or r.dag_id == dag_id)
            ]
            for key in doomed:
                del self._runs[key]
        if doomed:
            logger.info("[Tracker] Purged %d runs older than %s", len(doomed), cutoff.isoformat())
        return len(doomed)

    # ------------------------------------------------------------------
    # Task status mutation
    # 任务状态变更
    # ------------------------------------------------------------------

    def set_status(
        self,
        run: DagRun,
        task_id: str,
        new_status: TaskStatus,
        *,
        output: Any = None,
        error: str | None = None,
        next_retry_at: datetime | None = None,
    ) -> TaskInstance:
        """
        Transition one task of `run` and record the bookkeeping that goes with it.
        对 `run` 中的单个任务执行状态转移，并记录相应的元数据。
        """
        with self._lock:
            self._ensure_mutable(run)
            ti = run.task_instances[task_id]
            self._state_machine(run).transition(ti, new_status)

            now = utcnow()
            if new_status == TaskStatus.RUNNING:
                ti.try_number += 1
                ti.start_date = now
                ti.end_date = None
                ti.next_retry_at = None
                ti.error = None
            elif new_status == TaskStatus.RETRYING:
                ti.end_date = now
                ti.next_retry_at = next_retry_at
                ti.error = error
            elif new_status.is_terminal:
                ti.end_date = now
                if output is not None:
                    ti.output = output
                if error is not None:
                    ti.error = error

            self.finalize_if_complete(run)
            return ti

    def skip_tasks(self, run: DagRun, task_ids: list[str], reason: str = "") -> list[str]:
        """
        Move every non-terminal task in `task_ids` to SKIPPED.
        将 `task_ids` 中所有非终态任务标记为 SKIPPED，返回实际被跳过的任务。
        """
        skipped: list[str] = []
        with self._lock:
            for tid in task_ids:
                if run.is_finished:
                    break
                ti = run.task_instances[tid]
                if ti.status.is_terminal:
                    continue
                self.set_status(run, tid, TaskStatus.SKIPPED, error=reason or None)
                skipped.append(tid)
        if skipped:
            logger.info("[Tracker] %s: skipped %s (%s)", run.run_id, ", ".join(skipped), reason or "no reason")
        return skipped

    def cancel(self, run: DagRun) -> list[str]:
        """
        Cancel a run: every non-terminal task becomes SKIPPED and the run is
        marked CANCELLED. No-op on a finished run.

        取消 Run：所有非终态任务变为 SKIPPED，Run 标记为 CANCELLED。
        对已结束的 Run 不做任何事。
        """
        with self._lock:
            if run.is_finished:
                return []
            run.state = RunState.CANCELLED  # 先置状态，_maybe_finalize 会保留 CANCELLED
            pending = [tid for tid, ti in run.task_instances.items() if not ti.status.is_terminal]
            for tid in pending:
                self._force_skip(run, tid, "run cancelled")
            run.end_date = utcnow()
        logger.warning("[Tracker] Run cancelled: %s (%d tasks skipped)", run.run_id, len(pending))
        return pending

    def fail_run(self, run: DagRun, reason: str) -> None:
        """
        Abort a run after a scheduler-fatal error: remaining tasks are
        skipped and the run is marked FAILED.
        调度器致命错误后中止 Run：剩余任务跳过，Run 标记为 FAILED。
        """
        with self._lock:
            if run.is_finished:
                return
            run.state = RunState.FAILED
            for tid, ti in run.task_instances.items():
                if not ti.status.is_terminal:
                    self._force_skip(run, tid, reason)
            run.end_date = utcnow()
        logger.error("[Tracker] Run aborted: %s (%s)", run.run_id, reason)

    # ------------------------------------------------------------------
    # Checkpointing
    # 检查点
    # ------------------------------------------------------------------

    def save_checkpoint(self, run: DagRun) -> None:
        """
        Snapshot the run's per-task state, keeping at most MAX_CHECKPOINTS.
        快照当前 Run 的任务状态，最多保留 MAX_CHECKPOINTS 条。
        """
        with self._lock:
            run.checkpoints.append(self.snapshot(run))
            if len(run.checkpoints) > self._max_checkpoints:
                del run.checkpoints[: len(run.checkpoints) - self._max_checkpoints]

    @staticmethod
    def snapshot(run: DagRun) -> dict[str, Any]:
        return {
            "at": utcnow().isoformat(),
            "state": run.state.value,
            "tasks": {tid: ti.status.value for tid, ti in run.task_instances.items()},
        }

    # ------------------------------------------------------------------
    # Display helpers
    # 展示辅助方法
    # ------------------------------------------------------------------

    @staticmethod
    def summary(run: DagRun) -> str:
        """
        One-line summary, e.g. Run[manual__...: running | 2 success, 1 running, 1 pending]
        生成单行状态摘要。
        """
        counts: dict[str, int] = {}
        for ti in run.task_instances.values():
            counts[ti.status.value] = counts.get(ti.status.value, 0) + 1
        parts = [f"{v} {k}" for k, v in counts.items()]
        return f"Run[{run.run_id}: {run.state.value} | {', '.join(parts)}]"

    # ------------------------------------------------------------------
    # Internals
    # 内部方法
    # ------------------------------------------------------------------

    @staticmethod
    def _ensure_mutable(run: DagRun) -> None:
        if run.is_finished:
            raise RunFinalizedError(f"Run '{run.run_id}' is {run.state.value} and can no longer change")

    def _state_machine(self, run: DagRun) -> TaskStateMachine:
        if not self._listeners:
            return TaskStateMachine()

        def notify(task_id: str, old: TaskStatus, new: TaskStatus) -> None:
            for listener in list(self._listeners):
                listener(run, task_id, old, new)

        return TaskStateMachine(on_transition=notify)

    def _force_skip(self, run: DagRun, task_id: str, reason: str) -> None:
        # 取消/中止路径：绕过 _ensure_mutable，但仍走状态机
        ti = run.task_instances[task_id]
        self._state_machine(run).transition(ti, TaskStatus.SKIPPED)
        ti.end_date = utcnow()
        ti.error = reason

    def finalize_if_complete(self, run: DagRun) -> bool:
        """
        Seal the run once every task is terminal: FAILED if any task failed,
        SUCCESS otherwise. Returns whether the run is finished.
        所有任务终态后封存 Run：任一任务失败则为 FAILED，否则 SUCCESS。
        """
        with self._lock:
            if run.is_finished:
                return True
            if not run.all_terminal():
                return False
            failed = any(ti.status == TaskStatus.FAILED for ti in run.task_instances.values())
            run.state = RunState.FAILED if failed else RunState.SUCCESS
            run.end_date = utcnow()
        logger.info("[Tracker] Run finished: %s", self.summary(run))
        return True
