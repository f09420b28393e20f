"""
Scheduler - Drives a DagRun to completion with a single coordinating loop.
调度器 —— 以单一协调循环将 DagRun 推进到完成。

Each iteration of the loop is one "tick":
  1. Promote PENDING tasks whose upstreams all succeeded to READY
  2. Skip PENDING tasks with a FAILED or SKIPPED upstream (policy: skip)
  3. Dispatch READY tasks, and RETRYING tasks whose backoff elapsed, to
     the executor, keeping at most `max_active_tasks` in flight
  4. Wait for the first attempt to finish (or a retry to come due)
  5. Apply its result through the tracker, checkpoint, repeat

while 循环的每次迭代就是一个「tick」：
  1. 将上游全部成功的 PENDING 任务提升为 READY
  2. 跳过存在 FAILED / SKIPPED 上游的 PENDING 任务（策略：skip）
  3. 将 READY 任务以及退避期已过的 RETRYING 任务派发给执行器，
     同时在途任务数不超过 `max_active_tasks`
  4. 等待第一个尝试结束（或某个重试到期）
  5. 通过 tracker 应用结果，保存检查点，进入下一轮

The loop ends once every task is terminal (the tracker seals the run).
所有任务进入终态后循环结束（由 tracker 封存 Run）。

Ordering guarantee: a task is dispatched only when all of its upstream
tasks are SUCCESS. Cancellation skips every non-terminal task, cancels
in-flight attempts and stops dispatch.
顺序保证：只有当所有上游任务均为 SUCCESS 时任务才会被派发。
取消会跳过所有非终态任务、取消在途尝试并停止派发。
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable

import config
from dag.errors import DefinitionError, SchedulerFatalError
from dag.executor import BaseExecutor, LocalExecutor
from dag.graph import TaskDAG
from dag.timetable import due_logical_dates
from dag.tracker import RunStateTracker
from schema import DagRun, RunType, TaskOutcome, TaskResult, TaskStatus, utcnow

logger = logging.getLogger(__name__)

# What happens to a task whose upstream FAILED or was SKIPPED: it is skipped
# together with its whole downstream subtree, and never dispatched.
# 上游 FAILED 或 SKIPPED 的任务如何处理：连同整个下游子树一起跳过，永不派发。
UPSTREAM_FAILURE_POLICY = "skip"


class Scheduler:
    """
    Coordinates DagRuns: readiness, dispatch, retries, cancellation.
    协调 DagRun 的执行：就绪检测、派发、重试、取消。

    One Scheduler can drive several runs concurrently (one `run()` coroutine
    per DagRun); they share the executor's slot pool, which applies
    backpressure when saturated.
    一个 Scheduler 可以并发推进多个 Run（每个 DagRun 一个 `run()` 协程），
    它们共享执行器的槽位池，池满时形成背压。
    """

    def __init__(
        self,
        tracker: RunStateTracker | None = None,
        executor: BaseExecutor | None = None,
        max_active_tasks: int | None = None,
        heartbeat: float | None = None,
        on_event: Callable[[str, Any], None] | None = None,
    ):
        self.tracker = tracker or RunStateTracker()
        self.executor = executor or LocalExecutor()
        self._max_active_tasks = max_active_tasks if max_active_tasks is not None else config.MAX_ACTIVE_TASKS
        if self._max_active_tasks < 1:
            raise ValueError("max_active_tasks must be >= 1")
        self._heartbeat = heartbeat if heartbeat is not None else config.SCHEDULER_HEARTBEAT
        self._emit = on_event or (lambda *_: None)  # 事件回调（用于 UI 实时更新）
        # (dag_id, run_id) -> {in-flight asyncio task -> task_id}
        # 只在有 run() 进行时才挂载 tracker 监听器
        self._in_flight: dict[tuple[str, str], dict[asyncio.Task, str]] = {}

    # ------------------------------------------------------------------
    # Triggering
    # 触发
    # ------------------------------------------------------------------

    async def trigger(
        self,
        dag: TaskDAG,
        logical_date: datetime | None = None,
        run_id: str | None = None,
        run_type: RunType = RunType.MANUAL,
    ) -> DagRun:
        """
        Create a run for `dag` and drive it to completion.
        为 `dag` 创建一个 Run 并推进到完成。
        """
        run = self.tracker.create_run(dag, logical_date=logical_date, run_type=run_type, run_id=run_id)
        return await self.run(dag, run)

    async def run_due(self, dag: TaskDAG, now: datetime | None = None) -> list[DagRun]:
        """
        Create and run a scheduled run for every due schedule point that has
        no run yet, oldest first. Honors `dag.catchup`.
        为每个尚无 Run 的到期调度点创建并运行调度 Run（从最早的开始），遵循 `dag.catchup`。
        """
        now = now or utcnow()
        existing = {r.logical_date for r in self.tracker.list_runs(dag.dag_id)}
        runs: list[DagRun] = []
        for logical_date in due_logical_dates(dag, now, existing):
            run = self.tracker.create_run(dag, logical_date=logical_date, run_type=RunType.SCHEDULED)
            runs.append(await self.run(dag, run))
        return runs

    # ------------------------------------------------------------------
    # Main loop
    # 主调度循环
    # ------------------------------------------------------------------

    async def run(self, dag: TaskDAG, run: DagRun) -> DagRun:
        """
        Drive `run` until every task is terminal and return it.
        推进 `run` 直到所有任务进入终态，然后返回。

        Calling this on a finished run is a no-op: nothing is dispatched and
        the final statuses are returned unchanged.
        对已结束的 Run 调用是空操作：不会派发任何任务，最终状态原样返回。
        """
        if run.is_finished:
            logger.info("[Scheduler] %s is already %s, nothing to do", run.run_id, run.state.value)
            return run
        self._validate(dag, run)

        self.tracker.start_run(run)
        self._emit("run_started", {"dag": dag, "run": run})
        logger.info("[Scheduler] Starting %s for %s", run.run_id, dag.summary())

        order = {tid: i for i, tid in enumerate(dag.topological_sort())}
        limit = dag.max_active_tasks if dag.max_active_tasks is not None else self._max_active_tasks
        in_flight: dict[asyncio.Task, str] = {}
        self._attach(run, in_flight)
        tick = 0

        try:
            self.tracker.finalize_if_complete(run)  # 空 DAG 直接结束
            while not run.is_finished:
                tick += 1
                self._tick(dag, run, order)
                if run.is_finished:
                    break

                dispatched = self._dispatch(dag, run, order, in_flight, limit)
                self._emit("tick", {"tick": tick, "dispatched": dispatched, "in_flight": len(in_flight)})

                if not in_flight:
                    wait = self._seconds_until_next_retry(run, set())
                    if wait is None:
                        raise SchedulerFatalError(
                            f"Run {run.run_id} stalled with nothing runnable: {self.tracker.summary(run)}"
                        )
                    await asyncio.sleep(wait)
                    continue

                done, _ = await asyncio.wait(
                    in_flight,
                    timeout=self._wait_timeout(run, in_flight, limit),
                    return_when=asyncio.FIRST_COMPLETED,
                )
                for fut in done:
                    task_id = in_flight.pop(fut)
                    self._collect(dag, run, task_id, fut)

                self.tracker.save_checkpoint(run)
                logger.debug("[Scheduler] Tick %d done. %s", tick, self.tracker.summary(run))
        except SchedulerFatalError as exc:
            logger.error("[Scheduler] Fatal error in %s: %s", run.run_id, exc)
            self.tracker.fail_run(run, str(exc))
            self._emit("run_finished", {"dag": dag, "run": run, "error": str(exc)})
            raise
        except asyncio.CancelledError:
            # 调用方取消了 run() 协程：视为取消整个 Run
            self.tracker.cancel(run)
            raise
        finally:
            await self._drain(in_flight)
            self._detach(run)

        self.tracker.save_checkpoint(run)
        logger.info("[Scheduler] Finished %s", self.tracker.summary(run))
        self._emit("run_finished", {"dag": dag, "run": run})
        return run

    def cancel(self, run: DagRun) -> list[str]:
        """
        Cancel a run: skip every non-terminal task, cancel in-flight attempts
        and stop further dispatch. Returns the skipped task ids.
        取消 Run：跳过所有非终态任务，取消在途尝试并停止继续派发。返回被跳过的任务 ID。
        """
        skipped = self.tracker.cancel(run)
        for fut in list(self._in_flight.get((run.dag_id, run.run_id), {})):
            fut.cancel()
        return skipped

    # ------------------------------------------------------------------
    # Tick: readiness and upstream-failure propagation
    # Tick：就绪检测与上游失败传播
    # ------------------------------------------------------------------

    def _tick(self, dag: TaskDAG, run: DagRun, order: dict[str, int]) -> None:
        """
        Walk tasks in topological order so a skip propagates through a whole
        chain within a single tick.
        按拓扑顺序遍历任务，使跳过能在一个 tick 内沿整条链传播。
        """
        for task_id in sorted(order, key=order.__getitem__):
            if run.is_finished:
                return
            ti = run.task_instances[task_id]
            if ti.status != TaskStatus.PENDING:
                continue
            upstream = [run.task_instances[u].status for u in dag.get_upstream_ids(task_id)]
            if any(s in (TaskStatus.FAILED, TaskStatus.SKIPPED) for s in upstream):
                self.tracker.set_status(run, task_id, TaskStatus.SKIPPED, error="upstream failed or skipped")
            elif all(s == TaskStatus.SUCCESS for s in upstream):
                self.tracker.set_status(run, task_id, TaskStatus.READY)

    def _skip_downstream(self, dag: TaskDAG, run: DagRun, task_id: str) -> None:
        """
        Mark the whole downstream subtree of `task_id` as SKIPPED.
        将 `task_id` 的整个下游子树标记为 SKIPPED。
        """
        self.tracker.skip_tasks(run, dag.get_downstream(task_id), reason=f"upstream {task_id} did not succeed")

    # ------------------------------------------------------------------
    # Dispatch
    # 派发
    # ------------------------------------------------------------------

    def _dispatch(
        self,
        dag: TaskDAG,
        run: DagRun,
        order: dict[str, int],
        in_flight: dict[asyncio.Task, str],
        limit: int,
    ) -> list[str]:
        """
        Hand dispatchable tasks to the executor, highest priority_weight first,
        then topological order, without exceeding `limit` in flight.
        将可派发任务交给执行器：priority_weight 高者优先，其次按拓扑顺序，
        且在途任务数不超过 `limit`。
        """
        free = limit - len(in_flight)
        if free <= 0:
            return []

        queued = set(in_flight.values())
        now = utcnow()
        candidates = [
            tid for tid, ti in run.task_instances.items()
            if tid not in queued and (
                ti.status == TaskStatus.READY
                or (ti.status == TaskStatus.RETRYING and (ti.next_retry_at is None or ti.next_retry_at <= now))
            )
        ]
        candidates.sort(key=lambda tid: (-dag.tasks[tid].priority_weight, order[tid]))

        dispatched = candidates[:free]
        for task_id in dispatched:
            fut = asyncio.create_task(self._execute(dag, run, task_id), name=f"{run.run_id}:{task_id}")
            in_flight[fut] = task_id
            self._emit("task_queued", {"run": run, "task_id": task_id})
            logger.debug("[Scheduler] %s: queued %s", run.run_id, task_id)
        return dispatched

    async def _execute(self, dag: TaskDAG, run: DagRun, task_id: str) -> TaskResult:
        task = dag.tasks[task_id]
        ti = run.task_instances[task_id]
        context = {
            "dag_id": dag.dag_id,
            "run_id": run.run_id,
            "task_id": task_id,
            "logical_date": run.logical_date,
            "try_number": ti.try_number + 1,
            "upstream": run.upstream_outputs(dag.get_upstream_ids(task_id)),
            "params": dict(task.params),
        }

        def on_start() -> int:
            # 执行器拿到槽位后才真正进入 RUNNING
            started = self.tracker.set_status(run, task_id, TaskStatus.RUNNING)
            self._emit("task_running", {"run": run, "task_id": task_id, "try_number": started.try_number})
            return started.try_number

        return await self.executor.execute(task, context, on_start=on_start)

    # ------------------------------------------------------------------
    # Result handling
    # 结果处理
    # ------------------------------------------------------------------

    def _collect(self, dag: TaskDAG, run: DagRun, task_id: str, fut: asyncio.Task) -> None:
        """
        Apply one finished attempt to the run.
        将一个已结束的尝试应用到 Run 上。
        """
        if fut.cancelled():
            return
        exc = fut.exception()
        if exc is not None:
            if run.is_finished:
                return
            if isinstance(exc, SchedulerFatalError):
                raise exc
            raise SchedulerFatalError(f"Executor crashed while running {task_id}: {exc!r}") from exc

        result: TaskResult = fut.result()
        ti = run.task_instances[task_id]
        if run.is_finished or ti.status != TaskStatus.RUNNING:
            # 取消后才到达的结果直接丢弃
            logger.info("[Scheduler] %s: discarding late result for %s (%s)", run.run_id, task_id, ti.status.value)
            return

        if result.outcome == TaskOutcome.SUCCESS:
            self.tracker.set_status(run, task_id, TaskStatus.SUCCESS, output=result.output)
            self._emit("task_success", {"run": run, "task_id": task_id, "result": result})

        elif result.outcome == TaskOutcome.RETRY:
            next_at = utcnow() + result.retry_delay if result.retry_delay is not None else utcnow()
            self.tracker.set_status(run, task_id, TaskStatus.RETRYING, error=result.error, next_retry_at=next_at)
            self._emit("task_retry", {"run": run, "task_id": task_id, "result": result, "next_retry_at": next_at})

        elif result.outcome == TaskOutcome.SKIPPED:
            self.tracker.set_status(run, task_id, TaskStatus.SKIPPED, error=result.error)
            self._emit("task_skipped", {"run": run, "task_id": task_id, "reason": result.error})
            self._skip_downstream(dag, run, task_id)

        else:
            self.tracker.set_status(run, task_id, TaskStatus.FAILED, error=result.error)
            self._emit("task_failed", {"run": run, "task_id": task_id, "result": result})
            self._skip_downstream(dag, run, task_id)

    # ------------------------------------------------------------------
    # Helpers
    # 辅助方法
    # ------------------------------------------------------------------

    @staticmethod
    def _validate(dag: TaskDAG, run: DagRun) -> None:
        if run.dag_id != dag.dag_id:
            raise DefinitionError(f"Run '{run.run_id}' belongs to DAG '{run.dag_id}', not '{dag.dag_id}'")
        if set(run.task_instances) != set(dag.tasks):
            raise DefinitionError(f"Run '{run.run_id}' does not match the tasks of DAG '{dag.dag_id}'")

    @staticmethod
    def _seconds_until_next_retry(run: DagRun, queued: set[str]) -> float | None:
        """Seconds until the earliest RETRYING task not yet queued is due, or None if there is none."""
        due = [
            ti.next_retry_at for tid, ti in run.task_instances.items()
            if ti.status == TaskStatus.RETRYING and tid not in queued
        ]
        if not due:
            return None
        now = utcnow()
        earliest = min((d for d in due if d is not None), default=now)
        return max((earliest - now).total_seconds(), 0.0)

    def _wait_timeout(self, run: DagRun, in_flight: dict[asyncio.Task, str], limit: int) -> float | None:
        # 有重试在等待且仍有空位时，不能睡过它的到期时间
        retry_wait = None
        if len(in_flight) < limit:
            retry_wait = self._seconds_until_next_retry(run, set(in_flight.values()))
        timeouts = [t for t in (retry_wait, self._heartbeat or None) if t is not None]
        return min(timeouts) if timeouts else None

    @staticmethod
    async def _drain(in_flight: dict[asyncio.Task, str]) -> None:
        for fut in in_flight:
            fut.cancel()
        if in_flight:
            await asyncio.gather(*in_flight, return_exceptions=True)
        in_flight.clear()

    # ------------------------------------------------------------------
    # Tracker listener lifetime
    # tracker 监听器的生命周期
    # ------------------------------------------------------------------

    def _attach(self, run: DagRun, in_flight: dict[asyncio.Task, str]) -> None:
        """
        Track a run as active; the first active run registers the listener.
        登记活跃 Run；第一个活跃 Run 负责注册监听器。
        """
        if not self._in_flight:
            self.tracker.add_listener(self._on_task_transition)
        self._in_flight[(run.dag_id, run.run_id)] = in_flight

    def _detach(self, run: DagRun) -> None:
        self._in_flight.pop((run.dag_id, run.run_id), None)
        if not self._in_flight:
            self.tracker.remove_listener(self._on_task_transition)

    def _on_task_transition(self, run: DagRun, task_id: str, old: TaskStatus, new: TaskStatus) -> None:
        """
        Callback from the tracker's state machine, forwarded as a UI event.
        Transitions of runs this scheduler is not driving are ignored.
        tracker 状态机的转移回调，转发为 UI 事件；非本调度器推进的 Run 忽略。
        """
        if (run.dag_id, run.run_id) not in self._in_flight:
            return
        self._emit("task_transition", {
            "run_id": run.run_id,
            "task_id": task_id,
            "from": old.value,
            "to": new.value,
        })
        if new == TaskStatus.SKIPPED and old != TaskStatus.RUNNING:
            self._emit("task_skipped", {"run": run, "task_id": task_id, "reason": "upstream or cancel"})
