"""
Executors - Run one task attempt and report its outcome.
执行器 —— 运行任务的单次尝试并汇报结果。

An executor owns a bounded pool of slots. `execute()`:
  1. waits for a free slot (backpressure when the pool is saturated)
  2. calls `on_start()` so the scheduler can mark the task RUNNING
  3. runs the operator via `_run()`, the substrate-specific hook
  4. classifies the attempt into a TaskResult:
       SUCCESS / RETRY (transient, retries left) / FAILED / SKIPPED

执行器持有一个有界的槽位池。`execute()`：
  1. 等待空闲槽位（池满时形成背压）
  2. 调用 `on_start()`，让调度器把任务标记为 RUNNING
  3. 通过 `_run()`（与运行基座相关的钩子）执行算子
  4. 将本次尝试归类为 TaskResult：
       SUCCESS / RETRY（瞬时失败，仍有重试次数）/ FAILED / SKIPPED

The executor never touches run state itself; the scheduler applies the
reported result through the RunStateTracker.
执行器从不直接修改运行状态，由调度器通过 RunStateTracker 应用结果。
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable

import config
from dag.errors import FatalTaskError, TaskExecutionError, TaskSkipped
from schema import Task, TaskOutcome, TaskResult

logger = logging.getLogger(__name__)


class BaseExecutor(ABC):
    """
    Substrate-agnostic executor: slot accounting, timeout and retry
    classification live here; `_run()` decides where the work happens.

    与运行基座无关的执行器：槽位管理、超时、重试分类都在这里；
    `_run()` 决定工作在哪里运行（本地协程/线程、子进程或远程派发）。
    """

    def __init__(self, parallelism: int | None = None):
        self.parallelism = parallelism if parallelism is not None else config.EXECUTOR_PARALLELISM
        if self.parallelism < 1:
            raise ValueError("parallelism must be >= 1")
        self._slots = asyncio.Semaphore(self.parallelism)
        self._running = 0

    @property
    def running(self) -> int:
        """Attempts currently holding a slot. 当前占用槽位的尝试数。"""
        return self._running

    @property
    def open_slots(self) -> int:
        return self.parallelism - self._running

    async def execute(
        self,
        task: Task,
        context: dict[str, Any],
        on_start: Callable[[], int | None] | None = None,
    ) -> TaskResult:
        """
        Run one attempt of `task` and return its classified result.
        执行 `task` 的一次尝试，并返回归类后的结果。

        `on_start` is invoked once a slot is held; it returns the attempt's
        try_number (it is where the scheduler flips the task to RUNNING).
        `on_start` 在拿到槽位后调用，返回本次尝试的 try_number
        （调度器在此把任务置为 RUNNING）。
        """
        async with self._slots:
            self._running += 1
            try:
                try_number = on_start() if on_start else None
                if try_number is None:
                    try_number = context.get("try_number", 1)
                context = {**context, "try_number": try_number}
                return await self._attempt(task, context, try_number)
            finally:
                self._running -= 1

    async def _attempt(self, task: Task, context: dict[str, Any], try_number: int) -> TaskResult:
        started = time.monotonic()
        try:
            if task.execution_timeout is not None:
                output = await asyncio.wait_for(self._run(task, context), timeout=task.execution_timeout)
            else:
                output = await self._run(task, context)
        except asyncio.CancelledError:
            logger.info("[Executor] %s: attempt %d cancelled", task.task_id, try_number)
            raise
        except TaskSkipped as exc:
            logger.info("[Executor] %s: skipped (%s)", task.task_id, exc)
            return TaskResult(
                task_id=task.task_id, outcome=TaskOutcome.SKIPPED, try_number=try_number,
                error=str(exc) or None, duration=time.monotonic() - started,
            )
        except asyncio.TimeoutError as exc:
            if task.execution_timeout is not None:
                exc = TaskExecutionError(f"Execution timed out after {task.execution_timeout}s")
            return self._failure(task, try_number, started, exc)
        except Exception as exc:
            return self._failure(task, try_number, started, exc)

        duration = time.monotonic() - started
        logger.info("[Executor] %s: attempt %d succeeded in %.2fs", task.task_id, try_number, duration)
        return TaskResult(
            task_id=task.task_id, outcome=TaskOutcome.SUCCESS, try_number=try_number,
            output=output, duration=duration,
        )

    @staticmethod
    def _failure(task: Task, try_number: int, started: float, exc: BaseException) -> TaskResult:
        """
        Classify a failed attempt: RETRY while retries remain, FAILED otherwise.
        对失败的尝试归类：仍有重试次数则 RETRY，否则 FAILED。
        """
        duration = time.monotonic() - started
        error = f"{type(exc).__name__}: {exc}"
        retryable = not isinstance(exc, FatalTaskError) and try_number <= task.retries

        if retryable:
            delay = task.retry_delay_for(try_number)
            logger.warning(
                "[Executor] %s: attempt %d/%d failed (%s), retrying in %.1fs",
                task.task_id, try_number, task.retries + 1, error, delay.total_seconds(),
            )
            return TaskResult(
                task_id=task.task_id, outcome=TaskOutcome.RETRY, try_number=try_number,
                error=error, retry_delay=delay, duration=duration,
            )

        if isinstance(exc, TaskExecutionError):
            logger.error("[Executor] %s: attempt %d failed: %s", task.task_id, try_number, error)
        else:
            # 非预期异常：保留堆栈便于排查
            logger.error("[Executor] %s: attempt %d raised %s", task.task_id, try_number, error, exc_info=exc)
        return TaskResult(
            task_id=task.task_id, outcome=TaskOutcome.FAILED, try_number=try_number,
            error=error, duration=duration,
        )

    @abstractmethod
    async def _run(self, task: Task, context: dict[str, Any]) -> Any:
        """
        Actually run the task's operator and return its output.
        实际运行任务的算子并返回输出。
        """


class LocalExecutor(BaseExecutor):
    """
    Runs operators on the current event loop. Blocking work is pushed to
    threads or subprocesses by the operators themselves.
    在当前事件循环中运行算子；阻塞型工作由算子自行放入线程或子进程。
    """

    async def _run(self, task: Task, context: dict[str, Any]) -> Any:
        if task.operator is None:
            raise FatalTaskError(f"Task '{task.task_id}' has no operator")
        return await task.operator.execute(context)


class SequentialExecutor(LocalExecutor):
    """A LocalExecutor with a single slot: one attempt at a time. 单槽位执行器，一次只跑一个尝试。"""

    def __init__(self):
        super().__init__(parallelism=1)
