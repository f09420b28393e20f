"""
Error taxonomy for minidag.
minidag 的异常体系。

    OrchestratorError
    ├── DefinitionError          graph-build / run-creation time, fatal to that run
    │   ├── CycleError
    │   ├── UnknownTaskError
    │   ├── DuplicateTaskError
    │   └── DuplicateRunError
    ├── TaskExecutionError       per attempt, retried up to task.retries
    │   └── FatalTaskError       ends the task immediately, no retry
    │       └── SensorTimeout
    ├── TaskSkipped              operator asks for its task to be skipped
    └── SchedulerFatalError      corrupted state, aborts the run
        ├── InvalidTransitionError
        └── RunFinalizedError
"""

from __future__ import annotations


class OrchestratorError(Exception):
    """Base class for every error raised by minidag. 所有 minidag 异常的基类。"""


# ----------------------------------------------------------------------
# Definition errors
# 定义期错误
# ----------------------------------------------------------------------

class DefinitionError(OrchestratorError):
    """The DAG or run definition is invalid. DAG 或运行定义非法。"""


class CycleError(DefinitionError):
    """Adding an edge would create a cycle. 添加该边会形成环。"""

    def __init__(self, source: str, target: str, path: list[str] | None = None):
        self.source = source
        self.target = target
        self.path = path or []
        msg = f"Edge {source} -> {target} would create a cycle"
        if self.path:
            msg += f": {' -> '.join(self.path)}"
        super().__init__(msg)


class UnknownTaskError(DefinitionError):
    """An edge or lookup references a task that does not exist."""

    def __init__(self, task_id: str, dag_id: str | None = None):
        self.task_id = task_id
        where = f" in DAG '{dag_id}'" if dag_id else ""
        super().__init__(f"Unknown task '{task_id}'{where}")


class DuplicateTaskError(DefinitionError):
    """Two tasks share the same id. 任务 ID 重复。"""


class DuplicateRunError(DefinitionError):
    """A run with the same id already exists in the tracker."""


# ----------------------------------------------------------------------
# Task execution errors
# 任务执行错误
# ----------------------------------------------------------------------

class TaskExecutionError(OrchestratorError):
    """
    A task attempt failed. Retried while the task has retries left.
    任务的某次尝试失败；若仍有重试次数则会被重试。
    """


class FatalTaskError(TaskExecutionError):
    """A task failure that must not be retried. 不可重试的任务失败。"""


class SensorTimeout(FatalTaskError):
    """A sensor's condition did not hold within its timeout."""


class TaskSkipped(OrchestratorError):
    """
    Raised by an operator to end its task as SKIPPED.
    算子抛出此异常以将所属任务标记为 SKIPPED。
    """


# ----------------------------------------------------------------------
# Scheduler errors
# 调度器错误
# ----------------------------------------------------------------------

class SchedulerFatalError(OrchestratorError):
    """
    The scheduler detected corrupted state. Aborts the run.
    调度器检测到状态损坏，中止当前 Run。
    """


class InvalidTransitionError(SchedulerFatalError):
    """An illegal task status transition was attempted. 非法状态转移。"""


class RunFinalizedError(SchedulerFatalError):
    """A finished run was mutated. 试图修改已封存的 Run。"""
