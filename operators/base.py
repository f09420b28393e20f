"""
Base Operator - Abstract interface for every executable unit.
BaseOperator —— 所有可执行单元的抽象接口。

An operator is where a task's side effects live (a function call, a
process spawn, a poll loop). The executor only ever calls `execute()`, so
it stays agnostic of what actually runs.

算子承载任务的副作用（函数调用、进程启动、轮询等待）。
执行器只调用 `execute()`，因此不关心实际运行的是什么。

The context passed to `execute()` holds:
传入 `execute()` 的上下文包含：
  - dag_id, run_id, task_id
  - logical_date:  the run's schedule point / 本次运行的逻辑调度时间
  - try_number:    1 for the first attempt / 第几次尝试，从 1 开始
  - upstream:      {upstream_task_id: output} of successful upstream tasks
  - params:        Task.params
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class BaseOperator(ABC):
    """
    Abstract base class for all operators.
    所有算子的抽象基类。
    """

    @property
    def name(self) -> str:
        """Short type name used in logs. 日志中使用的类型名。"""
        return type(self).__name__

    @abstractmethod
    async def execute(self, context: dict[str, Any]) -> Any:
        """
        Run the unit of work and return its output (may be None).
        执行工作单元并返回输出（可为 None），输出会写入 TaskInstance.output 供下游读取。

        Raise TaskExecutionError (or any exception) to fail the attempt,
        FatalTaskError to fail without retry, TaskSkipped to skip the task.
        抛出 TaskExecutionError（或任意异常）表示本次尝试失败；
        FatalTaskError 表示失败且不重试；TaskSkipped 表示跳过任务。
        """

    def __repr__(self) -> str:
        return f"<{self.name}>"


class EmptyOperator(BaseOperator):
    """Does nothing. Useful as a join or fan-out point. 空算子，常用作汇聚/分发节点。"""

    async def execute(self, context: dict[str, Any]) -> Any:
        return None
