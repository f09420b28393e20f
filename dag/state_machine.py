"""
Task State Machine - Validates and enforces task lifecycle transitions.
任务状态机 —— 校验并强制执行任务生命周期的合法状态转移。

The transition table is the single source of truth for what state changes
are legal. Any invalid transition raises InvalidTransitionError, preventing
a run from entering an inconsistent state.
转移表是合法状态变化的唯一权威来源。
任何非法转移都会抛出 InvalidTransitionError，防止 Run 进入不一致状态。

Transition graph:
转移图：
    PENDING ──> READY ──> RUNNING ──> SUCCESS          (happy path / 正常路径)
                                  ──> FAILED
                                  ──> RETRYING ──> RUNNING
    Any non-terminal ──────────────> SKIPPED           (upstream failed or cancelled / 上游失败或取消)
"""

from __future__ import annotations

import logging
from typing import Callable

from dag.errors import InvalidTransitionError
from schema import TaskInstance, TaskStatus

logger = logging.getLogger(__name__)


# The full transition table.
# 完整的状态转移表——一目了然地看清所有合法转移路径。
VALID_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.PENDING:  {TaskStatus.READY, TaskStatus.SKIPPED},
    TaskStatus.READY:    {TaskStatus.RUNNING, TaskStatus.SKIPPED},
    TaskStatus.RUNNING:  {TaskStatus.SUCCESS, TaskStatus.FAILED, TaskStatus.RETRYING, TaskStatus.SKIPPED},
    TaskStatus.RETRYING: {TaskStatus.RUNNING, TaskStatus.SKIPPED},
    # Terminal states: no further transitions allowed
    # 终态——不允许任何进一步转移
    TaskStatus.SUCCESS:  set(),
    TaskStatus.FAILED:   set(),
    TaskStatus.SKIPPED:  set(),
}


class TaskStateMachine:
    """
    Validates and applies task state transitions.
    校验并应用任务状态转移。

    Provides a single `transition()` method that:
      1. Checks the VALID_TRANSITIONS table
      2. Applies the change to the task instance
      3. Fires an optional callback for logging / UI

    提供唯一的 `transition()` 方法，该方法：
      1. 查询 VALID_TRANSITIONS 表校验合法性
      2. 将状态变更应用到任务实例
      3. 触发可选回调函数（用于日志或 UI）
    """

    def __init__(self, on_transition: Callable[[str, TaskStatus, TaskStatus], None] | None = None):
        """
        Args:
            on_transition: Optional callback(task_id, old_status, new_status).
            on_transition: 可选回调 callback(任务 ID, 旧状态, 新状态)。
        """
        self._on_transition = on_transition

    @staticmethod
    def can_transition(ti: TaskInstance, new_status: TaskStatus) -> bool:
        """
        Check whether moving `ti` to `new_status` is legal.
        检查将 `ti` 转移到 `new_status` 是否合法。
        """
        return new_status in VALID_TRANSITIONS.get(ti.status, set())

    def transition(self, ti: TaskInstance, new_status: TaskStatus) -> TaskStatus:
        """
        Apply a state transition and return the previous status.
        Raises InvalidTransitionError if illegal.

        应用状态转移并返回旧状态。若转移非法则抛出 InvalidTransitionError。
        """
        if not self.can_transition(ti, new_status):
            raise InvalidTransitionError(
                f"Task '{ti.task_id}': cannot transition from {ti.status.value} to {new_status.value}. "
                f"Valid targets: {sorted(s.value for s in VALID_TRANSITIONS.get(ti.status, set()))}"
            )

        old_status = ti.status
        ti.status = new_status

        logger.debug("[SM] %s: %s -> %s", ti.task_id, old_status.value, new_status.value)

        if self._on_transition:
            try:
                self._on_transition(ti.task_id, old_status, new_status)
            except Exception:
                # 回调异常不能影响主流程
                logger.exception("[SM] on_transition callback failed for %s", ti.task_id)
        return old_status
