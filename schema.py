"""
Pydantic data models for minidag.
Defines the core data structures shared by the graph, tracker, scheduler
and executors.
minidag 的 Pydantic 数据模型。
定义了贯穿 graph、tracker、scheduler、executor 各层的核心数据结构。

Layering:
  - Task / TaskEdge:        static definition, owned by TaskDAG
  - TaskInstance / DagRun:  per-run mutable state, owned by RunStateTracker
  - TaskResult:             what an executor reports for one attempt

分层：
  - Task / TaskEdge：         静态定义，归 TaskDAG 所有
  - TaskInstance / DagRun：   每次运行的可变状态，归 RunStateTracker 所有
  - TaskResult：              执行器对单次尝试的汇报
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

import config


def utcnow() -> datetime:
    """Timezone-aware current time. 带时区的当前 UTC 时间。"""
    return datetime.now(timezone.utc)


def as_utc(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC; aware ones are converted to UTC. naive 时间一律视为 UTC。"""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


# ======================================================================
# Status enums
# 状态枚举
# ======================================================================

class TaskStatus(str, Enum):
    """
    Task lifecycle states, managed by TaskStateMachine.
    任务生命周期状态，由 TaskStateMachine 强制管理合法转移。

    Transition graph:
    转移图：
        PENDING -> READY -> RUNNING -> SUCCESS
                                    -> FAILED
                                    -> RETRYING -> RUNNING
        Any non-terminal state     -> SKIPPED
        任意非终态                  -> SKIPPED（上游失败或运行被取消）
    """
    PENDING = "pending"     # 等待上游完成
    READY = "ready"         # 上游全部成功，等待派发
    RUNNING = "running"     # 正在执行
    SUCCESS = "success"     # 成功（终态）
    FAILED = "failed"       # 重试耗尽后失败（终态）
    SKIPPED = "skipped"     # 被跳过（终态）
    RETRYING = "retrying"   # 本次尝试失败，等待退避后重试

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({TaskStatus.SUCCESS, TaskStatus.FAILED, TaskStatus.SKIPPED})


class RunState(str, Enum):
    """
    Overall state of a DagRun.
    DagRun 的整体状态。
    """
    QUEUED = "queued"         # 已创建，尚未开始调度
    RUNNING = "running"       # 调度循环正在推进
    SUCCESS = "success"       # 全部任务终态且无失败
    FAILED = "failed"         # 至少一个任务失败，或调度器致命错误
    CANCELLED = "cancelled"   # 被取消

    @property
    def is_finished(self) -> bool:
        return self in (RunState.SUCCESS, RunState.FAILED, RunState.CANCELLED)


class RunType(str, Enum):
    """How a run was triggered. 运行的触发方式。"""
    SCHEDULED = "scheduled"
    MANUAL = "manual"


class TaskOutcome(str, Enum):
    """
    Outcome of a single attempt as reported by an executor.
    执行器对单次尝试结果的分类。
    """
    SUCCESS = "success"
    FAILED = "failed"     # 不再重试
    RETRY = "retry"       # 瞬时失败，仍有重试机会
    SKIPPED = "skipped"   # 算子主动要求跳过（如 soft_fail 的传感器）


# ======================================================================
# Graph definition
# 图定义
# ======================================================================

class Task(BaseModel):
    """
    A single task in the DAG: an identifier plus its executable unit.
    DAG 中的单个任务：唯一 ID + 可执行单元（算子）。

    The operator carries the side effects; the task only carries the
    scheduling metadata (retry policy, timeout, priority). Per-run status
    lives on TaskInstance, not here.
    算子负责副作用；Task 只携带调度元数据（重试策略、超时、优先级）。
    每次运行的状态保存在 TaskInstance 上，而不是这里。
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    task_id: str = Field(description="Unique within a DAG, e.g. 'extract'")
    operator: Any = Field(default=None, exclude=True, description="Executable unit (BaseOperator)")
    description: str = ""
    retries: int = Field(default_factory=lambda: config.DEFAULT_RETRIES, ge=0)
    retry_delay: timedelta = Field(default_factory=lambda: timedelta(seconds=config.DEFAULT_RETRY_DELAY))
    retry_exponential_backoff: bool = Field(default_factory=lambda: config.RETRY_EXPONENTIAL_BACKOFF)
    max_retry_delay: timedelta | None = Field(default_factory=lambda: timedelta(seconds=config.MAX_RETRY_DELAY))
    execution_timeout: float | None = Field(default=None, description="Seconds allowed for one attempt")
    priority_weight: int = 1   # 同一轮就绪任务中，权重高者先派发
    params: dict[str, Any] = Field(default_factory=dict)

    def retry_delay_for(self, try_number: int) -> timedelta:
        """
        Backoff before the next attempt, given the attempt that just failed.
        给定刚失败的尝试序号，返回下一次尝试前的退避时长。

        Exponential mode doubles the base delay per attempt:
        retry_delay * 2 ** (try_number - 1), capped by max_retry_delay.
        """
        delay = self.retry_delay
        if self.retry_exponential_backoff:
            delay = self.retry_delay * (2 ** max(try_number - 1, 0))
        if self.max_retry_delay is not None and delay > self.max_retry_delay:
            delay = self.max_retry_delay
        return delay


class TaskEdge(BaseModel):
    """
    A directed dependency edge: `target` runs only after `source` succeeded.
    有向依赖边：`target` 仅在 `source` 成功后才运行。
    """
    source: str = Field(description="Upstream task ID")
    target: str = Field(description="Downstream task ID")


# ======================================================================
# Run state
# 运行状态
# ======================================================================

class TaskInstance(BaseModel):
    """
    Per-run state of one task.
    某个任务在一次运行中的状态记录。
    """
    task_id: str
    status: TaskStatus = TaskStatus.PENDING
    try_number: int = 0                       # 已开始的尝试次数
    start_date: datetime | None = None
    end_date: datetime | None = None
    next_retry_at: datetime | None = None     # RETRYING 状态下的下一次派发时间
    output: Any = None                        # 算子返回值，供下游读取
    error: str | None = None

    @property
    def duration(self) -> float | None:
        if self.start_date is None or self.end_date is None:
            return None
        return (self.end_date - self.start_date).total_seconds()


class DagRun(BaseModel):
    """
    One execution instance of a DAG for a given logical schedule point.
    DAG 针对某个逻辑调度时间点的一次执行实例。

    Owns one TaskInstance per task. Once every task is terminal the run is
    finalized and the tracker refuses further mutation.
    每个任务对应一个 TaskInstance。所有任务进入终态后 Run 被封存，
    tracker 拒绝任何后续修改。
    """
    run_id: str
    dag_id: str
    logical_date: datetime
    run_type: RunType = RunType.MANUAL
    state: RunState = RunState.QUEUED
    task_instances: dict[str, TaskInstance] = Field(default_factory=dict)
    start_date: datetime | None = None
    end_date: datetime | None = None
    checkpoints: list[dict[str, Any]] = Field(default_factory=list, exclude=True)

    @field_validator("logical_date")
    @classmethod
    def _logical_date_utc(cls, value: datetime) -> datetime:
        # 逻辑时间参与排序和比较，统一为 aware UTC
        return as_utc(value)

    @property
    def is_finished(self) -> bool:
        return self.state.is_finished

    def all_terminal(self) -> bool:
        return all(ti.status.is_terminal for ti in self.task_instances.values())

    def statuses(self) -> dict[str, TaskStatus]:
        """task_id -> status snapshot. 任务状态快照。"""
        return {tid: ti.status for tid, ti in self.task_instances.items()}

    def upstream_outputs(self, upstream_ids: list[str]) -> dict[str, Any]:
        """
        Collect outputs of successful upstream tasks for a downstream task.
        为下游任务汇集所有成功上游任务的输出。
        """
        return {
            uid: self.task_instances[uid].output
            for uid in upstream_ids
            if uid in self.task_instances and self.task_instances[uid].status == TaskStatus.SUCCESS
        }


# ======================================================================
# Execution results
# 执行结果
# ======================================================================

class TaskResult(BaseModel):
    """
    Result of one attempt, reported by an executor back to the scheduler.
    单次尝试的结果，由执行器回报给调度器。
    """
    task_id: str
    outcome: TaskOutcome
    try_number: int = 1
    output: Any = None
    error: str | None = None
    retry_delay: timedelta | None = None   # 仅 RETRY 时有值
    duration: float = 0.0
