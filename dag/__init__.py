"""
DAG module - Core engine for task graph orchestration.
DAG 模块 —— 任务图编排的核心引擎。

Components:
  - graph.py:         TaskDAG definition, cycle rejection, topological order
  - state_machine.py: Task lifecycle state machine
  - tracker.py:       RunStateTracker, owner of every DagRun and status change
  - executor.py:      Executors (slot pool, retries with backoff, timeouts)
  - scheduler.py:     Scheduler loop (readiness, dispatch, skip policy, cancel)
  - timetable.py:     Schedule-point arithmetic for interval-scheduled DAGs
  - errors.py:        Error taxonomy

模块组成：
  - graph.py:         TaskDAG 定义、环检测、拓扑排序
  - state_machine.py: 任务生命周期状态机（强制合法状态转移）
  - tracker.py:       运行状态追踪器，持有所有 DagRun 及状态变更
  - executor.py:      执行器（槽位池、带退避的重试、超时）
  - scheduler.py:     调度循环（就绪检测、派发、跳过策略、取消）
  - timetable.py:     按间隔调度的 DAG 的调度点计算
  - errors.py:        异常分类
"""

from dag.graph import TaskDAG                      # 任务有向无环图
from dag.state_machine import TaskStateMachine     # 任务状态机
from dag.tracker import RunStateTracker            # 运行状态追踪器
from dag.executor import BaseExecutor, LocalExecutor, SequentialExecutor  # 执行器
from dag.scheduler import Scheduler                # 调度器
from dag.errors import (
    CycleError,
    DefinitionError,
    SchedulerFatalError,
    TaskExecutionError,
    UnknownTaskError,
)
