"""
TaskDAG - Directed Acyclic Graph of tasks.
TaskDAG —— 任务的有向无环图。

The TaskDAG holds:
  - tasks: dict of Task (id -> definition + operator)
  - edges: list of TaskEdge (upstream -> downstream dependencies)
  - schedule metadata: schedule_interval, start_date, catchup

TaskDAG 包含：
  - tasks:  Task 字典（ID -> 定义 + 算子）
  - edges:  TaskEdge 列表（上游 -> 下游依赖）
  - 调度元数据：schedule_interval、start_date、catchup

Two invariants are enforced on every mutation, not just at run time:
  - every edge references existing tasks (else UnknownTaskError)
  - the graph stays acyclic (else CycleError, graph left unchanged)

每次变更都会强制两个不变量，而不是等到运行时才检查：
  - 每条边的端点都必须存在（否则 UnknownTaskError）
  - 图始终无环（否则 CycleError，且图保持不变）

Key operations:
  - add_task() / add_edge() / chain(): build the graph
  - topological_sort(): Kahn's algorithm, stable by insertion order
  - get_downstream(): transitive downstream set, used to skip subtrees

核心操作：
  - add_task() / add_edge() / chain()：构建图
  - topological_sort()：Kahn 算法，按插入顺序保持稳定
  - get_downstream()：传递下游集合，用于级联跳过子树
"""

from __future__ import annotations

import logging
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Iterable

from dag.errors import CycleError, DuplicateTaskError, UnknownTaskError
from schema import Task, TaskEdge

logger = logging.getLogger(__name__)


class TaskDAG:
    """
    Directed Acyclic Graph of tasks plus scheduling metadata.
    任务有向无环图 + 调度元数据。

    A TaskDAG is a static definition. It never carries run state; every
    execution gets its own DagRun from the RunStateTracker, so one DAG can
    be run many times, even concurrently.

    TaskDAG 只是静态定义，不携带运行状态；每次执行都会从 RunStateTracker
    获得独立的 DagRun，因此同一个 DAG 可以被多次（甚至并发）运行。
    """

    def __init__(
        self,
        dag_id: str,
        tasks: Iterable[Task] | dict[str, Task] | None = None,
        edges: Iterable[TaskEdge] | None = None,
        description: str = "",
        schedule_interval: timedelta | None = None,
        start_date: datetime | None = None,
        catchup: bool = True,
        max_active_tasks: int | None = None,
        default_args: dict[str, Any] | None = None,
    ):
        self.dag_id = dag_id
        self.description = description
        self.schedule_interval = schedule_interval
        self.start_date = start_date
        self.catchup = catchup
        if max_active_tasks is not None and max_active_tasks < 1:
            raise ValueError("max_active_tasks must be >= 1")
        self.max_active_tasks = max_active_tasks
        self.default_args = dict(default_args or {})  # add_task(task_id, ...) 时应用的默认参数

        self.tasks: dict[str, Task] = {}
        self.edges: list[TaskEdge] = []
        # 邻接表，避免每次查询都扫描 edges
        self._upstream: dict[str, list[str]] = {}
        self._downstream: dict[str, list[str]] = {}

        if isinstance(tasks, dict):
            tasks = tasks.values()
        for task in tasks or []:
            self.add_task(task)
        for edge in edges or []:
            self.add_edge(edge.source, edge.target)

    def __repr__(self) -> str:
        return f"<TaskDAG {self.dag_id}: {len(self.tasks)} tasks, {len(self.edges)} edges>"

    def __contains__(self, task_id: str) -> bool:
        return task_id in self.tasks

    def __len__(self) -> int:
        return len(self.tasks)

    # ------------------------------------------------------------------
    # Building
    # 构建图
    # ------------------------------------------------------------------

    def add_task(self, task: Task | str, operator: Any = None, **kwargs: Any) -> Task:
        """
        Register a task. Accepts a Task, or a task_id plus operator and
        Task fields; `default_args` fill in fields not given explicitly.

        注册任务。可以传入 Task 对象，也可以传入 task_id + 算子 + Task 字段；
        未显式给出的字段由 `default_args` 补齐。
        """
        if isinstance(task, str):
            fields = {**self.default_args, **kwargs}
            task = Task(task_id=task, operator=operator, **fields)
        elif operator is not None or kwargs:
            raise TypeError("operator/kwargs are only accepted together with a task_id string")

        if task.task_id in self.tasks:
            raise DuplicateTaskError(f"Task '{task.task_id}' already exists in DAG '{self.dag_id}'")

        self.tasks[task.task_id] = task
        self._upstream[task.task_id] = []
        self._downstream[task.task_id] = []
        logger.debug("[DAG] %s: task added %s", self.dag_id, task.task_id)
        return task

    def add_edge(self, upstream_id: str, downstream_id: str) -> bool:
        """
        Add a dependency: `downstream_id` runs after `upstream_id` succeeds.
        添加依赖：`downstream_id` 在 `upstream_id` 成功后才运行。

        Returns False (no-op) if the edge already exists.
        Raises UnknownTaskError / CycleError; the graph is left unchanged.
        边已存在时返回 False（不做任何事）。
        抛出 UnknownTaskError / CycleError 时图保持不变。
        """
        for tid in (upstream_id, downstream_id):
            if tid not in self.tasks:
                raise UnknownTaskError(tid, self.dag_id)

        if downstream_id in self._downstream[upstream_id]:
            logger.debug("[DAG] Edge %s -> %s already exists, skipping", upstream_id, downstream_id)
            return False

        # 新边 u -> d 成环，当且仅当 u 已经可以从 d 到达
        path = self._find_path(downstream_id, upstream_id)
        if path is not None:
            raise CycleError(upstream_id, downstream_id, path + [downstream_id])

        self.edges.append(TaskEdge(source=upstream_id, target=downstream_id))
        self._downstream[upstream_id].append(downstream_id)
        self._upstream[downstream_id].append(upstream_id)
        return True

    def chain(self, *task_ids: str) -> None:
        """
        Add edges between consecutive task ids: chain("a", "b", "c") is a -> b -> c.
        在相邻任务之间依次连边：chain("a", "b", "c") 即 a -> b -> c。
        """
        for up, down in zip(task_ids, task_ids[1:]):
            self.add_edge(up, down)

    # ------------------------------------------------------------------
    # Queries
    # 查询
    # ------------------------------------------------------------------

    def get_task(self, task_id: str) -> Task:
        try:
            return self.tasks[task_id]
        except KeyError:
            raise UnknownTaskError(task_id, self.dag_id) from None

    def get_upstream_ids(self, task_id: str) -> list[str]:
        """Direct dependencies of `task_id`. `task_id` 的直接上游。"""
        if task_id not in self.tasks:
            raise UnknownTaskError(task_id, self.dag_id)
        return list(self._upstream[task_id])

    def get_downstream_ids(self, task_id: str) -> list[str]:
        """Direct dependents of `task_id`. `task_id` 的直接下游。"""
        if task_id not in self.tasks:
            raise UnknownTaskError(task_id, self.dag_id)
        return list(self._downstream[task_id])

    def get_downstream(self, task_id: str) -> list[str]:
        """
        Return all task IDs downstream of `task_id` via BFS.
        通过 BFS 返回 `task_id` 的所有（传递）下游任务 ID。
        用于失败时级联跳过整个子树。
        """
        if task_id not in self.tasks:
            raise UnknownTaskError(task_id, self.dag_id)
        visited: set[str] = set()
        order: list[str] = []
        queue: deque[str] = deque(self._downstream[task_id])
        while queue:
            tid = queue.popleft()
            if tid in visited:
                continue
            visited.add(tid)
            order.append(tid)
            queue.extend(self._downstream[tid])
        return order

    @property
    def roots(self) -> list[str]:
        """Tasks without upstream dependencies. 无上游依赖的任务。"""
        return [tid for tid in self.tasks if not self._upstream[tid]]

    @property
    def leaves(self) -> list[str]:
        """Tasks nothing depends on. 没有下游的任务。"""
        return [tid for tid in self.tasks if not self._downstream[tid]]

    # ------------------------------------------------------------------
    # Graph algorithms
    # 图算法
    # ------------------------------------------------------------------

    def topological_sort(self) -> list[str]:
        """
        Kahn's algorithm: returns task IDs in a valid execution order.
        Ties are broken by insertion order, so the result is deterministic.

        Kahn 算法 —— 返回任务 ID 的合法拓扑执行顺序。
        同层任务按插入顺序排列，结果是确定的。
        """
        in_degree = {tid: len(ups) for tid, ups in self._upstream.items()}
        queue = deque(tid for tid in self.tasks if in_degree[tid] == 0)
        result: list[str] = []

        while queue:
            tid = queue.popleft()
            result.append(tid)
            for child in self._downstream[tid]:
                in_degree[child] -= 1
                if in_degree[child] == 0:
                    queue.append(child)

        if len(result) != len(self.tasks):
            # add_edge 已保证无环，走到这里说明内部结构被绕过修改
            remaining = [tid for tid in self.tasks if tid not in result]
            raise CycleError(remaining[0], remaining[-1], remaining)
        return result

    def _find_path(self, start: str, goal: str) -> list[str] | None:
        """BFS path start -> ... -> goal along downstream edges, or None."""
        if start == goal:
            return [start]
        parents: dict[str, str] = {}
        queue: deque[str] = deque([start])
        seen = {start}
        while queue:
            tid = queue.popleft()
            for child in self._downstream[tid]:
                if child in seen:
                    continue
                parents[child] = tid
                if child == goal:
                    path = [goal]
                    while path[-1] != start:
                        path.append(parents[path[-1]])
                    return list(reversed(path))
                seen.add(child)
                queue.append(child)
        return None

    # ------------------------------------------------------------------
    # Serialization
    # 序列化 / 反序列化
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """
        Serialize the DAG structure (operators excluded) to a dict.
        将 DAG 结构序列化为 dict（不含算子，算子不可序列化）。
        """
        return {
            "dag_id": self.dag_id,
            "description": self.description,
            "schedule_interval": self.schedule_interval.total_seconds() if self.schedule_interval else None,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "catchup": self.catchup,
            "max_active_tasks": self.max_active_tasks,
            "tasks": {tid: t.model_dump(mode="json") for tid, t in self.tasks.items()},
            "edges": [e.model_dump() for e in self.edges],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], operators: dict[str, Any] | None = None) -> TaskDAG:
        """
        Reconstruct a TaskDAG; `operators` maps task_id -> operator to re-attach.
        从 dict 重建 TaskDAG；`operators` 提供 task_id -> 算子的映射以重新挂载。
        """
        operators = operators or {}
        tasks = [
            Task(**tdata, operator=operators.get(tid))
            for tid, tdata in data["tasks"].items()
        ]
        edges = [TaskEdge(**edata) for edata in data["edges"]]
        interval = data.get("schedule_interval")
        start = data.get("start_date")
        return cls(
            dag_id=data["dag_id"],
            tasks=tasks,
            edges=edges,
            description=data.get("description", ""),
            schedule_interval=timedelta(seconds=interval) if interval is not None else None,
            start_date=datetime.fromisoformat(start) if start else None,
            catchup=data.get("catchup", True),
            max_active_tasks=data.get("max_active_tasks"),
        )

    # ------------------------------------------------------------------
    # Display helpers
    # 展示辅助方法
    # ------------------------------------------------------------------

    def summary(self) -> str:
        """
        One-line summary for logging, e.g. DAG[etl: 4 tasks, 3 edges, roots=extract]
        生成单行摘要，用于日志输出。
        """
        return (
            f"DAG[{self.dag_id}: {len(self.tasks)} tasks, {len(self.edges)} edges, "
            f"roots={','.join(self.roots) or '-'}]"
        )
