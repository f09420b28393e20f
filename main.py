"""
minidag - Demo CLI entry point.
minidag —— 演示命令行入口。

Builds a small ETL-style DAG and runs it through the Scheduler with a rich
console UI that displays each phase of execution: the DAG tree, dispatch
ticks, task transitions, retries, skips and the final run table.
构建一个小型 ETL 风格的 DAG，通过调度器运行，并提供 Rich 控制台 UI，
实时展示执行的每个阶段：DAG 树、派发 tick、任务状态转移、重试、跳过以及最终的运行表。

Usage:
    python main.py            # 正常运行
    python main.py --fail     # 让 transform 失败，演示下游跳过
    python main.py -v         # 调试日志
"""

from __future__ import annotations

import asyncio
import logging
import random
import sys
from datetime import timedelta
from typing import Any

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.tree import Tree

from dag.graph import TaskDAG
from dag.scheduler import Scheduler
from dag.tracker import RunStateTracker
from operators import BashOperator, EmptyOperator, PythonOperator, PythonSensor
from schema import DagRun, TaskResult

console = Console()

# Status -> Rich style mapping
# 任务状态 -> Rich 样式映射（用于树形可视化与结果表的颜色标注）
_STATUS_STYLES = {
    "pending": "dim",            # 等待中：暗色
    "ready": "yellow",           # 就绪：黄色
    "running": "bold yellow",    # 运行中：粗体黄色
    "retrying": "magenta",       # 等待重试：洋红色
    "success": "green",          # 成功：绿色
    "failed": "red",             # 失败：红色
    "skipped": "dim strike",     # 跳过：删除线
}


# ======================================================================
# Demo DAG
# 演示 DAG
# ======================================================================

def build_demo_dag(fail_transform: bool = False) -> TaskDAG:
    """
    extract ─┐
             ├─> transform ─> load ─> notify
    wait_api ┘
    """
    attempts = {"extract": 0}

    def extract() -> list[int]:
        # 第一次尝试模拟瞬时失败，演示重试
        attempts["extract"] += 1
        if attempts["extract"] == 1:
            raise ConnectionError("source temporarily unavailable")
        return [random.randint(1, 100) for _ in range(5)]

    def transform(context: dict[str, Any]) -> int:
        if fail_transform:
            raise ValueError("bad record in batch")
        return sum(context["upstream"]["extract"])

    dag = TaskDAG(
        "demo_etl",
        description="Extract numbers, sum them, print the result",
        default_args={"retries": 2, "retry_delay": timedelta(seconds=0.5)},
    )
    dag.add_task("extract", PythonOperator(extract), priority_weight=10)
    dag.add_task("wait_api", PythonSensor(lambda: True, poke_interval=0.2, timeout=5))
    dag.add_task("transform", PythonOperator(transform, provide_context=True), retries=0)
    dag.add_task("load", BashOperator('echo "loaded for $MINIDAG_RUN_ID"'))
    dag.add_task("notify", EmptyOperator())
    dag.add_edge("extract", "transform")
    dag.add_edge("wait_api", "transform")
    dag.chain("transform", "load", "notify")
    return dag


# ======================================================================
# DAG Tree Visualization
# DAG 树形可视化
# ======================================================================

def _build_dag_tree(dag: TaskDAG, run: DagRun | None = None) -> Tree:
    """
    Build a Rich Tree rooted at the DAG, one branch per root task, children
    following downstream edges.
    构建以 DAG 为根的 Rich Tree：每个根任务一个分支，子节点沿下游边展开。
    """
    tree = Tree(f"[bold]{dag.dag_id}[/bold] [dim]{dag.description}[/dim]")

    def label(task_id: str) -> str:
        if run is None:
            return f"[cyan]{task_id}[/cyan]"
        status = run.task_instances[task_id].status.value
        style = _STATUS_STYLES.get(status, "white")
        return f"[cyan]{task_id}[/cyan] [{style}]({status})[/{style}]"

    def add(branch: Tree, task_id: str, seen: set[str]) -> None:
        node = branch.add(label(task_id))
        if task_id in seen:
            return  # 汇合节点只展开一次
        seen.add(task_id)
        for child in dag.get_downstream_ids(task_id):
            add(node, child, seen)

    seen: set[str] = set()
    for root in dag.roots:
        add(tree, root, seen)
    return tree


def _build_run_table(run: DagRun) -> Table:
    table = Table(title=f"Run {run.run_id}", border_style="cyan", show_lines=True)
    table.add_column("Task", style="cyan")
    table.add_column("Status", width=10)
    table.add_column("Tries", width=6)
    table.add_column("Duration", width=10)
    table.add_column("Output / Error", style="white")
    for tid, ti in run.task_instances.items():
        style = _STATUS_STYLES.get(ti.status.value, "white")
        duration = f"{ti.duration:.2f}s" if ti.duration is not None else "-"
        detail = ti.error if ti.error else repr(ti.output)
        table.add_row(tid, f"[{style}]{ti.status.value}[/{style}]", str(ti.try_number), duration, detail[:120])
    return table


# ======================================================================
# UI Event Handler - Pretty-prints scheduler events
# UI 事件处理器 —— 美化打印调度器事件
# ======================================================================

def on_event(event: str, data: Any) -> None:
    """
    Handle events from the Scheduler and display them.
    处理来自 Scheduler 的事件并在控制台展示。
    """

    if event == "run_started":
        dag: TaskDAG = data["dag"]
        run: DagRun = data["run"]
        console.print()
        console.print(Panel(
            _build_dag_tree(dag),
            title=f"[bold blue]Run started: {run.run_id}[/bold blue]",
            border_style="blue",
        ))

    elif event == "tick":
        if data["dispatched"]:
            console.print(
                f"\n  [bold yellow]--- Tick {data['tick']} ---[/bold yellow] "
                f"dispatched [cyan]{', '.join(data['dispatched'])}[/cyan] "
                f"({data['in_flight']} in flight)"
            )

    elif event == "task_running":
        console.print(f"    [yellow]>> {data['task_id']}[/yellow] (try {data['try_number']})")

    elif event == "task_success":
        result: TaskResult = data["result"]
        console.print(f"    [green]<< {data['task_id']} succeeded[/green] [dim]{result.duration:.2f}s[/dim]")

    elif event == "task_retry":
        result: TaskResult = data["result"]
        console.print(
            f"    [magenta]<< {data['task_id']} will retry[/magenta] "
            f"[dim]({result.error}; next at {data['next_retry_at']:%X})[/dim]"
        )

    elif event == "task_failed":
        result: TaskResult = data["result"]
        console.print(f"    [red]<< {data['task_id']} FAILED.[/red]")
        console.print(Panel(result.error or "", title=f"{data['task_id']} Error", border_style="red"))

    elif event == "task_skipped":
        console.print(f"    [dim]-- {data['task_id']} skipped ({data.get('reason')})[/dim]")

    elif event == "task_transition":
        pass  # 状态转移已由 task_running/success/failed 事件隐式展示，此处静默

    elif event == "run_finished":
        run: DagRun = data["run"]
        style = "green" if run.state.value == "success" else "red"
        console.print()
        if "dag" in data:
            console.print(_build_dag_tree(data["dag"], run))
        console.print(_build_run_table(run))
        console.print(Panel(
            f"State: [{style}]{run.state.value.upper()}[/{style}]"
            + (f"\n\n{data['error']}" if data.get("error") else ""),
            title="[bold]Run finished[/bold]",
            border_style=style,
        ))


# ======================================================================
# Main
# 主函数
# ======================================================================

def setup_logging(verbose: bool = False) -> None:
    """
    Configure logging with rich handler.
    使用 Rich 处理器配置日志系统。
    verbose=True 时启用 DEBUG 级别，显示调度循环的内部调试信息。
    """
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False, rich_tracebacks=True)],
    )
    logging.getLogger("asyncio").setLevel(logging.WARNING)


async def run_demo(fail_transform: bool = False) -> DagRun:
    dag = build_demo_dag(fail_transform)
    scheduler = Scheduler(tracker=RunStateTracker(), on_event=on_event, heartbeat=0.2)
    return await scheduler.trigger(dag)


def main() -> None:
    """
    程序入口：解析命令行参数。
    - --fail：让 transform 失败，演示上游失败时的下游跳过
    - -v / --verbose：启用调试日志
    """
    verbose = "--verbose" in sys.argv or "-v" in sys.argv
    setup_logging(verbose)
    run = asyncio.run(run_demo(fail_transform="--fail" in sys.argv))
    sys.exit(0 if run.state.value == "success" else 1)


if __name__ == "__main__":
    main()
