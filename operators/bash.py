"""
Bash Operator - Runs a shell command in a subprocess.
Shell 算子 —— 在子进程中运行 Shell 命令。

Executes the command with a timeout, capturing stdout and stderr. A
non-zero exit code fails the attempt; the last line of stdout becomes the
task's output.
带超时执行命令，捕获 stdout 和 stderr。非零退出码视为本次尝试失败；
stdout 的最后一行作为任务输出。
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any

import config
from dag.errors import TaskExecutionError
from operators.base import BaseOperator

logger = logging.getLogger(__name__)


class BashOperator(BaseOperator):
    """
    Run `bash_command` through the shell.
    通过 Shell 运行 `bash_command`。
    """

    def __init__(
        self,
        bash_command: str,
        env: dict[str, str] | None = None,
        cwd: str | None = None,
        timeout: float | None = None,
        append_env: bool = True,
    ):
        if not bash_command.strip():
            raise ValueError("bash_command must not be empty")
        self.bash_command = bash_command
        self.env = env
        self.cwd = cwd
        self.timeout = timeout or config.BASH_TIMEOUT
        self.append_env = append_env  # True：在当前进程环境变量基础上追加 env

    @property
    def name(self) -> str:
        return "BashOperator"

    async def execute(self, context: dict[str, Any]) -> Any:
        task_id = context.get("task_id")
        logger.info("[BashOperator] %s: running %r", task_id, self.bash_command[:120])

        proc = await asyncio.create_subprocess_shell(
            self.bash_command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=self.cwd,
            env=self._build_env(context),
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise TaskExecutionError(f"Command timed out after {self.timeout}s") from None
        except asyncio.CancelledError:
            # 运行被取消时不能留下孤儿进程
            proc.kill()
            await proc.wait()
            raise

        out = stdout.decode(errors="replace").strip()
        err = stderr.decode(errors="replace").strip()
        if err:
            logger.debug("[BashOperator] %s stderr: %s", task_id, err[:500])
        if proc.returncode != 0:
            raise TaskExecutionError(
                f"Command exited with code {proc.returncode}" + (f": {err[-500:]}" if err else "")
            )
        return out.splitlines()[-1] if out else None

    def _build_env(self, context: dict[str, Any]) -> dict[str, str]:
        env: dict[str, str] = dict(os.environ) if self.append_env or self.env is None else {}
        if self.env:
            env.update(self.env)
        # 让命令能感知自己属于哪个 Run
        env["MINIDAG_DAG_ID"] = str(context.get("dag_id", ""))
        env["MINIDAG_RUN_ID"] = str(context.get("run_id", ""))
        env["MINIDAG_TASK_ID"] = str(context.get("task_id", ""))
        env["MINIDAG_TRY_NUMBER"] = str(context.get("try_number", ""))
        logical_date = context.get("logical_date")
        env["MINIDAG_LOGICAL_DATE"] = logical_date.isoformat() if logical_date else ""
        return env
