"""
Sensors - Tasks that block until an external condition holds.
传感器 —— 阻塞直到某个外部条件成立的任务。

A sensor calls `poke(context)` every `poke_interval` seconds until it
returns something truthy. If the condition does not hold within `timeout`:
  - soft_fail=False: SensorTimeout (fatal, the task fails without retry)
  - soft_fail=True:  TaskSkipped   (the task and its subtree are skipped)

传感器每隔 `poke_interval` 秒调用一次 `poke(context)`，直到返回真值。
若在 `timeout` 内条件仍未满足：
  - soft_fail=False：抛出 SensorTimeout（致命，任务失败且不重试）
  - soft_fail=True： 抛出 TaskSkipped（任务及其下游子树被跳过）

The truthy value returned by `poke` becomes the task output.
`poke` 返回的真值会成为任务输出。
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import abstractmethod
from datetime import timedelta
from typing import Any, Callable

import config
from dag.errors import SensorTimeout, TaskSkipped
from operators.base import BaseOperator
from operators.python import call_maybe_async
from schema import as_utc, utcnow

logger = logging.getLogger(__name__)


class BaseSensor(BaseOperator):
    """
    Poll-until-true operator. Subclasses implement `poke()`.
    轮询直到条件为真的算子，子类实现 `poke()`。
    """

    def __init__(
        self,
        poke_interval: float | None = None,
        timeout: float | None = None,
        soft_fail: bool = False,
    ):
        self.poke_interval = poke_interval if poke_interval is not None else config.SENSOR_POKE_INTERVAL
        self.timeout = timeout if timeout is not None else config.SENSOR_TIMEOUT
        self.soft_fail = soft_fail
        if self.poke_interval < 0 or self.timeout < 0:
            raise ValueError("poke_interval and timeout must be non-negative")

    @abstractmethod
    async def poke(self, context: dict[str, Any]) -> Any:
        """Return a truthy value once the condition holds. 条件成立时返回真值。"""

    async def execute(self, context: dict[str, Any]) -> Any:
        task_id = context.get("task_id")
        started = time.monotonic()
        pokes = 0
        while True:
            pokes += 1
            value = await self.poke(context)
            if value:
                logger.info("[Sensor] %s: condition met after %d poke(s)", task_id, pokes)
                return value

            elapsed = time.monotonic() - started
            if elapsed >= self.timeout:
                msg = f"Sensor {self.name} timed out after {elapsed:.1f}s ({pokes} pokes)"
                if self.soft_fail:
                    raise TaskSkipped(msg)
                raise SensorTimeout(msg)

            logger.debug("[Sensor] %s: poke #%d false, sleeping %.1fs", task_id, pokes, self.poke_interval)
            await asyncio.sleep(min(self.poke_interval, max(self.timeout - elapsed, 0)))


class PythonSensor(BaseSensor):
    """
    Sensor whose condition is a Python callable.
    条件由 Python 可调用对象给出的传感器。
    """

    def __init__(
        self,
        python_callable: Callable[..., Any],
        op_kwargs: dict[str, Any] | None = None,
        provide_context: bool = False,
        **kwargs: Any,
    ):
        super().__init__(**kwargs)
        self.python_callable = python_callable
        self.op_kwargs = dict(op_kwargs or {})
        self.provide_context = provide_context

    @property
    def name(self) -> str:
        return f"PythonSensor({getattr(self.python_callable, '__name__', 'callable')})"

    async def poke(self, context: dict[str, Any]) -> Any:
        kwargs = dict(self.op_kwargs)
        if self.provide_context:
            kwargs["context"] = context
        return await call_maybe_async(self.python_callable, **kwargs)


class TimeDeltaSensor(BaseSensor):
    """
    Waits until `logical_date + delta` has passed.
    等待直到 `logical_date + delta` 时刻已过。
    """

    def __init__(self, delta: timedelta, **kwargs: Any):
        super().__init__(**kwargs)
        self.delta = delta

    async def poke(self, context: dict[str, Any]) -> Any:
        target = as_utc(context["logical_date"]) + self.delta
        return utcnow() >= target
