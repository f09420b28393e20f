"""
Python Operator - Runs a Python callable as a task.
Python 算子 —— 将一个 Python 可调用对象作为任务执行。

Coroutine functions are awaited on the event loop; plain functions are
pushed to a worker thread so a blocking call never stalls the scheduler.
协程函数直接在事件循环中 await；普通函数放入工作线程执行，
避免阻塞调用卡住调度循环。
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import logging
from typing import Any, Callable

from operators.base import BaseOperator

logger = logging.getLogger(__name__)


class PythonOperator(BaseOperator):
    """
    Call `python_callable(*op_args, **op_kwargs)`.
    调用 `python_callable(*op_args, **op_kwargs)`。

    With provide_context=True the task context is passed as the keyword
    argument `context`. 当 provide_context=True 时，任务上下文以关键字参数
    `context` 传入。
    """

    def __init__(
        self,
        python_callable: Callable[..., Any],
        op_args: list[Any] | tuple[Any, ...] | None = None,
        op_kwargs: dict[str, Any] | None = None,
        provide_context: bool = False,
    ):
        if not callable(python_callable):
            raise TypeError("python_callable must be callable")
        self.python_callable = python_callable
        self.op_args = list(op_args or [])
        self.op_kwargs = dict(op_kwargs or {})
        self.provide_context = provide_context

    @property
    def name(self) -> str:
        return f"PythonOperator({getattr(self.python_callable, '__name__', 'callable')})"

    async def execute(self, context: dict[str, Any]) -> Any:
        kwargs = dict(self.op_kwargs)
        if self.provide_context:
            kwargs["context"] = context

        logger.debug("[PythonOperator] %s: calling %s", context.get("task_id"), self.name)
        return await call_maybe_async(self.python_callable, *self.op_args, **kwargs)


async def call_maybe_async(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """
    Await `fn` if it is a coroutine function, else run it in the default
    thread pool. Shared by PythonOperator and PythonSensor.
    协程函数直接 await，普通函数放入默认线程池执行。
    使用 run_in_executor 将同步调用包装为异步，避免阻塞事件循环。
    """
    if inspect.iscoroutinefunction(fn):
        return await fn(*args, **kwargs)
    loop = asyncio.get_running_loop()
    result = await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))
    if inspect.isawaitable(result):
        # 普通函数返回了 awaitable（如 lambda: coro()）
        result = await result
    return result
