"""Task：可取消、可串联的单次异步工作单元。

状态机：
- PENDING -> SETTLED，至多一次；结果 ``(error, value)`` 此后不可变。
- ``then_do`` 返回 proxy 任务，continuation 总是在事件循环的下一轮执行，
  即使父任务在注册时已经完成。
- 取消沿链路传播：未完成的根任务调用动作提供的取消句柄并以
  ``TaskCancelledError`` 结束；proxy 转发给上游或其子任务；已完成的任务
  转发给仍在运行的子任务，否则留给下一个注册的 continuation。
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Generator, Optional, Union

from .errors import TaskCancelledError, TaskFailedError
from .timers import defer, resolve_loop

logger = logging.getLogger(__name__)

Done = Callable[..., None]
Action = Callable[[Done], Any]
Continuation = Callable[[Any, Any], Any]


class TaskState(Enum):
    """Task 状态枚举"""

    PENDING = "pending"
    SETTLED = "settled"


@dataclass(frozen=True, slots=True)
class ValueResult:
    """continuation 以普通值结束 proxy。"""

    value: Any = None


@dataclass(frozen=True, slots=True)
class TaskResult:
    """continuation 以子任务替代自身结果，proxy 跟随该任务。"""

    task: Task


Outcome = Union[ValueResult, TaskResult]


def as_outcome(returned: Any) -> Outcome:
    """把 continuation 的返回值规整为 ValueResult / TaskResult。"""
    if isinstance(returned, (ValueResult, TaskResult)):
        return returned
    if isinstance(returned, Task):
        return TaskResult(returned)
    return ValueResult(returned)


def _as_canceller(handle: Any) -> Optional[Callable[[], Any]]:
    if handle is None:
        return None
    cancel = getattr(handle, "cancel", None)
    if callable(cancel):
        return cancel
    if callable(handle):
        return handle
    return None


def resolve_future(future: asyncio.Future, error: Any, value: Any) -> None:
    """用 ``(error, value)`` 结束 future；非异常的错误值包装为 TaskFailedError。"""
    if future.done():
        return
    if error is None:
        future.set_result(value)
    elif isinstance(error, BaseException):
        future.set_exception(error)
    else:
        future.set_exception(TaskFailedError(error))


class Task:
    """单次结算的异步工作单元。

    通过 ``Task.create`` 或 ``Task.do`` 构建，不要直接实例化。所有方法都必须
    在事件循环线程中调用。
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None, *, upstream: Optional[Task] = None):
        self._loop = resolve_loop(loop)
        self._state = TaskState.PENDING
        self._result: Optional[tuple[Any, Any]] = None
        self._canceller: Optional[Callable[[], Any]] = None

        self._cancelled = False
        # 上游在完成前被取消时，已注册的 proxy 收到该标记
        self._inherited_cancel = False
        # 完成后才被取消且尚无子任务：下一个 continuation 看到 cancelled
        self._cancel_next = False

        self._upstream = upstream
        self._continuation: Optional[Continuation] = None
        self._child: Optional[Task] = None
        self._first_proxy: Optional[Task] = None

        self._proxies: list[Task] = []
        self._followers: list[Task] = []

    # ---------------- 构建 ----------------

    @classmethod
    def create(cls, error: Any = None, value: Any = None, *, loop: Optional[asyncio.AbstractEventLoop] = None) -> Task:
        """返回一个已完成、携带给定结果的任务。"""
        task = cls(loop)
        task._settle(error, value)
        return task

    @classmethod
    def do(cls, action: Action, *, loop: Optional[asyncio.AbstractEventLoop] = None) -> Task:
        """同步启动 action 并返回对应的任务。

        Args:
            action: ``action(done)``，完成时调用 ``done(error, value)`` 恰好一次；
                可返回取消句柄（无参可调用对象，或带 ``cancel()`` 的对象）。
            loop: 事件循环，默认取当前运行的循环。

        Returns:
            未完成的任务；若 action 在本次调用内已完成或同步抛出异常，则为已完成任务。
        """
        task = cls(loop)
        try:
            handle = action(task._complete)
        except Exception as exc:
            logger.debug("动作同步抛出异常: %r", exc)
            task._settle(exc, None)
            return task
        if task._state is TaskState.PENDING:
            task._canceller = _as_canceller(handle)
        return task

    # ---------------- 状态 ----------------

    @property
    def state(self) -> TaskState:
        return self._state

    @property
    def pending(self) -> bool:
        return self._state is TaskState.PENDING

    @property
    def result(self) -> Optional[tuple[Any, Any]]:
        """``(error, value)``，未完成时为 None。"""
        return self._result

    def __repr__(self) -> str:
        if self._state is TaskState.PENDING:
            return "<Task pending>"
        error, value = self._result
        return f"<Task settled error={error!r} value={value!r}>"

    # ---------------- 串联 ----------------

    def then_do(self, continuation: Continuation) -> Task:
        """注册 ``continuation(error, value)``，返回代表其结果的 proxy 任务。

        continuation 返回 Task（或 TaskResult）时 proxy 跟随该任务的结果，
        对 proxy 的取消也转发给它；返回其他值（或 ValueResult）时以该值结束；
        抛出异常时以 ``(exc, None)`` 结束。
        """
        proxy = Task(self._loop, upstream=self)
        proxy._continuation = continuation
        if self._first_proxy is None:
            self._first_proxy = proxy
        if self._cancel_next:
            self._cancel_next = False
            proxy._inherited_cancel = True

        if self._state is TaskState.PENDING:
            self._proxies.append(proxy)
        else:
            error, value = self._result
            defer(self._loop, proxy._continue, error, value)
        return proxy

    def _continue(self, error: Any, value: Any) -> None:
        continuation, self._continuation = self._continuation, None
        self._upstream = None
        if self._cancelled or self._inherited_cancel:
            error, value = TaskCancelledError(), None

        try:
            outcome = as_outcome(continuation(error, value))
        except Exception as exc:
            logger.debug("continuation 抛出异常，转为错误结果: %r", exc)
            self._settle(exc, None)
            return

        match outcome:
            case TaskResult(task=child) if self._state is TaskState.PENDING:
                self._follow(child)
            case TaskResult(task=child):
                # continuation 执行期间 proxy 已被取消
                child.cancel()
            case ValueResult(value=result):
                if self._cancelled or self._inherited_cancel:
                    self._settle(TaskCancelledError(), None)
                else:
                    self._settle(None, result)

    def _follow(self, child: Task) -> None:
        self._child = child
        if child._state is TaskState.PENDING:
            child._followers.append(self)
        else:
            error, value = child._result
            self._settle(error, value)

    # ---------------- 结算 ----------------

    def _complete(self, error: Any = None, value: Any = None) -> None:
        # 取消句柄可能同步回调 done，此时结果必须是 cancelled
        if self._state is not TaskState.PENDING or self._cancelled:
            logger.debug("忽略重复或取消后的完成回调: error=%r", error)
            return
        self._settle(error, value)

    def _settle(self, error: Any, value: Any) -> None:
        # 跟随链可能很长（每次重试一层），逐个展开而不是递归
        settling = [self]
        while settling:
            task = settling.pop()
            if task._state is not TaskState.PENDING:
                continue
            task._state = TaskState.SETTLED
            task._result = (error, value)
            task._canceller = None
            task._upstream = None

            proxies, task._proxies = task._proxies, []
            followers, task._followers = task._followers, []
            for proxy in proxies:
                defer(task._loop, proxy._continue, error, value)
            settling.extend(followers)

    # ---------------- 取消 ----------------

    def cancel(self) -> None:
        """取消任务，幂等。"""
        task = self
        while True:
            if task._cancelled:
                return
            task._cancelled = True
            if task._state is TaskState.SETTLED:
                task._cancel_settled()
                return
            if task._child is None:
                break
            task = task._child

        if task._continuation is not None:
            upstream = task._upstream
            if upstream is not None and upstream._state is TaskState.PENDING:
                upstream.cancel()
            return

        canceller, task._canceller = task._canceller, None
        if canceller is not None:
            try:
                canceller()
            except Exception as exc:
                logger.warning("取消句柄执行失败: %r", exc)

        for proxy in task._proxies:
            proxy._inherited_cancel = True
        task._settle(TaskCancelledError(), None)

    def _cancel_settled(self) -> None:
        proxy = self._first_proxy
        child = proxy._child if proxy is not None else None
        if child is not None:
            if child._state is TaskState.PENDING:
                child.cancel()
            return
        self._cancel_next = True

    # ---------------- asyncio 桥接 ----------------

    def as_future(self) -> asyncio.Future:
        """返回在本任务完成时结束的 future；取消该 future 会取消本任务。"""
        future = self._loop.create_future()

        def on_done(fut: asyncio.Future) -> None:
            if fut.cancelled():
                self.cancel()

        self.then_do(lambda error, value: resolve_future(future, error, value))
        future.add_done_callback(on_done)
        return future

    def __await__(self) -> Generator[Any, None, Any]:
        return self.as_future().__await__()
