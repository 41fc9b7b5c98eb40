"""定时器与时钟模块。

为 Task / Attempt 提供基于 asyncio 事件循环的默认依赖：
- 延迟派发（下一轮事件循环执行）
- 定时器 ``(callback, duration_ms) -> handle``
- 毫秒时钟 ``() -> ms``

三者对核心而言都是无状态函数，可在多个并发 Attempt 之间共享。
"""
from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional

Timer = Callable[[Callable[[], None], float], Any]
Clock = Callable[[], float]


def resolve_loop(loop: Optional[asyncio.AbstractEventLoop] = None) -> asyncio.AbstractEventLoop:
    """返回给定的事件循环，未指定时使用当前正在运行的循环。

    Raises:
        RuntimeError: 未指定 loop 且当前没有正在运行的事件循环。
    """
    if loop is not None:
        return loop
    return asyncio.get_running_loop()


def defer(loop: asyncio.AbstractEventLoop, fn: Callable[..., Any], *args: Any) -> None:
    """在事件循环的下一轮执行 fn，绝不在当前调用栈中同步执行。"""
    loop.call_soon(fn, *args)


def asyncio_timer(loop: Optional[asyncio.AbstractEventLoop] = None) -> Timer:
    """构建基于 ``loop.call_later`` 的定时器。

    Args:
        loop: 事件循环，默认在首次调度时取当前运行的循环。

    Returns:
        定时器函数，返回可取消的 ``asyncio.TimerHandle``。
    """

    def timer(callback: Callable[[], None], duration_ms: float) -> asyncio.TimerHandle:
        return resolve_loop(loop).call_later(max(0.0, float(duration_ms)) / 1000.0, callback)

    return timer


def asyncio_clock(loop: Optional[asyncio.AbstractEventLoop] = None) -> Clock:
    """构建与 ``asyncio_timer`` 同源的单调毫秒时钟。"""

    def clock() -> float:
        return resolve_loop(loop).time() * 1000.0

    return clock
