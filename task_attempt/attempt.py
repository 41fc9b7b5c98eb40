"""Attempt：基于 Task 的指数退避重试引擎。

反复调用动作，直到结果满足 ``until`` 谓词、动作报错、超出截止时间或被取消。
每次迭代由 Task 组成（动作任务 -> 延迟任务 -> 下一次动作任务），
对外只暴露一个取消句柄，作用于当前正在进行的那个任务（动作或延迟）。
"""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Union

from .config import (
    DEFAULT_INCREMENT,
    DEFAULT_INTERVAL_MS,
    DEFAULT_JITTER,
    DEFAULT_TIMEOUT_MS,
    AttemptDefaults,
)
from .errors import AttemptTimeoutError, TaskCancelledError, is_cancelled, is_timeout
from .observability import Observability, build_observability
from .task import Action, Task, resolve_future
from .timers import Clock, Timer, asyncio_clock, asyncio_timer, resolve_loop

logger = logging.getLogger(__name__)

Callback = Callable[[Any, Any], Any]


@dataclass(slots=True)
class AttemptConfig:
    """单次 attempt 的配置。

    Attributes:
        action: 要重试的动作，``action(done) -> 取消句柄 | None``。
        until: 成功判定谓词，只对无错误的结果调用。
        timeout: 自开始起的总预算（毫秒）。
        interval: 第二次调用前的初始退避间隔（毫秒）。
        increment: 每次未满足后间隔的乘数。
        jitter: 抖动比例，实际延迟落在 interval × (1 ± jitter)。
    """

    action: Action
    until: Callable[[Any], bool]
    timeout: float = DEFAULT_TIMEOUT_MS
    interval: float = DEFAULT_INTERVAL_MS
    increment: float = DEFAULT_INCREMENT
    jitter: float = DEFAULT_JITTER

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], defaults: Optional[AttemptDefaults] = None) -> AttemptConfig:
        """从字典构建配置，动作可用 ``"do"`` 或 ``"action"`` 键给出。"""
        d = defaults or AttemptDefaults()
        return cls(
            action=mapping.get("do", mapping.get("action")),
            until=mapping.get("until"),
            timeout=float(mapping.get("timeout", d.timeout)),
            interval=float(mapping.get("interval", d.interval)),
            increment=float(mapping.get("increment", d.increment)),
            jitter=float(mapping.get("jitter", d.jitter)),
        )

    def validate(self) -> None:
        """校验配置。

        Raises:
            ValueError: 动作或谓词不可调用，或数值参数越界。
        """
        if not callable(self.action):
            raise ValueError("action ('do') must be callable")
        if not callable(self.until):
            raise ValueError("until must be callable")
        if self.timeout < 0:
            raise ValueError("timeout must be >= 0")
        if self.interval < 0:
            raise ValueError("interval must be >= 0")
        if self.increment < 1:
            raise ValueError("increment must be >= 1")
        if not 0 <= self.jitter < 1:
            raise ValueError("jitter must be in [0, 1)")


class AttemptHandle:
    """attempt() 返回的取消句柄。

    Attributes:
        done: attempt 是否已结束（回调已触发）。
        attempts: 已发起的动作调用次数。
        delays: 已调度的退避延迟（毫秒），按顺序排列。
    """

    def __init__(self) -> None:
        self._run: Optional[_AttemptRun] = None
        self.done = False
        self.attempts = 0
        self.delays: list[float] = []

    def cancel(self) -> None:
        """取消 attempt；attempt 结束后调用无效果。"""
        if self.done or self._run is None:
            return
        self._run.cancel()


def _outcome(error: Any) -> str:
    if error is None:
        return "success"
    if is_cancelled(error):
        return "cancelled"
    if is_timeout(error):
        return "timeout"
    return "error"


class _AttemptRun:
    """一次 attempt 调用期间的状态，回调触发后即释放。

    任一时刻只持有一个当前任务（动作或延迟），取消直接作用于它；
    已结束的迭代不再被引用。
    """

    def __init__(self, attempter: Attempter, config: AttemptConfig, callback: Callback):
        self._config = config
        self._callback = callback
        self._loop = resolve_loop(attempter.loop)
        self._timer = attempter.timer
        self._clock = attempter.clock
        self._rng = attempter.rng
        self._obs = attempter.obs
        self._handle = AttemptHandle()
        self._current: Optional[Task] = None
        self._cancelled = False
        self._start = 0.0
        self._deadline = 0.0

    def start(self) -> AttemptHandle:
        self._start = self._clock()
        self._deadline = self._start + self._config.timeout
        self._obs.attempt_started()

        self._current = Task.create(loop=self._loop).then_do(self._first_call)
        self._handle._run = self
        return self._handle

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        if self._current is not None:
            self._current.cancel()

    def _first_call(self, error: Any, _value: Any) -> None:
        if self._cancelled or error is not None:
            # 首次调用前已被取消
            self._finish(TaskCancelledError(), None)
            return
        self._call(self._config.interval)

    def _call(self, interval: float) -> None:
        self._handle.attempts += 1
        logger.debug("第 %d 次调用动作", self._handle.attempts)
        action = Task.do(self._config.action, loop=self._loop)
        self._current = action
        action.then_do(lambda error, result: self._check(error, result, interval))

    def _check(self, error: Any, result: Any, interval: float) -> None:
        if self._cancelled:
            self._finish(TaskCancelledError(), None)
            return
        if error is not None:
            self._finish(error, None)
            return
        try:
            satisfied = self._config.until(result)
        except Exception as exc:
            logger.debug("until 谓词抛出异常: %r", exc)
            self._finish(exc, None)
            return
        if satisfied:
            self._finish(None, result)
            return

        delay = self._jittered(interval)
        if self._clock() + delay > self._deadline:
            self._finish(AttemptTimeoutError(), None)
            return

        self._handle.delays.append(delay)
        self._obs.retry_scheduled()
        logger.debug("结果未满足条件，%.1f ms 后重试", delay)
        wait = Task.do(lambda done: self._timer(done, delay), loop=self._loop)
        self._current = wait
        wait.then_do(lambda err, _: self._after_wait(err, interval))

    def _after_wait(self, error: Any, interval: float) -> None:
        if self._cancelled:
            self._finish(TaskCancelledError(), None)
            return
        if error is not None:
            self._finish(error, None)
            return
        self._call(interval * self._config.increment)

    def _jittered(self, interval: float) -> float:
        jitter = self._config.jitter
        return interval * (1.0 + self._rng.uniform(-jitter, jitter))

    def _finish(self, error: Any, value: Any) -> None:
        handle = self._handle
        if handle.done:
            return
        handle.done = True
        handle._run = None
        self._current = None

        outcome = _outcome(error)
        self._obs.attempt_finished(outcome)
        logger.info(
            "attempt 结束: outcome=%s attempts=%d elapsed=%.0fms",
            outcome,
            handle.attempts,
            self._clock() - self._start,
        )
        try:
            self._callback(error, value)
        except Exception as exc:
            logger.warning("attempt 回调抛出异常: %r", exc)


class Attempter:
    """注入了定时器、时钟与随机源的 attempt 工厂。

    Attributes:
        timer: ``(callback, duration_ms) -> handle``，默认 ``loop.call_later``。
        clock: ``() -> ms``，默认 ``loop.time()``。
        rng: 抖动用的随机源。
        defaults: 字典配置缺省键时使用的默认值。
        obs: 指标钩子。
    """

    def __init__(
        self,
        timer: Optional[Timer] = None,
        clock: Optional[Clock] = None,
        rng: Optional[random.Random] = None,
        *,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        defaults: Optional[AttemptDefaults] = None,
        obs: Optional[Observability] = None,
    ) -> None:
        self.loop = loop
        self.timer = timer or asyncio_timer(loop)
        self.clock = clock or asyncio_clock(loop)
        self.rng = rng or random.Random()
        self.defaults = defaults or AttemptDefaults()
        self.obs = obs or Observability()

    @classmethod
    def from_settings(
        cls,
        settings: Mapping[str, Any],
        *,
        timer: Optional[Timer] = None,
        clock: Optional[Clock] = None,
        rng: Optional[random.Random] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        registry: Any = None,
    ) -> Attempter:
        """用 ``load_settings`` 的结果构建：退避默认值与指标开关均取自配置。"""
        return cls(
            timer=timer,
            clock=clock,
            rng=rng,
            loop=loop,
            defaults=AttemptDefaults.from_settings(settings),
            obs=build_observability(settings, registry=registry),
        )

    def attempt(self, config: Union[AttemptConfig, Mapping[str, Any]], callback: Callback) -> AttemptHandle:
        """启动一次 attempt。

        首次动作调用在事件循环的下一轮发生；``callback(error, value)`` 恰好触发一次，
        且总是异步触发。

        Args:
            config: AttemptConfig，或带 ``do`` / ``until`` 等键的字典。
            callback: 结束回调。

        Returns:
            取消句柄。

        Raises:
            ValueError: 配置不合法。
        """
        if not isinstance(config, AttemptConfig):
            config = AttemptConfig.from_mapping(config, self.defaults)
        config.validate()
        return _AttemptRun(self, config, callback).start()


def attempt(
    config: Union[AttemptConfig, Mapping[str, Any]],
    callback: Callback,
    *,
    timer: Optional[Timer] = None,
    clock: Optional[Clock] = None,
    rng: Optional[random.Random] = None,
    loop: Optional[asyncio.AbstractEventLoop] = None,
    defaults: Optional[AttemptDefaults] = None,
    obs: Optional[Observability] = None,
) -> AttemptHandle:
    """使用给定依赖启动一次 attempt，见 ``Attempter.attempt``。"""
    attempter = Attempter(timer=timer, clock=clock, rng=rng, loop=loop, defaults=defaults, obs=obs)
    return attempter.attempt(config, callback)


async def attempt_async(
    config: Union[AttemptConfig, Mapping[str, Any]],
    *,
    attempter: Optional[Attempter] = None,
) -> Any:
    """以协程方式执行 attempt。

    Args:
        config: 同 ``Attempter.attempt``。
        attempter: 自定义依赖，默认使用当前事件循环的定时器与时钟。

    Returns:
        满足 until 的结果。

    Raises:
        TaskCancelledError: attempt 被取消。
        AttemptTimeoutError: 截止时间内未能满足 until。
        TaskFailedError: 动作以非异常对象报告了错误。
        Exception: 动作报告的异常原样抛出。
    """
    loop = asyncio.get_running_loop()
    future = loop.create_future()
    runner = attempter or Attempter(loop=loop)
    handle = runner.attempt(config, lambda error, value: resolve_future(future, error, value))
    try:
        return await future
    except asyncio.CancelledError:
        handle.cancel()
        raise
