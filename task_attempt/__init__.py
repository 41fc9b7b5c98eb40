"""task_attempt: 可取消的 Task 串联 + 指数退避重试。

这个包负责：
- Task：单次结算的异步工作单元，then_do 串联、取消沿链路传播
- attempt：基于 Task 的重试循环（指数退避、抖动、截止时间、取消）

定时器与时钟通过参数注入，默认使用当前 asyncio 事件循环。
"""

from .attempt import AttemptConfig, AttemptHandle, Attempter, attempt, attempt_async
from .config import AttemptDefaults, load_settings
from .errors import AttemptError, AttemptTimeoutError, TaskCancelledError, TaskFailedError
from .task import Task, TaskResult, TaskState, ValueResult

__all__ = [
    "AttemptConfig",
    "AttemptDefaults",
    "AttemptError",
    "AttemptHandle",
    "AttemptTimeoutError",
    "Attempter",
    "Task",
    "TaskCancelledError",
    "TaskFailedError",
    "TaskResult",
    "TaskState",
    "ValueResult",
    "attempt",
    "attempt_async",
    "load_settings",
]
