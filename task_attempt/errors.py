from __future__ import annotations

from typing import Any


class AttemptError(Exception):
    """基础异常"""


class TaskCancelledError(AttemptError):
    """任务被取消"""

    def __init__(self, message: str = "cancelled") -> None:
        super().__init__(message)


class AttemptTimeoutError(AttemptError):
    """重试超出截止时间"""

    def __init__(self, message: str = "timeout") -> None:
        super().__init__(message)


class TaskFailedError(AttemptError):
    """动作以非异常对象报告错误时，在 await 桥接中包装后抛出。"""

    def __init__(self, error: Any) -> None:
        super().__init__(str(error))
        self.error = error


def is_cancelled(err: Any) -> bool:
    return isinstance(err, TaskCancelledError)


def is_timeout(err: Any) -> bool:
    return isinstance(err, AttemptTimeoutError)
