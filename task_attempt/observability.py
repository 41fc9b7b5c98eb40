"""可观测性模块。

提供可选的 Prometheus 指标：attempt 启动数、重试调度数、按结果分类的结束数。
未启用或未安装 prometheus_client 时所有钩子均为空操作。
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping

from .utils import optional_import

logger = logging.getLogger(__name__)

OUTCOMES = ("success", "error", "timeout", "cancelled")


@dataclass(slots=True)
class Observability:
    """可观测性配置。

    Attributes:
        enabled: 是否启用任何可观测性功能。
        metrics_enabled: 是否启用 Prometheus 指标。
        attempts_started: attempt 启动计数器。
        retries_scheduled: 重试延迟调度计数器。
        attempts_finished: 按 outcome 标签分类的结束计数器。
    """

    enabled: bool = False
    metrics_enabled: bool = False

    attempts_started: Any = None
    retries_scheduled: Any = None
    attempts_finished: Any = None

    def attempt_started(self) -> None:
        if self.metrics_enabled:
            self.attempts_started.inc()

    def retry_scheduled(self) -> None:
        if self.metrics_enabled:
            self.retries_scheduled.inc()

    def attempt_finished(self, outcome: str) -> None:
        if self.metrics_enabled:
            self.attempts_finished.labels(outcome=outcome).inc()


def build_observability(config: Mapping[str, Any], registry: Any = None) -> Observability:
    """构建可观测性实例。

    Args:
        config: 配置字典，支持 enable_metrics 和 metrics_namespace 选项。
        registry: prometheus_client 的 CollectorRegistry，默认使用全局 REGISTRY。

    Returns:
        配置好的 Observability 实例。
    """
    obs = Observability()
    if not bool(config.get("enable_metrics", False)):
        return obs

    prometheus_client = optional_import("prometheus_client")
    if prometheus_client is None:
        logger.warning("未安装 prometheus_client，指标已禁用，安装: pip install 'task-attempt[metrics]'")
        return obs

    namespace = str(config.get("metrics_namespace", "task_attempt"))
    kwargs = {"registry": registry} if registry is not None else {}
    try:
        obs.attempts_started = prometheus_client.Counter(
            "attempts_started", "Attempts started", namespace=namespace, **kwargs
        )
        obs.retries_scheduled = prometheus_client.Counter(
            "retries_scheduled", "Backoff delays scheduled", namespace=namespace, **kwargs
        )
        obs.attempts_finished = prometheus_client.Counter(
            "attempts_finished",
            "Attempts finished",
            labelnames=("outcome",),
            namespace=namespace,
            **kwargs,
        )
    except ValueError as e:
        # 同名指标已在 registry 中注册
        logger.warning("注册指标失败，指标已禁用: %s", e)
        return Observability()

    obs.metrics_enabled = True
    obs.enabled = True
    return obs
