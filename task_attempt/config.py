"""配置模块。

默认值 + JSON 配置文件覆盖；配置文件路径可由环境变量 TASK_ATTEMPT_CONFIG 指定。
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "TASK_ATTEMPT_CONFIG"

DEFAULT_TIMEOUT_MS = 60_000.0
DEFAULT_INTERVAL_MS = 500.0
DEFAULT_INCREMENT = 1.5
DEFAULT_JITTER = 0.2


@dataclass(slots=True)
class AttemptDefaults:
    """attempt 的默认退避参数。

    Attributes:
        timeout: 总预算（毫秒）。
        interval: 初始退避间隔（毫秒）。
        increment: 退避乘数。
        jitter: 抖动比例（0-1）。
    """

    timeout: float = DEFAULT_TIMEOUT_MS
    interval: float = DEFAULT_INTERVAL_MS
    increment: float = DEFAULT_INCREMENT
    jitter: float = DEFAULT_JITTER

    @classmethod
    def from_settings(cls, settings: Mapping[str, Any]) -> AttemptDefaults:
        return cls(
            timeout=float(settings.get("attempt_timeout_ms", DEFAULT_TIMEOUT_MS)),
            interval=float(settings.get("attempt_interval_ms", DEFAULT_INTERVAL_MS)),
            increment=float(settings.get("attempt_increment", DEFAULT_INCREMENT)),
            jitter=float(settings.get("attempt_jitter", DEFAULT_JITTER)),
        )


def default_settings() -> Dict[str, Any]:
    return {
        # 退避
        "attempt_timeout_ms": DEFAULT_TIMEOUT_MS,
        "attempt_interval_ms": DEFAULT_INTERVAL_MS,
        "attempt_increment": DEFAULT_INCREMENT,
        "attempt_jitter": DEFAULT_JITTER,

        # 日志
        "log_level": "INFO",
        "log_json": False,
        "log_file": None,

        # 可观测性
        "enable_metrics": False,
        "metrics_namespace": "task_attempt",
    }


def load_settings(config_path: Optional[str] = None) -> Dict[str, Any]:
    """加载配置：默认值，再用 JSON 配置文件中的键覆盖。

    Args:
        config_path: 配置文件路径，缺省时读取环境变量 TASK_ATTEMPT_CONFIG。

    Returns:
        合并后的配置字典。文件不存在或解析失败时返回默认值。
    """
    settings = default_settings()
    path = config_path or os.getenv(CONFIG_ENV_VAR)
    if not path:
        return settings

    p = Path(path)
    if not p.exists():
        return settings
    try:
        user_config = json.loads(p.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning("加载配置文件失败: %s", e)
        return settings

    if isinstance(user_config, dict):
        settings.update(user_config)
    else:
        logger.warning("配置文件顶层必须是对象: %s", path)
    return settings
