from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from typing import Any, Mapping, Optional

from .utils import optional_import

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: str = "INFO", json_format: bool = False, log_file: Optional[str] = None) -> None:
    """配置根日志：stdout + 可选滚动文件 + 可选结构化 JSON。

    库代码本身只通过模块 logger 输出，不会在导入时调用本函数。
    """
    lvl = getattr(logging, str(level).upper(), logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        try:
            handlers.append(
                RotatingFileHandler(
                    log_file,
                    maxBytes=10 * 1024 * 1024,
                    backupCount=5,
                    encoding="utf-8",
                )
            )
        except OSError as e:
            # 文件系统不可写时，至少保留 stdout
            logging.getLogger(__name__).warning("无法写入日志文件 %s: %s", log_file, e)

    if json_format:
        jsonlogger = optional_import("pythonjsonlogger.jsonlogger")
        if jsonlogger is not None:
            fmt = jsonlogger.JsonFormatter("%(asctime)s %(name)s %(levelname)s %(message)s")
            for h in handlers:
                h.setFormatter(fmt)
            logging.basicConfig(level=lvl, handlers=handlers, force=True)
            return
        logging.getLogger(__name__).warning(
            "未安装 python-json-logger，回退为文本日志，安装: pip install python-json-logger"
        )

    logging.basicConfig(level=lvl, format=LOG_FORMAT, handlers=handlers, force=True)


def setup_logging_from_settings(settings: Mapping[str, Any]) -> None:
    setup_logging(
        level=str(settings.get("log_level", "INFO")),
        json_format=bool(settings.get("log_json", False)),
        log_file=settings.get("log_file"),
    )
