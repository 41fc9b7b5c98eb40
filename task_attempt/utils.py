"""utils: 辅助工具（可选依赖的运行时导入）。"""
from __future__ import annotations

import importlib
from typing import Any, Dict

_OPTIONAL_IMPORT_CACHE: Dict[str, Any] = {}


def optional_import(module_name: str) -> Any:
    """运行时可选导入，失败返回 None。"""
    if module_name in _OPTIONAL_IMPORT_CACHE:
        return _OPTIONAL_IMPORT_CACHE[module_name]
    try:
        mod = importlib.import_module(module_name)
    except ImportError:
        mod = None
    _OPTIONAL_IMPORT_CACHE[module_name] = mod
    return mod
