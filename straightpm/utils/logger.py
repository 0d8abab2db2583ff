"""straightpm 日志配置

两种输出：
  - 终端：INFO 及以上只显示级别和消息，DEBUG 时补上时间与来源模块
  - JSON：每条一行，供 CI 收集；带 extra={"package": ...} 的记录会多一个 package 字段
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone

_TERSE_FORMAT = "[%(levelname)s] %(message)s"
_VERBOSE_FORMAT = "%(asctime)s [%(levelname)-7s] %(name)s: %(message)s"


class JSONFormatter(logging.Formatter):
    """单行 JSON 格式器"""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, object] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        package = getattr(record, "package", None)
        if package:
            entry["package"] = package
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False)


def setup_logging(level: str = "INFO", json_output: bool = False) -> None:
    """重新配置根日志器，输出到 stderr（stdout 留给命令结果）"""
    reset_logging()
    numeric = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(numeric)

    handler = logging.StreamHandler(sys.stderr)
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        fmt = _VERBOSE_FORMAT if numeric <= logging.DEBUG else _TERSE_FORMAT
        handler.setFormatter(logging.Formatter(fmt))
    root.addHandler(handler)


def reset_logging() -> None:
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
