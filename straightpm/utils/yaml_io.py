"""磁盘状态文件读写

三类文件经这里落盘：
  - YAML：配置、配方索引、包清单、各 profile 的锁文件
  - JSON：构建缓存
写入一律先写临时文件再 rename；读取时文件缺失视为空。
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

# 单个状态文件的上限，超出即认为文件损坏或放错了位置
MAX_STATE_FILE_SIZE = 10 * 1024 * 1024


def atomic_write(path: Path, content: str) -> None:
    """写入 path；进程中途退出时旧文件保持不变"""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


def _read_text(p: Path) -> str | None:
    """文件不存在返回 None；超过 MAX_STATE_FILE_SIZE 抛 ValueError"""
    if not p.is_file():
        return None
    size = p.stat().st_size
    if size > MAX_STATE_FILE_SIZE:
        raise ValueError(f"状态文件过大: {p} ({size} 字节, 上限 {MAX_STATE_FILE_SIZE})")
    return p.read_text(encoding="utf-8")


def load_yaml(path: str | Path) -> dict[str, Any]:
    """读取 YAML 映射

    文件缺失、内容为空或顶层不是映射时返回 {}。
    格式错误向上抛 yaml.YAMLError，由调用方决定包装成哪种业务异常。
    """
    text = _read_text(Path(path))
    if text is None:
        return {}
    try:
        result = yaml.safe_load(text)
    except yaml.YAMLError as e:
        logger.error("YAML 解析失败 %s: %s", path, e)
        raise
    if result is None:
        return {}
    if not isinstance(result, dict):
        logger.warning("%s 顶层不是映射 (%s)，按空处理", path, type(result).__name__)
        return {}
    return result


def save_yaml(path: str | Path, data: Any) -> None:
    """按插入顺序写 YAML，锁文件 diff 才稳定"""
    content = yaml.safe_dump(data, default_flow_style=False, allow_unicode=True, sort_keys=False)
    atomic_write(Path(path), content)


def load_json(path: str | Path) -> Any:
    """读取 JSON；文件缺失返回 None，格式错误抛 json.JSONDecodeError"""
    text = _read_text(Path(path))
    if text is None:
        return None
    return json.loads(text)


def save_json(path: str | Path, data: Any) -> None:
    atomic_write(Path(path), json.dumps(data, indent=2, ensure_ascii=False, sort_keys=True))
