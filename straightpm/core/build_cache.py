"""构建缓存

每个包记录: 上次成功构建时间、依赖列表、构建时的配方快照。
以整表快照形式持久化为 JSON，同时保存上一次完整运行中用到的包名
（"eager" 列表，供下一次运行批量检测修改）。

文件格式:
    {
      "version": 1,
      "packages": {
        "foo": {"last_build_time": 1700000000.0,
                "dependencies": ["bar"],
                "recipe": {"package": "foo", "local_repo": "foo", ...}}
      },
      "eager_packages": ["foo", "bar"]
    }

加载时结构校验失败一律回退为空缓存，不阻塞启动。
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from straightpm.core.models import BuildCacheEntry, Recipe
from straightpm.utils.yaml_io import load_json, save_json

logger = logging.getLogger(__name__)

CACHE_VERSION = 1


class BuildCache:
    """构建缓存管理器"""

    def __init__(self, cache_file: str | Path) -> None:
        self.cache_file = Path(cache_file)
        self._entries: dict[str, BuildCacheEntry] = {}
        self.eager_packages: list[str] = []

    # ---- 持久化 ----

    def load(self) -> None:
        """从磁盘加载；文件缺失或损坏时回退为空缓存"""
        self._entries = {}
        self.eager_packages = []
        if not self.cache_file.exists():
            return
        try:
            raw = load_json(self.cache_file)
            entries, eager = _parse(raw)
        except (OSError, ValueError) as e:
            logger.warning("构建缓存损坏，已回退为空缓存: %s (%s)", self.cache_file, e)
            return
        self._entries = entries
        self.eager_packages = eager
        logger.debug("构建缓存已加载: %d 个包", len(entries))

    def save(self, active_packages: Iterable[str] = ()) -> None:
        """整表写回；本次运行注册过包时更新 eager 列表"""
        active = sorted(set(active_packages))
        if active:
            self.eager_packages = active
        data = {
            "version": CACHE_VERSION,
            "packages": {name: e.to_dict() for name, e in sorted(self._entries.items())},
            "eager_packages": self.eager_packages,
        }
        save_json(self.cache_file, data)
        logger.debug("构建缓存已保存: %s", self.cache_file)

    # ---- 查询 / 更新 ----

    def get(self, package: str) -> BuildCacheEntry | None:
        return self._entries.get(package)

    def packages(self) -> list[str]:
        return sorted(self._entries)

    def dependencies(self, package: str) -> list[str]:
        entry = self._entries.get(package)
        return list(entry.dependencies) if entry else []

    def set_dependencies(self, package: str, dependencies: list[str]) -> None:
        """写入依赖列表，保留原构建时间（新条目没有构建时间）"""
        entry = self._entries.setdefault(package, BuildCacheEntry())
        entry.dependencies = list(dependencies)

    def invalidate(self, package: str) -> None:
        """旧构建产物已删除，清空构建时间，构建未完成前保持过期"""
        entry = self._entries.get(package)
        if entry is not None:
            entry.last_build_time = None

    def finalize_build(self, package: str, recipe: Recipe, dependencies: list[str]) -> None:
        """流水线成功后一次性更新时间戳、依赖与配方快照"""
        self._entries[package] = BuildCacheEntry(
            last_build_time=time.time(),
            dependencies=list(dependencies),
            recipe=Recipe.from_dict(recipe.to_dict()),
        )

    def prune(self, keep: Iterable[str]) -> list[str]:
        """删除不在 keep 中的条目，返回被删除的包名"""
        keep_set = set(keep)
        removed = [name for name in self._entries if name not in keep_set]
        for name in removed:
            del self._entries[name]
        self.eager_packages = [p for p in self.eager_packages if p in keep_set]
        return sorted(removed)


def _parse(raw: Any) -> tuple[dict[str, BuildCacheEntry], list[str]]:
    """结构校验 + 反序列化，任何不合法之处抛 ValueError"""
    if not isinstance(raw, dict):
        raise ValueError("顶层不是对象")
    if raw.get("version") != CACHE_VERSION:
        raise ValueError(f"版本不匹配: {raw.get('version')!r}")
    packages = raw.get("packages")
    eager = raw.get("eager_packages", [])
    if not isinstance(packages, dict):
        raise ValueError("packages 不是对象")
    if not isinstance(eager, list) or not all(isinstance(p, str) for p in eager):
        raise ValueError("eager_packages 不是字符串列表")

    entries: dict[str, BuildCacheEntry] = {}
    for name, item in packages.items():
        if not isinstance(item, dict):
            raise ValueError(f"{name}: 条目不是对象")
        ts = item.get("last_build_time")
        if ts is not None and not isinstance(ts, (int, float)):
            raise ValueError(f"{name}: last_build_time 非法")
        deps = item.get("dependencies", [])
        if not isinstance(deps, list) or not all(isinstance(d, str) for d in deps):
            raise ValueError(f"{name}: dependencies 非法")
        recipe_data = item.get("recipe")
        recipe = None
        if recipe_data is not None:
            if not isinstance(recipe_data, dict) or "package" not in recipe_data:
                raise ValueError(f"{name}: recipe 非法")
            files = recipe_data.get("files")
            if files is not None and not _valid_files(files):
                raise ValueError(f"{name}: recipe.files 非法")
            recipe = Recipe.from_dict(recipe_data)
        entries[name] = BuildCacheEntry(
            last_build_time=float(ts) if ts is not None else None,
            dependencies=deps,
            recipe=recipe,
        )
    return entries, list(eager)


def _valid_files(directive: Any) -> bool:
    """files 快照只允许字符串、{src: dest} 单键映射及其嵌套列表"""
    if not isinstance(directive, list):
        return False
    for entry in directive:
        if isinstance(entry, str):
            continue
        if isinstance(entry, dict):
            if not all(isinstance(k, str) and isinstance(v, str) for k, v in entry.items()):
                return False
        elif not _valid_files(entry):
            return False
    return True
