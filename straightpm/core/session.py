"""会话 — 一次命令调用期间的全部可变状态

注册表三缓存、构建缓存、修改扫描结果、强制重建集合、访问集合都挂在
Session 上，由顶层命令持有并显式传给各组件，不使用模块级全局变量。

每次顶层操作（事务深度 0 -> 1 -> 0）:
  - 首次进入时加载构建缓存，结束时写回（只各一次）
  - 结束时清空访问集合、强制重建记录与修改扫描结果
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from pathlib import Path
from typing import TYPE_CHECKING

from straightpm.core.build_cache import BuildCache
from straightpm.core.recipe.normalizer import RecipeNormalizer
from straightpm.core.recipe.registry import RecipeRegistry
from straightpm.core.staleness import StalenessDetector
from straightpm.core.transaction import Transaction

if TYPE_CHECKING:
    from straightpm.core.config import Config
    from straightpm.core.models import PackageState
    from straightpm.core.protocols import RecipeSource, VcsBackend

logger = logging.getLogger(__name__)

CACHE_ACTION = "build-cache"
OPERATION_ACTION = "operation-state"


class Session:
    """会话状态容器"""

    def __init__(
        self,
        config: Config,
        *,
        sources: Sequence[RecipeSource],
        backend_for: Callable[[str], VcsBackend | None],
        keywords_for: Callable[[str], Iterable[str]],
    ) -> None:
        self.config = config
        self.profile = config.profile
        self.faithful = False
        self.transaction = Transaction()
        self.registry = RecipeRegistry(keywords_for)
        self.normalizer = RecipeNormalizer(
            self.registry, sources, backend_for, config.default_backend,
        )
        self.build_cache = BuildCache(config.build_cache_file)
        self.staleness = StalenessDetector(
            self.build_cache,
            self.transaction,
            config.repos_dir,
            check_modifications=config.check_modifications,
            fallback=config.stale_fallback,
            exclude_dirs=config.scan_exclude_dirs,
        )
        self.rebuild_requested: set[str] = set()
        self.rebuilt: set[str] = set()
        self.visited: dict[str, PackageState] = {}
        self.load_path: list[str] = []
        self.activation_trace: list[str] = []

    # ---- 路径 ----

    def repo_dir(self, local_repo: str) -> Path:
        return Path(self.config.repos_dir) / local_repo

    def build_dir(self, package: str) -> Path:
        return Path(self.config.build_dir) / package

    # ---- 顶层操作生命周期 ----

    def begin_operation(self) -> None:
        """在事务内调用；重复调用只有第一次生效"""
        self.transaction.exec_once(
            CACHE_ACTION, setup=self.build_cache.load, teardown=self._save_build_cache,
        )
        self.transaction.exec_once(OPERATION_ACTION, teardown=self._end_operation)

    def _save_build_cache(self) -> None:
        self.build_cache.save(self.registry.recipes.keys())

    def _end_operation(self) -> None:
        self.visited.clear()
        self.rebuilt.clear()
        self.rebuild_requested.clear()
        self.staleness.reset()

    def reset(self) -> None:
        """清空进程级注册表（三缓存一起）"""
        self.registry.reset()
        self.load_path.clear()
        self.activation_trace.clear()
