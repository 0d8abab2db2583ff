"""过期检测 — 判断一个包是否需要重建

判定顺序:
  1. 构建缓存中无条目 / 无构建时间 / 无配方快照 -> 过期
  2. 构建相关字段（代码仓、files 指令）与快照不同 -> 过期
  3. 批量扫描：上次运行中用到的包（eager）所在代码仓一次性扫描，
     任一文件 mtime 新于该仓的构建时间即视为该仓所有包过期；
     扫描结果借助事务在一次顶层操作内只计算一次
  4. 不在批量范围内的代码仓按 stale_fallback 策略处理:
       individual  单独扫描该仓（慢路径）
       fold        批量扫描时直接纳入构建缓存中所有包，未覆盖者仍单独扫描
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from straightpm.core.build_cache import BuildCache
    from straightpm.core.models import Recipe
    from straightpm.core.transaction import Transaction

logger = logging.getLogger(__name__)

SCAN_ACTION = "modification-scan"
BUILD_RELEVANT_FIELDS = ("local_repo", "files")


class StalenessDetector:
    """过期检测器"""

    def __init__(
        self,
        build_cache: BuildCache,
        transaction: Transaction,
        repos_dir: str | Path,
        *,
        check_modifications: bool = True,
        fallback: str = "individual",
        exclude_dirs: Iterable[str] = (".git", ".hg", ".svn"),
    ) -> None:
        self.build_cache = build_cache
        self.transaction = transaction
        self.repos_dir = Path(repos_dir)
        self.check_modifications = check_modifications
        self.fallback = fallback
        self.exclude_dirs = frozenset(exclude_dirs)
        self._covered: set[str] = set()
        self._modified: set[str] = set()
        self._fresh: set[str] = set()

    def is_stale(self, package: str, recipe: Recipe) -> bool:
        entry = self.build_cache.get(package)
        if entry is None:
            logger.debug("%s 从未构建", package)
            return True
        if entry.last_build_time is None or entry.recipe is None:
            logger.debug("%s 上次构建未完成", package)
            return True
        for name in BUILD_RELEVANT_FIELDS:
            if entry.recipe.field_value(name) != recipe.field_value(name):
                logger.info("%s 的配方字段 %s 已变更，需要重建", package, name)
                return True
        if not self.check_modifications or package in self._fresh:
            return False

        self.transaction.exec_once(SCAN_ACTION, setup=self._batch_scan, teardown=self.reset)
        repo = recipe.local_repo
        if repo in self._covered:
            return repo in self._modified
        return self._has_newer_files(self.repos_dir / repo, entry.last_build_time)

    def mark_fresh(self, package: str) -> None:
        """包刚构建成功，本次操作内不再因扫描结果判为过期"""
        self._fresh.add(package)

    def reset(self) -> None:
        self._covered.clear()
        self._modified.clear()
        self._fresh.clear()

    # ---- 扫描 ----

    def _batch_scan(self) -> None:
        if self.fallback == "fold":
            candidates = self.build_cache.packages()
        else:
            candidates = self.build_cache.eager_packages
        thresholds: dict[str, float] = {}
        for package in candidates:
            entry = self.build_cache.get(package)
            if entry is None or entry.last_build_time is None or entry.recipe is None:
                continue
            repo = entry.recipe.local_repo
            ts = entry.last_build_time
            thresholds[repo] = min(ts, thresholds.get(repo, ts))
        if not thresholds:
            return
        logger.info("检查 %d 个代码仓的修改...", len(thresholds))
        self._covered = set(thresholds)
        self._modified = {
            repo for repo, ts in thresholds.items()
            if self._has_newer_files(self.repos_dir / repo, ts)
        }
        if self._modified:
            logger.info("检测到修改: %s", ", ".join(sorted(self._modified)))

    def _has_newer_files(self, root: Path, since: float) -> bool:
        """root 下（跳过版本控制元数据目录）是否有 mtime 新于 since 的条目"""
        if not root.exists():
            return True
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = [d for d in dirnames if d not in self.exclude_dirs]
            for name in [*dirnames, *filenames]:
                try:
                    mtime = os.lstat(os.path.join(dirpath, name)).st_mtime
                except OSError:
                    continue
                if mtime > since:
                    logger.debug("%s 有新修改: %s", root.name, os.path.join(dirpath, name))
                    return True
        return False
