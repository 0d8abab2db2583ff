"""版本锁文件

每个 profile 一个锁文件（versions_dir/<文件名>），记录 代码仓 -> 提交:

    version: 1
    repos:
      magit: 0123abcd...
      dash.el: 89ef0123...

克隆时查询合并后的锁（按 profiles 配置顺序，后者覆盖前者）钉住初始提交；
freeze 写入，thaw 读取并逐仓检出。
"""

from __future__ import annotations

import logging
from pathlib import Path

from straightpm.core.exceptions import ConfigError
from straightpm.utils.yaml_io import load_yaml, save_yaml

logger = logging.getLogger(__name__)

LOCKFILE_VERSION = 1


class VersionLockfiles:
    """锁文件管理器"""

    def __init__(self, versions_dir: str | Path, profiles: dict[str, str]) -> None:
        self.versions_dir = Path(versions_dir)
        self.profiles = dict(profiles)
        self._merged: dict[str, str] | None = None

    def path_for(self, profile: str) -> Path:
        if profile not in self.profiles:
            raise ConfigError(f"未配置的 profile: {profile}")
        return self.versions_dir / self.profiles[profile]

    def load(self, profile: str) -> dict[str, str]:
        path = self.path_for(profile)
        data = load_yaml(path)
        if data and data.get("version") != LOCKFILE_VERSION:
            logger.warning("锁文件版本不匹配，已忽略: %s", path)
            return {}
        repos = data.get("repos") or {}
        if not isinstance(repos, dict):
            logger.warning("锁文件 repos 不是映射，已忽略: %s", path)
            return {}
        return {str(k): str(v) for k, v in repos.items()}

    def merged(self) -> dict[str, str]:
        if self._merged is None:
            merged: dict[str, str] = {}
            for profile in self.profiles:
                merged.update(self.load(profile))
            self._merged = merged
        return dict(self._merged)

    def lookup(self, local_repo: str) -> str | None:
        return self.merged().get(local_repo)

    def write(self, profile: str, repos: dict[str, str]) -> Path:
        path = self.path_for(profile)
        save_yaml(path, {
            "version": LOCKFILE_VERSION,
            "repos": dict(sorted(repos.items())),
        })
        self._merged = None
        logger.info("锁文件已写入: %s (%d 个代码仓)", path, len(repos))
        return path
