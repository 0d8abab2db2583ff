"""版本控制后端注册表 — backend_type 标签 -> 后端实现"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from straightpm.core.exceptions import ConfigError

if TYPE_CHECKING:
    from straightpm.core.config import Config
    from straightpm.core.protocols import VcsBackend
    from straightpm.utils.shell import CommandExecutor

logger = logging.getLogger(__name__)


class BackendRegistry:
    """后端注册表"""

    def __init__(self) -> None:
        self._backends: dict[str, VcsBackend] = {}

    @classmethod
    def from_config(cls, config: Config, executor: CommandExecutor | None = None) -> BackendRegistry:
        """按配置构造内置后端"""
        from straightpm.services.repo.git import GitBackend
        registry = cls()
        registry.register("git", GitBackend(
            config.repos_dir,
            default_host=config.git_host,
            default_protocol=config.git_protocol,
            executor=executor,
        ))
        return registry

    def register(self, tag: str, backend: VcsBackend) -> None:
        self._backends[tag] = backend
        logger.debug("后端已注册: %s", tag)

    def find(self, tag: str) -> VcsBackend | None:
        return self._backends.get(tag)

    def get(self, tag: str) -> VcsBackend:
        backend = self._backends.get(tag)
        if backend is None:
            raise ConfigError(f"未知的后端类型: {tag}，可用: {', '.join(sorted(self._backends))}")
        return backend

    def keywords(self, tag: str) -> set[str]:
        backend = self._backends.get(tag)
        return backend.relevant_keywords() if backend else set()

    def tags(self) -> list[str]:
        return sorted(self._backends)
