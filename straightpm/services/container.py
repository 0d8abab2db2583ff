"""服务容器 — 统一依赖注入

同一容器内的实例共享状态：会话（注册表、构建缓存）、后端注册表、锁文件。
CLI 通过 get_container() 获取服务，而非直接 import 构造。

依赖关系图（→ 表示依赖）:
  packages → session, backends, host, lockfiles
  session  → sources, backends

用法:
    container = ServiceContainer()
    svc = container.packages             # 懒加载

    cfg = Config.from_file("straightpm.yml")
    container = ServiceContainer(config=cfg)
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from straightpm.core.config import Config
    from straightpm.core.protocols import Host, RecipeSource
    from straightpm.core.session import Session
    from straightpm.services.package_service import PackageService
    from straightpm.services.repo.backends import BackendRegistry
    from straightpm.services.repo.lockfile import VersionLockfiles
    from straightpm.utils.shell import CommandExecutor

logger = logging.getLogger(__name__)


class ServiceContainer:
    """懒加载服务容器

    executor 可注入假执行器，git 后端和宿主命令都经由它执行。
    """

    def __init__(self, config: Config | None = None, executor: CommandExecutor | None = None) -> None:
        self._instances: dict[str, object] = {}
        if config is None:
            from straightpm.core.config import get_config
            config = get_config()
        self._config = config
        self._executor = executor

    @property
    def config(self) -> Config:
        return self._config

    @property
    def backends(self) -> BackendRegistry:
        if "backends" not in self._instances:
            from straightpm.services.repo.backends import BackendRegistry
            self._instances["backends"] = BackendRegistry.from_config(self._config, self._executor)
        return self._instances["backends"]  # type: ignore[return-value]

    @property
    def sources(self) -> list[RecipeSource]:
        if "sources" not in self._instances:
            from straightpm.core.recipe.sources import YamlRecipeSource
            self._instances["sources"] = [YamlRecipeSource(p) for p in self._config.recipe_files]
        return self._instances["sources"]  # type: ignore[return-value]

    @property
    def lockfiles(self) -> VersionLockfiles:
        if "lockfiles" not in self._instances:
            from straightpm.services.repo.lockfile import VersionLockfiles
            self._instances["lockfiles"] = VersionLockfiles(
                self._config.versions_dir, self._config.profiles,
            )
        return self._instances["lockfiles"]  # type: ignore[return-value]

    @property
    def host(self) -> Host:
        if "host" not in self._instances:
            from straightpm.services.build.host import CommandHost
            self._instances["host"] = CommandHost.from_config(self._config, self._executor)
        return self._instances["host"]  # type: ignore[return-value]

    @property
    def session(self) -> Session:
        if "session" not in self._instances:
            from straightpm.core.session import Session
            backends = self.backends
            self._instances["session"] = Session(
                self._config,
                sources=self.sources,
                backend_for=backends.find,
                keywords_for=backends.keywords,
            )
        return self._instances["session"]  # type: ignore[return-value]

    @property
    def packages(self) -> PackageService:
        if "packages" not in self._instances:
            from straightpm.services.package_service import PackageService
            self._instances["packages"] = PackageService(
                self.session, self.backends, self.host, self.lockfiles,
            )
        return self._instances["packages"]  # type: ignore[return-value]


# ---- 全局单例 ----

_global: ServiceContainer | None = None
_global_lock = threading.Lock()


def get_container() -> ServiceContainer:
    """获取全局 ServiceContainer 单例（线程安全）"""
    global _global  # noqa: PLW0603
    if _global is not None:
        return _global
    with _global_lock:
        if _global is None:
            _global = ServiceContainer()
        return _global


def reset_container() -> None:
    """重置全局容器（仅用于测试）"""
    global _global  # noqa: PLW0603
    with _global_lock:
        _global = None
