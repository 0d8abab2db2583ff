"""包服务 — 依赖解析与构建流水线

单个包的状态机:
    Unresolved -> Registered -> CheckedOut -> {Skipped | Built} -> Activated

  - 配方无法解析: 终止于 Unresolved（required=True 时抛 RecipeNotFoundError）
  - 宿主自带的包（builtin_packages 或 type: built-in）: 不检出不构建
  - 本地没有检出时克隆（锁文件中有提交则钉住），no_clone 可提前终止
  - no_build（配方或调用方）: 终止于 Skipped，已有构建产物时仍激活
  - 过期或被要求强制重建: 链接文件 -> 提取依赖（先写入构建缓存）
    -> 递归处理依赖 -> autoload -> 编译 -> 写构建缓存
  - 未过期: 递归处理缓存中的依赖，保证依赖先于自身激活
  - 最后激活: 加入 load_path 并调用宿主激活

任一步骤失败都不写构建缓存，下次运行会重试。
每个顶层操作在一个事务内执行，构建缓存只加载 / 写回一次。
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml

from straightpm.core.exceptions import (
    BackendError,
    BuildError,
    ConfigError,
    ExecutionError,
    RecipeNotFoundError,
    StraightError,
    ValidationError,
)
from straightpm.core.models import NEVER, Flag, PackageState, Recipe, UseResult
from straightpm.services.build.linker import link_package
from straightpm.services.build.metadata import package_dependencies
from straightpm.utils.yaml_io import load_yaml

if TYPE_CHECKING:
    from straightpm.core.protocols import Host, VcsBackend
    from straightpm.core.session import Session
    from straightpm.services.repo.backends import BackendRegistry
    from straightpm.services.repo.lockfile import VersionLockfiles

logger = logging.getLogger(__name__)


class PackageService:
    """包管理顶层操作"""

    def __init__(
        self,
        session: Session,
        backends: BackendRegistry,
        host: Host,
        lockfiles: VersionLockfiles | None = None,
    ) -> None:
        self.session = session
        self.backends = backends
        self.host = host
        self.lockfiles = lockfiles
        # 声明过的包 -> 所属 profile（保持声明顺序）
        self.declared: dict[str, str] = {}

    @contextmanager
    def _operation(self) -> Iterator[None]:
        with self.session.transaction.scope():
            self.session.begin_operation()
            yield

    # =====================================================================
    # 声明 / 使用
    # =====================================================================

    def declare(self, recipes: Iterable[Any], profile: str | None = None) -> list[str]:
        """在忠实上下文中规范化并注册一组配方，不检出不构建"""
        session = self.session
        profile = profile or session.profile
        if profile not in session.config.profiles:
            raise ConfigError(f"未配置的 profile: {profile}（可用: {', '.join(session.config.profiles)}）")
        names: list[str] = []
        with self._operation():
            saved = session.faithful, session.profile
            session.faithful, session.profile = True, profile
            try:
                for raw in recipes:
                    recipe = session.normalizer.normalize(raw)
                    if recipe is None:
                        logger.warning("无法解析的包声明，已跳过: %r", raw)
                        continue
                    session.registry.register(recipe, profile=profile, faithful=True)
                    self.declared.setdefault(recipe.package, profile)
                    names.append(recipe.package)
            finally:
                session.faithful, session.profile = saved
        logger.info("profile %s 已声明 %d 个包", profile, len(names))
        return names

    def declare_file(self, path: str | Path) -> list[str]:
        """声明包列表文件中的全部包

        文件格式:
            packages:            # 属于当前 profile
              - magit
              - {package: foo, repo: me/foo.el}
            profiles:
              work: [bar]
        """
        path = Path(path)
        if not path.exists():
            logger.warning("包列表文件不存在: %s", path)
            return []
        try:
            data = load_yaml(path)
        except (yaml.YAMLError, ValueError) as e:
            raise ConfigError(f"包列表文件无法解析: {path}: {e}") from e
        profiles = data.get("profiles") or {}
        if not isinstance(profiles, dict):
            raise ValidationError(f"{path}: profiles 必须是映射")
        groups: list[tuple[str, Any]] = []
        if data.get("packages"):
            groups.append((self.session.profile, data["packages"]))
        groups.extend((str(p), items or []) for p, items in profiles.items())
        names: list[str] = []
        for profile, items in groups:
            if not isinstance(items, list):
                raise ValidationError(f"{path}: profile {profile} 的包列表必须是列表")
            names.extend(self.declare(items, profile))
        return names

    def use_package(
        self,
        raw: Any,
        *,
        no_clone: Flag = NEVER,
        no_build: Flag = NEVER,
        cause: str = "",
        required: bool = False,
    ) -> UseResult:
        """注册、检出、构建并激活一个包"""
        with self._operation():
            return self._use(raw, no_clone=no_clone, no_build=no_build, cause=cause, required=required)

    def use_all(self) -> dict[str, str]:
        """按声明顺序使用全部声明过的包，返回 {包名: 错误}"""
        session = self.session
        failures: dict[str, str] = {}
        with self._operation():
            session.faithful = True
            try:
                for package, profile in self.declared.items():
                    session.profile = profile
                    self._attempt(package, failures, required=True)
            finally:
                session.faithful = False
                session.profile = session.config.profile
            if not failures:
                session.registry.profile_cache_valid = True
        return failures

    # =====================================================================
    # 状态机
    # =====================================================================

    def _use(
        self,
        raw: Any,
        *,
        no_clone: Flag = NEVER,
        no_build: Flag = NEVER,
        cause: str = "",
        required: bool = False,
    ) -> UseResult:
        session = self.session
        if isinstance(raw, str) and raw.strip() in session.config.builtin_packages:
            logger.debug("%s 由宿主提供", raw)
            return UseResult(raw.strip(), PackageState.UNRESOLVED, provided_by_host=True)

        recipe = session.normalizer.normalize(raw)
        if recipe is None:
            if required:
                raise RecipeNotFoundError(f"找不到包的配方: {raw}")
            if cause:
                logger.warning("%s 依赖的包 %s 找不到配方，已跳过", cause, raw)
            return UseResult(str(raw), PackageState.UNRESOLVED)

        package = recipe.package
        session.registry.register(recipe, profile=session.profile, faithful=session.faithful)
        if package in session.visited:
            return UseResult(package, session.visited[package])
        session.visited[package] = PackageState.REGISTERED

        try:
            result = self._advance(recipe, no_clone, no_build, cause)
        except Exception:
            # 失败的包在本次操作内再次遇到时重新尝试，以便错误传递给依赖方
            session.visited.pop(package, None)
            raise
        session.visited[package] = result.state
        return result

    def _advance(self, recipe: Recipe, no_clone: Flag, no_build: Flag, cause: str) -> UseResult:
        session = self.session
        package = recipe.package
        if recipe.host_provided:
            return UseResult(package, PackageState.REGISTERED, provided_by_host=True)

        backend = self.backends.get(recipe.backend_type)
        available = backend.repo_exists(recipe.local_repo)
        if not available:
            if no_clone.applies(package, available):
                logger.info("%s 未检出，按调用方要求跳过", package)
                return UseResult(package, PackageState.REGISTERED)
            self._clone(recipe, backend, cause)
        session.visited[package] = PackageState.CHECKED_OUT

        if recipe.no_build or no_build.applies(package, True):
            if session.build_dir(package).exists():
                self._activate(package)
                return UseResult(package, PackageState.ACTIVATED)
            return UseResult(package, PackageState.SKIPPED)

        built = False
        forced = package in session.rebuild_requested and package not in session.rebuilt
        if forced or session.staleness.is_stale(package, recipe):
            self._build(recipe)
            built = True
        else:
            for dep in session.build_cache.dependencies(package):
                self._use(dep, cause=package)

        self._activate(package)
        return UseResult(package, PackageState.ACTIVATED, built=built)

    def _clone(self, recipe: Recipe, backend: VcsBackend, cause: str) -> None:
        commit = self.lockfiles.lookup(recipe.local_repo) if self.lockfiles else None
        if cause:
            logger.info("克隆 %s（%s 的依赖）", recipe.package, cause)
        else:
            logger.info("克隆 %s", recipe.package)
        if not backend.clone(recipe, commit):
            raise BackendError(f"克隆失败: {recipe.package} ({recipe.local_repo})")

    def _build(self, recipe: Recipe) -> None:
        session = self.session
        package = recipe.package
        src = session.repo_dir(recipe.local_repo)
        out = session.build_dir(package)
        logger.info("构建 %s ...", package, extra={"package": package})
        session.build_cache.invalidate(package)
        try:
            link_package(recipe, src, out)
            deps = package_dependencies(package, out, src)
            session.build_cache.set_dependencies(package, deps)
            for dep in deps:
                self._use(dep, cause=package)
            if not recipe.no_autoloads:
                self.host.generate_autoloads(package, str(out))
            if not recipe.no_compile:
                self.host.compile(package, str(out))
        except (ExecutionError, OSError) as e:
            logger.error("构建失败 %s: %s", package, e, extra={"package": package})
            raise BuildError(package, str(e)) from e

        session.build_cache.finalize_build(package, recipe, deps)
        session.staleness.mark_fresh(package)
        session.rebuilt.add(package)
        logger.info("构建完成: %s", package, extra={"package": package})

    def _activate(self, package: str) -> None:
        session = self.session
        out = str(session.build_dir(package))
        if out in session.load_path:
            return
        try:
            self.host.activate(package, out)
        except ExecutionError as e:
            raise BuildError(package, f"激活失败: {e}") from e
        session.load_path.append(out)
        session.activation_trace.append(package)

    def _attempt(self, package: str, failures: dict[str, str], **kwargs: Any) -> None:
        try:
            self._use(package, **kwargs)
        except StraightError as e:
            logger.error("处理 %s 失败: %s", package, e, extra={"package": package})
            failures[package] = str(e)

    # =====================================================================
    # 检查 / 重建
    # =====================================================================

    def targets(self) -> list[str]:
        """声明过的包在前，其余已注册的包在后"""
        return list(dict.fromkeys([*self.declared, *sorted(self.session.registry.recipes)]))

    def check_package(self, name: str) -> UseResult:
        """使用一个包，仅在过期时重建"""
        with self._operation():
            return self._use(name, required=True)

    def check_all(self) -> dict[str, str]:
        failures: dict[str, str] = {}
        with self._operation():
            for package in self.targets():
                self._attempt(package, failures, required=True)
        return failures

    def rebuild_package(self, name: str) -> UseResult:
        with self._operation():
            self.session.rebuild_requested.add(name)
            return self._use(name, required=True)

    def rebuild_all(self) -> dict[str, str]:
        failures: dict[str, str] = {}
        with self._operation():
            packages = self.targets()
            self.session.rebuild_requested.update(packages)
            for package in packages:
                self._attempt(package, failures, required=True)
        return failures

    # =====================================================================
    # 代码仓操作
    # =====================================================================

    def _recipe_for(self, name: str) -> Recipe:
        session = self.session
        recipe = session.registry.get(name) or session.normalizer.normalize(name)
        if recipe is None:
            raise RecipeNotFoundError(f"找不到包的配方: {name}")
        session.registry.register(recipe, profile=session.profile, faithful=session.faithful)
        return recipe

    def _checked_out(self, recipe: Recipe) -> VcsBackend | None:
        if recipe.host_provided:
            return None
        backend = self.backends.get(recipe.backend_type)
        if not backend.repo_exists(recipe.local_repo):
            raise BackendError(f"代码仓未检出: {recipe.local_repo} ({recipe.package})")
        return backend

    def _repo_recipes(self) -> dict[str, Recipe]:
        """local_repo -> 代表配方，共享代码仓只处理一次"""
        repos: dict[str, Recipe] = {}
        for package in self.targets():
            recipe = self.session.registry.get(package)
            if recipe is not None and not recipe.host_provided:
                repos.setdefault(recipe.local_repo, recipe)
        return repos

    def _for_each_repo(self, action: str, name: str | None = None, **kwargs: Any) -> dict[str, str]:
        failures: dict[str, str] = {}
        with self._operation():
            recipes = [self._recipe_for(name)] if name else list(self._repo_recipes().values())
            for recipe in recipes:
                try:
                    backend = self._checked_out(recipe)
                    if backend is None:
                        continue
                    if not getattr(backend, action)(recipe, **kwargs):
                        raise BackendError(f"{action} 失败: {recipe.local_repo}")
                except StraightError as e:
                    if name:
                        raise
                    logger.error("%s %s 失败: %s", action, recipe.local_repo, e)
                    failures[recipe.package] = str(e)
        return failures

    def normalize_package(self, name: str) -> None:
        """把包所在代码仓调整到与配方一致"""
        self._for_each_repo("ensure_local_state_matches", name)

    def normalize_all(self) -> dict[str, str]:
        return self._for_each_repo("ensure_local_state_matches")

    def pull_package(self, name: str, upstream: bool = False) -> None:
        self._for_each_repo("pull", name, from_upstream=upstream)

    def pull_all(self, upstream: bool = False) -> dict[str, str]:
        return self._for_each_repo("pull", from_upstream=upstream)

    def push_package(self, name: str) -> None:
        self._for_each_repo("push", name)

    def push_all(self) -> dict[str, str]:
        return self._for_each_repo("push")

    # =====================================================================
    # 版本锁定
    # =====================================================================

    def freeze_versions(self, force: bool = False) -> dict[str, Path]:
        """把每个已注册代码仓的当前提交写入所属 profile 的锁文件"""
        if self.lockfiles is None:
            raise ValidationError("未配置锁文件目录")
        registry = self.session.registry
        if not registry.profile_cache_valid:
            if not force:
                raise ValidationError("包列表可能不完整（未完成一次完整的初始化运行），使用 --force 强制写入")
            logger.warning("包列表可能不完整，仍按 --force 写入锁文件")

        by_profile: dict[str, dict[str, str]] = {}
        with self._operation():
            for package, recipe in sorted(registry.recipes.items()):
                if recipe.host_provided:
                    continue
                backend = self.backends.get(recipe.backend_type)
                if not backend.repo_exists(recipe.local_repo):
                    logger.warning("代码仓未检出，跳过: %s", recipe.local_repo)
                    continue
                commit = backend.current_commit(recipe.local_repo)
                if commit is None:
                    raise BackendError(f"无法获取当前提交: {recipe.local_repo}")
                for profile in registry.profiles.get(package) or {self.session.profile}:
                    by_profile.setdefault(profile, {})[recipe.local_repo] = commit

        # 先确认全部 profile 都有锁文件路径，避免只写入一部分
        for profile in by_profile:
            self.lockfiles.path_for(profile)
        written: dict[str, Path] = {}
        for profile, repos in by_profile.items():
            written[profile] = self.lockfiles.write(profile, repos)
        return written

    def thaw_versions(self) -> dict[str, str]:
        """把每个锁定的代码仓检出到锁文件中的提交，返回 {代码仓: 错误}"""
        if self.lockfiles is None:
            raise ValidationError("未配置锁文件目录")
        failures: dict[str, str] = {}
        with self._operation():
            for repo, commit in sorted(self.lockfiles.merged().items()):
                recipe = self.session.registry.for_repo(repo)
                tag = recipe.backend_type if recipe else self.session.config.default_backend
                backend = self.backends.get(tag)
                if not backend.repo_exists(repo):
                    logger.warning("代码仓未检出，跳过: %s", repo)
                    continue
                if not backend.checkout_commit(repo, commit):
                    failures[repo] = f"检出 {commit} 失败"
                else:
                    logger.info("%s -> %s", repo, commit[:12])
        return failures

    # =====================================================================
    # 清理
    # =====================================================================

    def prune_build(self) -> list[str]:
        """删除本次会话中未注册的包的构建缓存条目与构建目录"""
        session = self.session
        keep = set(session.registry.recipes)
        if not keep:
            logger.warning("本次会话没有注册任何包，跳过清理")
            return []
        with self._operation():
            removed = set(session.build_cache.prune(keep))
            build_root = Path(session.config.build_dir)
            if build_root.is_dir():
                for child in build_root.iterdir():
                    if child.name in keep:
                        continue
                    if child.is_dir() and not child.is_symlink():
                        shutil.rmtree(child)
                    else:
                        child.unlink()
                    removed.add(child.name)
        if removed:
            logger.info("已清理: %s", ", ".join(sorted(removed)))
        return sorted(removed)

    def list_recipes(self) -> dict[str, list[str]]:
        """各配方来源提供的包名"""
        return {
            getattr(source, "name", str(source)): source.list()
            for source in self.session.normalizer.sources
        }
