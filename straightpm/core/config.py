"""集中配置管理

支持从 YAML 文件加载 + 编程式覆盖。所有路径默认相对于 base_dir。
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path

import yaml

from straightpm.core.exceptions import ConfigError
from straightpm.utils.yaml_io import load_yaml

logger = logging.getLogger(__name__)

STALE_FALLBACK_POLICIES = ("individual", "fold")


@dataclass
class Config:
    """全局配置"""

    # 目录
    base_dir: str = ".straightpm"
    repos_dir: str = ""
    build_dir: str = ""
    build_cache_file: str = ""
    versions_dir: str = ""
    packages_file: str = "packages.yml"
    recipe_files: list[str] = field(default_factory=lambda: ["recipes.yml"])

    # 配方 / profile
    default_backend: str = "git"
    profile: str = "default"
    profiles: dict[str, str] = field(default_factory=lambda: {"default": "default.yml"})
    builtin_packages: list[str] = field(default_factory=lambda: ["emacs"])

    # 修改检测
    check_modifications: bool = True
    stale_fallback: str = "individual"  # individual | fold
    scan_exclude_dirs: list[str] = field(default_factory=lambda: [".git", ".hg", ".svn"])

    # git 后端
    git_host: str = "github"
    git_protocol: str = "https"

    # 宿主命令模板，可用占位符 {package} {build_dir}
    autoloads_cmd: str = ""
    compile_cmd: str = ""
    activate_cmd: str = ""

    extra: dict = field(default_factory=dict)

    def __post_init__(self) -> None:
        base = Path(self.base_dir)
        self.repos_dir = self.repos_dir or str(base / "repos")
        self.build_dir = self.build_dir or str(base / "build")
        self.build_cache_file = self.build_cache_file or str(base / "build-cache.json")
        self.versions_dir = self.versions_dir or str(base / "versions")
        if self.stale_fallback not in STALE_FALLBACK_POLICIES:
            raise ConfigError(
                f"stale_fallback 取值非法: {self.stale_fallback}，"
                f"可选: {', '.join(STALE_FALLBACK_POLICIES)}"
            )

    @classmethod
    def from_file(cls, path: str = "straightpm.yml") -> Config:
        """从 YAML 文件加载配置，不存在则返回默认"""
        try:
            data = load_yaml(path)
        except (yaml.YAMLError, ValueError) as e:
            raise ConfigError(f"配置文件无法解析: {path}: {e}") from e
        if not data:
            return cls()
        known = {f.name for f in cls.__dataclass_fields__.values()}
        matched = {k: v for k, v in data.items() if k in known}
        extra = {k: v for k, v in data.items() if k not in known}
        cfg = cls(**matched)
        cfg.extra = extra
        return cfg

    def to_dict(self) -> dict:
        return asdict(self)


# 全局单例，由 CLI 入口显式初始化
_current: Config | None = None


def get_config() -> Config:
    """获取当前配置（未初始化则返回默认值）"""
    global _current  # noqa: PLW0603
    if _current is None:
        _current = Config()
    return _current


def init_config(path: str = "straightpm.yml") -> Config:
    """从文件初始化全局配置"""
    global _current  # noqa: PLW0603
    _current = Config.from_file(path)
    logger.info("配置已加载: %s", path)
    return _current
