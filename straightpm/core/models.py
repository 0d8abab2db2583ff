"""核心数据模型

配方、构建缓存条目、流水线状态等数据类集中定义，各模块统一从此处导入。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

# (源路径, 目标路径) 列表，均为绝对路径
FileMapping = list[tuple[str, str]]

# 配方中由核心解释的键，其余键一律视为后端字段
CORE_RECIPE_KEYS = frozenset({
    "package", "local_repo", "type", "files",
    "build", "no_build", "no_autoloads", "no_compile",
})

BUILTIN_BACKEND = "built-in"


# =========================================================================
# 配方
# =========================================================================


@dataclass
class Recipe:
    """单个包的规范配方

    local_repo 可被多个包共享；backend_fields 对核心不透明，
    由 backend_type 对应的后端解释。
    """

    package: str
    local_repo: str
    backend_type: str = "git"
    files: list[Any] | None = None
    no_build: bool = False
    no_autoloads: bool = False
    no_compile: bool = False
    backend_fields: dict[str, Any] = field(default_factory=dict)
    explicit: bool = False  # 用户直接给出（而非从配方来源解析）

    @property
    def host_provided(self) -> bool:
        return self.backend_type == BUILTIN_BACKEND

    def field_value(self, name: str) -> Any:
        """按字段名取值，后端字段与核心字段统一寻址（冲突检测用）"""
        if name == "type":
            return self.backend_type
        if name == "local_repo":
            return self.local_repo
        if name == "files":
            if self.files is None:
                return None
            return normalize_files_directive(self.files)
        return self.backend_fields.get(name)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "package": self.package,
            "local_repo": self.local_repo,
            "type": self.backend_type,
        }
        if self.files is not None:
            data["files"] = normalize_files_directive(self.files)
        for flag in ("no_build", "no_autoloads", "no_compile"):
            if getattr(self, flag):
                data[flag] = True
        data.update(self.backend_fields)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Recipe:
        return cls(
            package=str(data["package"]),
            local_repo=str(data.get("local_repo") or data["package"]),
            backend_type=str(data.get("type", "git")),
            files=data.get("files"),
            no_build=bool(data.get("no_build", False)),
            no_autoloads=bool(data.get("no_autoloads", False)),
            no_compile=bool(data.get("no_compile", False)),
            backend_fields={
                k: v for k, v in data.items() if k not in CORE_RECIPE_KEYS
            },
        )


def normalize_files_directive(directive: list[Any]) -> list[Any]:
    """把 files 指令中的 (src, dest) 元组转成可序列化的单键字典"""
    out: list[Any] = []
    for entry in directive:
        if isinstance(entry, tuple):
            out.append({entry[0]: entry[1]})
        elif isinstance(entry, list):
            out.append(normalize_files_directive(entry))
        else:
            out.append(entry)
    return out


@dataclass
class ConflictWarning:
    """一次配方冲突告警记录"""

    package: str
    other: str  # 另一方包名；同包重复声明时与 package 相同
    field: str
    old: Any
    new: Any


# =========================================================================
# 构建缓存
# =========================================================================


@dataclass
class BuildCacheEntry:
    """单个包的构建缓存条目

    last_build_time 为空表示上次构建未完成，必须重建。
    """

    last_build_time: float | None = None
    dependencies: list[str] = field(default_factory=list)
    recipe: Recipe | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "last_build_time": self.last_build_time,
            "dependencies": list(self.dependencies),
            "recipe": self.recipe.to_dict() if self.recipe else None,
        }


# =========================================================================
# 流水线选项与结果
# =========================================================================


class FlagKind(str, Enum):
    ALWAYS = "always"
    NEVER = "never"
    PREDICATE = "predicate"


@dataclass(frozen=True)
class Flag:
    """三态开关: Always | Never | Predicate(fn)

    谓词签名为 fn(package, available) -> bool，
    available 表示代码仓是否已在本地检出。
    """

    kind: FlagKind
    predicate: Callable[[str, bool], bool] | None = None

    @classmethod
    def when(cls, predicate: Callable[[str, bool], bool]) -> Flag:
        return cls(FlagKind.PREDICATE, predicate)

    def applies(self, package: str, available: bool) -> bool:
        if self.kind is FlagKind.ALWAYS:
            return True
        if self.kind is FlagKind.NEVER:
            return False
        assert self.predicate is not None
        return bool(self.predicate(package, available))


ALWAYS = Flag(FlagKind.ALWAYS)
NEVER = Flag(FlagKind.NEVER)
# 懒加载模式：仅当已检出时才继续
LAZY = Flag.when(lambda _package, available: not available)


class PackageState(str, Enum):
    """单次 use_package 的状态机节点"""

    UNRESOLVED = "unresolved"
    REGISTERED = "registered"
    CHECKED_OUT = "checked_out"
    SKIPPED = "skipped"
    BUILT = "built"
    ACTIVATED = "activated"


@dataclass
class UseResult:
    """use_package 的结果"""

    package: str
    state: PackageState
    built: bool = False
    provided_by_host: bool = False

    @property
    def installed(self) -> bool:
        return self.state in (
            PackageState.CHECKED_OUT, PackageState.SKIPPED,
            PackageState.BUILT, PackageState.ACTIVATED,
        )
