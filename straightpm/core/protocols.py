"""协作方协议定义

核心只依赖这些窄接口：版本控制后端、配方来源、宿主（autoload / 编译 / 激活）。
使用 typing.Protocol 而非 ABC，现有类无需修改继承关系即可满足协议。
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from straightpm.core.models import Recipe


# =========================================================================
# 版本控制后端协议
# =========================================================================

class VcsBackend(Protocol):
    """版本控制后端协议

    每种 backend_type 对应一个实现；所有操作返回成功与否，
    交互式冲突处理由后端自行负责，对核心不透明。
    """

    def clone(self, recipe: Recipe, commit: str | None = None) -> bool:
        """克隆代码仓，commit 非空时检出到该提交"""
        ...

    def ensure_local_state_matches(self, recipe: Recipe) -> bool:
        """幂等地把本地工作区调整到与配方一致"""
        ...

    def pull(self, recipe: Recipe, from_upstream: bool = False) -> bool:
        ...

    def push(self, recipe: Recipe) -> bool:
        ...

    def checkout_commit(self, local_repo: str, commit: str) -> bool:
        ...

    def current_commit(self, local_repo: str) -> str | None:
        ...

    def derive_repo_name(self, recipe: Recipe) -> str | None:
        """从后端字段推导本地代码仓目录名"""
        ...

    def relevant_keywords(self) -> set[str]:
        """后端相关的配方字段名，冲突检测与共享复制都基于它"""
        ...

    def repo_exists(self, local_repo: str) -> bool:
        """本地是否已有检出"""
        ...


# =========================================================================
# 配方来源协议
# =========================================================================

class RecipeSource(Protocol):
    """配方来源协议 — 按包名查找配方"""

    name: str

    def retrieve(self, package: str) -> dict[str, Any] | None:
        """返回配方属性字典，找不到返回 None"""
        ...

    def list(self) -> list[str]:
        """列出可提供的全部包名"""
        ...


# =========================================================================
# 宿主协议
# =========================================================================

class Host(Protocol):
    """宿主运行时协议

    autoload 汇总、编译、激活对核心都是不透明操作，失败抛 ExecutionError。
    """

    def generate_autoloads(self, package: str, build_dir: str) -> None:
        ...

    def compile(self, package: str, build_dir: str) -> None:
        ...

    def activate(self, package: str, build_dir: str) -> None:
        ...
