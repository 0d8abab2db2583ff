"""配方注册表与冲突检测

三个进程内缓存，只能一起重置:
  - recipes:  package -> Recipe（冲突检测的唯一依据）
  - repos:    local_repo -> Recipe（最近注册者胜出，仅用于检测同仓不同包的后端配置冲突）
  - profiles: package -> {profile}

冲突只告警不报错：拒绝继续的包管理器不可接受，但用户必须被告知。
每次注册最多一条同仓冲突告警 + 一条同包冲突告警（只报第一个不一致的字段）。
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable

from straightpm.core.models import ConflictWarning, Recipe

logger = logging.getLogger(__name__)

# 同包重复声明时额外比较的构建相关字段
BUILD_FIELDS = ("local_repo", "files")


class RecipeRegistry:
    """配方注册表"""

    def __init__(self, keywords_for: Callable[[str], Iterable[str]]) -> None:
        """keywords_for: backend_type -> 该后端相关的配方字段名"""
        self._keywords_for = keywords_for
        self.recipes: dict[str, Recipe] = {}
        self.repos: dict[str, Recipe] = {}
        self.profiles: dict[str, set[str]] = {}
        self.conflicts: list[ConflictWarning] = []
        self.profile_cache_valid = False

    def reset(self) -> None:
        """三个缓存一起清空"""
        self.recipes.clear()
        self.repos.clear()
        self.profiles.clear()
        self.conflicts.clear()
        self.profile_cache_valid = False

    def backend_fields(self, backend_type: str) -> list[str]:
        """后端相关字段：后端标签本身 + 后端声明的关键字"""
        return ["type", *sorted(self._keywords_for(backend_type))]

    def get(self, package: str) -> Recipe | None:
        return self.recipes.get(package)

    def for_repo(self, local_repo: str) -> Recipe | None:
        return self.repos.get(local_repo)

    def packages_in_profile(self, profile: str) -> list[str]:
        return sorted(p for p, labels in self.profiles.items() if profile in labels)

    def register(
        self, recipe: Recipe, *, profile: str = "default", faithful: bool = False,
    ) -> list[ConflictWarning]:
        """注册规范配方，返回本次产生的冲突告警"""
        found: list[ConflictWarning] = []
        fields = self.backend_fields(recipe.backend_type)

        other = self.repos.get(recipe.local_repo)
        if other is not None and other.package != recipe.package:
            conflict = _first_mismatch(other, recipe, fields)
            if conflict is not None:
                name, old, new = conflict
                warning = ConflictWarning(recipe.package, other.package, name, old, new)
                logger.warning(
                    "包 %r 与 %r 共用代码仓 %r 但配方不兼容 (%s 不能同时为 %r 和 %r)",
                    other.package, recipe.package, recipe.local_repo, name, old, new,
                )
                found.append(warning)

        previous = self.recipes.get(recipe.package)
        if previous is not None and previous is not recipe:
            conflict = _first_mismatch(previous, recipe, [*fields, *BUILD_FIELDS])
            if conflict is not None:
                name, old, new = conflict
                warning = ConflictWarning(recipe.package, recipe.package, name, old, new)
                logger.warning(
                    "包 %r 存在两个不兼容的配方 (%s 不能同时为 %r 和 %r)",
                    recipe.package, name, old, new,
                )
                found.append(warning)

        self.recipes[recipe.package] = recipe
        self.repos[recipe.local_repo] = recipe
        self.profiles.setdefault(recipe.package, set()).add(profile)
        if not faithful:
            self.profile_cache_valid = False

        self.conflicts.extend(found)
        logger.debug("配方已注册: %s (repo=%s, profile=%s)", recipe.package, recipe.local_repo, profile)
        return found


def _first_mismatch(
    old: Recipe, new: Recipe, fields: Iterable[str],
) -> tuple[str, object, object] | None:
    for name in fields:
        a, b = old.field_value(name), new.field_value(name)
        if a != b:
            return name, a, b
    return None
