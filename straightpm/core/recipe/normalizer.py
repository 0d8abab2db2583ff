"""配方规范化

把用户输入（裸包名 / 属性字典 / (名称, 属性) 二元组）转成规范 Recipe:

  1. 裸包名若已注册过，直接返回缓存的 Recipe（保证为共享依赖指定过的
     自定义配方不会被之后的裸名引用覆盖）
  2. 裸包名否则按顺序查询配方来源，第一个命中者胜出；都找不到返回 None
  3. 填充默认值：backend_type、local_repo（后端推导名，退化为包名）
  4. 来自配方来源的配方，若其 local_repo 已有规范配方，
     后端字段整体沿用该配方（多包共仓时 fork 等自定义配置自动继承）
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING, Any

from straightpm.core.exceptions import RecipeError
from straightpm.core.models import BUILTIN_BACKEND, CORE_RECIPE_KEYS, Recipe

if TYPE_CHECKING:
    from straightpm.core.protocols import RecipeSource, VcsBackend
    from straightpm.core.recipe.registry import RecipeRegistry

logger = logging.getLogger(__name__)


class RecipeNormalizer:
    """配方规范化器"""

    def __init__(
        self,
        registry: RecipeRegistry,
        sources: Sequence[RecipeSource],
        backend_for: Callable[[str], VcsBackend | None],
        default_backend: str = "git",
    ) -> None:
        self.registry = registry
        self.sources = list(sources)
        self._backend_for = backend_for
        self.default_backend = default_backend

    def normalize(self, raw: Any) -> Recipe | None:
        """规范化配方，裸名无法解析时返回 None"""
        if isinstance(raw, str):
            name = raw.strip()
            if not name:
                raise RecipeError("包名不能为空")
            cached = self.registry.get(name)
            if cached is not None:
                return cached
            props = self.lookup(name)
            if props is None:
                logger.info("任何配方来源都找不到包: %s", name)
                return None
            return self._build(name, props, explicit=False)

        name, props = _split_literal(raw)
        return self._build(name, props, explicit=True)

    def lookup(self, name: str) -> dict[str, Any] | None:
        """按顺序查询配方来源"""
        for source in self.sources:
            props = source.retrieve(name)
            if props is not None:
                logger.debug("配方 %s 来自 %s", name, getattr(source, "name", source))
                return props
        return None

    def _build(self, name: str, props: dict[str, Any], *, explicit: bool) -> Recipe:
        props = copy.deepcopy(props)
        props.pop("package", None)
        backend_type = str(props.pop("type", None) or self.default_backend)

        files = props.pop("files", None)
        if files is not None and not isinstance(files, list):
            raise RecipeError(f"包 {name} 的 files 必须是列表: {files!r}")

        no_build = bool(props.pop("no_build", False))
        if "build" in props:
            no_build = no_build or props.pop("build") is False

        recipe = Recipe(
            package=name,
            local_repo="",
            backend_type=backend_type,
            files=files,
            no_build=no_build,
            no_autoloads=bool(props.pop("no_autoloads", False)),
            no_compile=bool(props.pop("no_compile", False)),
            explicit=explicit,
        )
        local_repo = props.pop("local_repo", None)
        recipe.backend_fields = {k: v for k, v in props.items() if k not in CORE_RECIPE_KEYS}

        if local_repo:
            recipe.local_repo = str(local_repo)
        else:
            recipe.local_repo = self._derive_repo_name(recipe) or name

        if not explicit:
            self._inherit_repo_config(recipe)
        return recipe

    def _derive_repo_name(self, recipe: Recipe) -> str | None:
        if recipe.backend_type == BUILTIN_BACKEND:
            return None
        backend = self._backend_for(recipe.backend_type)
        if backend is None:
            return None
        return backend.derive_repo_name(recipe)

    def _inherit_repo_config(self, recipe: Recipe) -> None:
        shared = self.registry.for_repo(recipe.local_repo)
        if shared is None or shared.package == recipe.package:
            return
        recipe.backend_type = shared.backend_type
        for keyword in self.registry.backend_fields(shared.backend_type)[1:]:
            if keyword in shared.backend_fields:
                recipe.backend_fields[keyword] = copy.deepcopy(shared.backend_fields[keyword])
            else:
                recipe.backend_fields.pop(keyword, None)
        logger.debug(
            "包 %s 沿用共享代码仓 %s 的后端配置 (来自 %s)",
            recipe.package, recipe.local_repo, shared.package,
        )


def _split_literal(raw: Any) -> tuple[str, dict[str, Any]]:
    """拆出 (包名, 属性)，格式非法抛 RecipeError"""
    if isinstance(raw, dict):
        name = raw.get("package")
        if not isinstance(name, str) or not name.strip():
            raise RecipeError(f"配方缺少 package 字段: {raw!r}")
        return name.strip(), {k: v for k, v in raw.items() if k != "package"}
    if (
        isinstance(raw, (list, tuple)) and len(raw) == 2
        and isinstance(raw[0], str) and raw[0].strip()
        and isinstance(raw[1], dict)
    ):
        return raw[0].strip(), dict(raw[1])
    raise RecipeError(f"无法识别的配方格式: {raw!r}")
