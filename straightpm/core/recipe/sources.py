"""配方来源

职责:
- 从 YAML 索引文件加载配方定义
- 提供内存映射来源（编程式注册 / 测试）

YAML 索引格式:
    recipes:
      magit:
        repo: magit/magit
        files: ["lisp/*.el", "docs/*.texi"]
      dash:
        repo: magnars/dash.el
"""

from __future__ import annotations

import copy
import logging
from pathlib import Path
from typing import Any

import yaml

from straightpm.core.exceptions import ConfigError
from straightpm.utils.yaml_io import load_yaml

logger = logging.getLogger(__name__)


class MappingRecipeSource:
    """内存映射配方来源"""

    def __init__(self, recipes: dict[str, dict[str, Any]] | None = None, name: str = "mapping") -> None:
        self.name = name
        self._recipes: dict[str, dict[str, Any]] = dict(recipes or {})

    def add(self, package: str, props: dict[str, Any]) -> None:
        self._recipes[package] = props

    def retrieve(self, package: str) -> dict[str, Any] | None:
        props = self._recipes.get(package)
        if props is None:
            return None
        # 返回副本，调用方可自由修改
        return {"package": package, **copy.deepcopy(props)}

    def list(self) -> list[str]:
        return sorted(self._recipes)


class YamlRecipeSource(MappingRecipeSource):
    """YAML 文件配方来源，首次查询时加载"""

    def __init__(self, path: str | Path) -> None:
        super().__init__(name=Path(path).stem)
        self.path = Path(path)
        self._loaded = False

    def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        if not self.path.exists():
            self._loaded = True
            logger.warning("配方索引不存在: %s", self.path)
            return
        try:
            data = load_yaml(self.path)
        except (yaml.YAMLError, ValueError) as e:
            raise ConfigError(f"配方索引无法解析: {self.path}: {e}") from e
        recipes = data.get("recipes") or {}
        if not isinstance(recipes, dict):
            raise ConfigError(f"配方索引 {self.path} 的 recipes 必须是映射")
        self._loaded = True
        for name, props in recipes.items():
            if props is None:
                props = {}
            if not isinstance(props, dict):
                logger.warning("配方索引 %s 中 %s 的定义不是字典，已忽略", self.path, name)
                continue
            self._recipes[str(name)] = props
        logger.info("已加载 %d 个配方: %s", len(self._recipes), self.path)

    def retrieve(self, package: str) -> dict[str, Any] | None:
        self._ensure_loaded()
        return super().retrieve(package)

    def list(self) -> list[str]:
        self._ensure_loaded()
        return super().list()
