"""配方模块

- sources.py: 配方来源（YAML 索引 / 内存映射）
- normalizer.py: 用户输入 -> 规范 Recipe
- registry.py: 规范配方注册表与冲突检测
"""

from straightpm.core.recipe.normalizer import RecipeNormalizer
from straightpm.core.recipe.registry import RecipeRegistry
from straightpm.core.recipe.sources import MappingRecipeSource, YamlRecipeSource

__all__ = [
    "RecipeNormalizer",
    "RecipeRegistry",
    "MappingRecipeSource",
    "YamlRecipeSource",
]
