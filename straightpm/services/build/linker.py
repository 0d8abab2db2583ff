"""构建目录链接

删除包的旧构建产物，按 files 指令把源文件以符号链接形式重建到构建目录。
"""

from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path

from straightpm.core.files import expand_files
from straightpm.core.models import FileMapping, Recipe

logger = logging.getLogger(__name__)


def link_package(recipe: Recipe, src_dir: Path, build_dir: Path) -> FileMapping:
    """重建构建目录，返回实际建立的映射"""
    if build_dir.is_symlink() or build_dir.is_file():
        build_dir.unlink()
    elif build_dir.exists():
        shutil.rmtree(build_dir)
    build_dir.mkdir(parents=True)

    mapping = expand_files(recipe.files, str(src_dir), str(build_dir))
    for src, dest in mapping:
        Path(dest).parent.mkdir(parents=True, exist_ok=True)
        os.symlink(src, dest)
    logger.info("已链接 %s: %d 个文件 -> %s", recipe.package, len(mapping), build_dir)
    return mapping
