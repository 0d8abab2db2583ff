"""files 指令展开 — 纯函数，把 files 指令变成 源路径 -> 构建目录路径 的映射

指令是一个列表，每个条目为以下之一:

  "lisp/*.el"              通配符，匹配结果映射到 <prefix><文件名>
  ("src.el", "dst.el")     显式重命名（YAML 中写成单键字典 {src.el: dst.el}），
                           源文件不存在则忽略
  ["sub", ...]             子目录：其余条目递归展开，目标路径前加 sub/；
                           子列表自身的排除项会从外层已有映射中剔除
  [":exclude", ...]        排除：其余条目按普通指令递归展开，外层已有映射中
                           源路径相同者全部删除，并作为排除项向上传递
  ":defaults"              原地替换为 DEFAULT_FILES_DIRECTIVE

严格从左到右处理；嵌套的 :exclude 会抵消外层 :exclude（双重排除即取消排除）。
最终结果按目标路径去重，保留文本上最后一个映射。
"""

from __future__ import annotations

import glob
import os
from collections.abc import Iterator, Sequence
from typing import Any

from straightpm.core.exceptions import FilesDirectiveError
from straightpm.core.models import FileMapping

DEFAULTS = ":defaults"
EXCLUDE = ":exclude"

DEFAULT_FILES_DIRECTIVE: list[Any] = [
    "*.el", "*.el.in", "dir",
    "*.info", "*.texi", "*.texinfo",
    "doc/dir", "doc/*.info", "doc/*.texi", "doc/*.texinfo",
    "lisp/*.el",
    [EXCLUDE, ".dir-locals.el", "test.el", "tests.el", "*-test.el", "*-tests.el",
     "LICENSE", "README*", "*-pkg.el"],
]


def expand_files(
    directive: Sequence[Any] | None, src_dir: str, dest_dir: str,
) -> FileMapping:
    """展开 files 指令，返回 [(绝对源路径, 绝对目标路径)]

    directive 为空时使用默认指令；非法条目抛 FilesDirectiveError。
    """
    if not directive:
        directive = DEFAULT_FILES_DIRECTIVE
    src_root = os.path.abspath(src_dir)
    dest_root = os.path.abspath(dest_dir)
    mappings, _ = _expand(directive, src_root, dest_root, "")

    # 按目标去重，保留最后一个映射，输出顺序同其最后出现位置
    seen: set[str] = set()
    result: FileMapping = []
    for src, dest in reversed(mappings):
        if dest in seen:
            continue
        seen.add(dest)
        result.append((src, dest))
    result.reverse()
    return result


def _expand(
    directive: Sequence[Any], src_root: str, dest_root: str, prefix: str,
) -> tuple[FileMapping, list[str]]:
    mappings: FileMapping = []
    exclusions: list[str] = []

    for entry in _splice_defaults(directive):
        if isinstance(entry, str):
            if entry.startswith(":"):
                raise FilesDirectiveError(f"files 指令中的未知标记: {entry!r}")
            for path in sorted(glob.glob(os.path.join(glob.escape(src_root), entry))):
                mappings.append(
                    (path, os.path.join(dest_root, prefix + os.path.basename(path))),
                )
            continue

        pair = _as_pair(entry)
        if pair is not None:
            src = os.path.join(src_root, pair[0])
            if os.path.exists(src):
                mappings.append((src, os.path.join(dest_root, prefix + pair[1])))
            continue

        if isinstance(entry, list) and entry and isinstance(entry[0], str):
            head, rest = entry[0], entry[1:]
            if head == EXCLUDE:
                excluded, _ = _expand(rest, src_root, dest_root, prefix)
                for src, _dest in excluded:
                    exclusions.append(src)
                    mappings = [m for m in mappings if m[0] != src]
                continue
            if head.startswith(":"):
                raise FilesDirectiveError(f"子列表不能以标记 {head!r} 开头")
            sub_prefix = prefix + head.strip("/") + "/"
            sub_mappings, sub_exclusions = _expand(rest, src_root, dest_root, sub_prefix)
            if sub_exclusions:
                dropped = set(sub_exclusions)
                mappings = [m for m in mappings if m[0] not in dropped]
            mappings.extend(sub_mappings)
            continue

        raise FilesDirectiveError(f"files 指令中的非法条目: {entry!r}")

    return mappings, exclusions


def _splice_defaults(directive: Sequence[Any]) -> Iterator[Any]:
    for entry in directive:
        if entry == DEFAULTS:
            yield from DEFAULT_FILES_DIRECTIVE
        else:
            yield entry


def _as_pair(entry: Any) -> tuple[str, str] | None:
    """(src, dest) 元组或 {src: dest} 单键字典，否则返回 None"""
    if isinstance(entry, tuple):
        if len(entry) == 2 and all(isinstance(x, str) for x in entry):
            return entry[0], entry[1]
        raise FilesDirectiveError(f"重命名条目必须是 (源, 目标) 字符串对: {entry!r}")
    if isinstance(entry, dict):
        if len(entry) == 1:
            (src, dest), = entry.items()
            if isinstance(src, str) and isinstance(dest, str):
                return src, dest
        raise FilesDirectiveError(f"重命名条目必须是单个 源: 目标 键值对: {entry!r}")
    return None
