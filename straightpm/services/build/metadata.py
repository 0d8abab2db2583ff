"""包元数据解析 — 提取依赖包名

查找顺序:
  1. <package>-pkg.el 里的 define-package 形式（第 4 个参数）
  2. <package>.el 文件头的 Package-Requires: 注释（可跨多行）

Package-Requires 形如 ((emacs "25.1") (dash "2.19"))，只取包名，保持顺序去重。
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any

from straightpm.core.exceptions import ValidationError

logger = logging.getLogger(__name__)

_HEADER_RE = re.compile(r"^;+\s*Package-Requires\s*:(.*)$", re.IGNORECASE | re.MULTILINE)
_TOKEN_RE = re.compile(
    r"""\s*(?:(?P<open>\()|(?P<close>\))|(?P<quote>')|"(?P<str>(?:[^"\\]|\\.)*)"|(?P<atom>[^\s()'"]+))""",
)


class Symbol(str):
    """Lisp 符号（区别于字符串字面量）"""


def package_dependencies(package: str, *search_dirs: Path) -> list[str]:
    """在 search_dirs 中查找元数据并返回依赖包名列表，找不到元数据返回空列表"""
    for directory in search_dirs:
        pkg_file = directory / f"{package}-pkg.el"
        if pkg_file.is_file():
            deps = _from_define_package(pkg_file.read_text(encoding="utf-8", errors="replace"))
            if deps is not None:
                return deps
    for directory in search_dirs:
        main = _find_main_file(package, directory)
        if main is not None:
            return _from_header(main.read_text(encoding="utf-8", errors="replace"))
    logger.debug("未找到 %s 的元数据，视为无依赖", package)
    return []


def _find_main_file(package: str, directory: Path) -> Path | None:
    direct = directory / f"{package}.el"
    if direct.is_file():
        return direct
    for candidate in sorted(directory.glob(f"**/{package}.el")):
        if candidate.is_file():
            return candidate
    return None


def _from_header(text: str) -> list[str]:
    m = _HEADER_RE.search(text)
    if m is None:
        return []
    collected = m.group(1)
    # 括号未闭合时继续读取后续注释行
    for line in text[m.end():].splitlines()[1:]:
        if _balanced(collected):
            break
        stripped = line.lstrip()
        if not stripped.startswith(";"):
            break
        collected += " " + stripped.lstrip(";")
    try:
        form, _ = read_sexp(collected)
    except ValidationError as e:
        logger.warning("Package-Requires 解析失败: %s", e)
        return []
    return _names(form)


def _from_define_package(text: str) -> list[str] | None:
    idx = text.find("(define-package")
    if idx < 0:
        return None
    try:
        form, _ = read_sexp(text[idx:])
    except ValidationError as e:
        logger.warning("define-package 解析失败: %s", e)
        return None
    if not isinstance(form, list) or len(form) < 5:
        return []
    return _names(form[4])


def _names(form: Any) -> list[str]:
    if not isinstance(form, list):
        return []
    names: list[str] = []
    for item in form:
        head = item[0] if isinstance(item, list) and item else item
        if isinstance(head, str) and head and head not in names:
            names.append(str(head))
    return names


def _balanced(text: str) -> bool:
    depth = 0
    for ch in re.sub(r'"(?:[^"\\]|\\.)*"', "", text):
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
    return depth <= 0 and "(" in text


def read_sexp(text: str, pos: int = 0) -> tuple[Any, int]:
    """读取一个 S 表达式，返回 (值, 结束位置)；列表 -> list，'x -> x"""
    m = _TOKEN_RE.match(text, pos)
    if m is None:
        raise ValidationError("S 表达式意外结束")
    if m.group("open"):
        items: list[Any] = []
        pos = m.end()
        while True:
            close = _TOKEN_RE.match(text, pos)
            if close is None:
                raise ValidationError("S 表达式括号未闭合")
            if close.group("close"):
                return items, close.end()
            item, pos = read_sexp(text, pos)
            items.append(item)
    if m.group("close"):
        raise ValidationError("多余的右括号")
    if m.group("quote"):
        return read_sexp(text, m.end())
    if m.group("str") is not None:
        return m.group("str"), m.end()
    return Symbol(m.group("atom")), m.end()
