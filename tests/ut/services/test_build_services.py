"""构建服务单元测试：元数据解析 / 链接 / 宿主命令"""

from __future__ import annotations

from pathlib import Path

import pytest

from straightpm.core.exceptions import ExecutionError, ValidationError
from straightpm.core.models import Recipe
from straightpm.services.build.host import CommandHost
from straightpm.services.build.linker import link_package
from straightpm.services.build.metadata import Symbol, package_dependencies, read_sexp
from straightpm.utils.shell import CommandResult


class TestReadSexp:
    def test_nested_lists_strings_and_quotes(self) -> None:
        form, end = read_sexp("'((emacs \"25.1\") (dash \"2.19\")) tail")
        assert form == [["emacs", "25.1"], ["dash", "2.19"]]
        assert isinstance(form[0][0], Symbol)
        assert not isinstance(form[0][1], Symbol)
        assert end == len("'((emacs \"25.1\") (dash \"2.19\"))")

    def test_escaped_quote_in_string(self) -> None:
        form, _ = read_sexp('("a \\"b\\" c")')
        assert form == ['a \\"b\\" c']

    @pytest.mark.parametrize("text", ["", "((a)", ")"])
    def test_malformed(self, text: str) -> None:
        with pytest.raises(ValidationError):
            read_sexp(text)


class TestPackageDependencies:
    def test_header_single_line(self, tmp_path: Path) -> None:
        (tmp_path / "foo.el").write_text(
            ";;; foo.el --- demo\n"
            ";; Package-Requires: ((emacs \"26.1\") (dash \"2.0\") (s \"1.12\"))\n",
            encoding="utf-8",
        )
        assert package_dependencies("foo", tmp_path) == ["emacs", "dash", "s"]

    def test_header_spanning_lines(self, tmp_path: Path) -> None:
        (tmp_path / "foo.el").write_text(
            ";; Package-Requires: ((emacs \"26.1\")\n"
            ";;                    (dash \"2.0\")\n"
            ";;                    (dash \"2.1\"))\n"
            ";; Keywords: tools\n",
            encoding="utf-8",
        )
        assert package_dependencies("foo", tmp_path) == ["emacs", "dash"]

    def test_define_package_takes_precedence(self, tmp_path: Path) -> None:
        (tmp_path / "foo-pkg.el").write_text(
            '(define-package "foo" "1.0" "Demo."\n'
            "  '((emacs \"25.1\") (magit-section \"3.0\"))\n"
            '  :keywords \'("tools"))\n',
            encoding="utf-8",
        )
        (tmp_path / "foo.el").write_text(";; Package-Requires: ((other \"1\"))\n", encoding="utf-8")
        assert package_dependencies("foo", tmp_path) == ["emacs", "magit-section"]

    def test_main_file_in_subdirectory(self, tmp_path: Path) -> None:
        (tmp_path / "lisp").mkdir()
        (tmp_path / "lisp" / "foo.el").write_text(";; Package-Requires: ((bar \"1\"))\n", encoding="utf-8")
        assert package_dependencies("foo", tmp_path) == ["bar"]

    def test_search_dirs_in_order(self, tmp_path: Path) -> None:
        first, second = tmp_path / "a", tmp_path / "b"
        first.mkdir()
        second.mkdir()
        (second / "foo.el").write_text(";; Package-Requires: ((bar \"1\"))\n", encoding="utf-8")
        assert package_dependencies("foo", first, second) == ["bar"]

    def test_no_metadata(self, tmp_path: Path) -> None:
        assert package_dependencies("foo", tmp_path) == []

    def test_unparseable_header_is_empty(self, tmp_path: Path) -> None:
        (tmp_path / "foo.el").write_text(";; Package-Requires: ((bar \"1\")\n(code)\n", encoding="utf-8")
        assert package_dependencies("foo", tmp_path) == []


class TestLinkPackage:
    def test_relinks_build_directory(self, tmp_path: Path) -> None:
        src = tmp_path / "repo"
        (src / "lisp").mkdir(parents=True)
        (src / "lisp" / "foo.el").write_text(";; foo\n")
        (src / "foo-pkg.el").write_text(";; pkg\n")
        out = tmp_path / "build" / "foo"
        out.mkdir(parents=True)
        (out / "stale.elc").write_text("old")

        mapping = link_package(Recipe("foo", "repo", files=["lisp/*.el", ["docs", "foo-pkg.el"]]), src, out)
        assert len(mapping) == 2
        assert not (out / "stale.elc").exists()
        assert (out / "foo.el").is_symlink()
        assert (out / "foo.el").resolve() == (src / "lisp" / "foo.el").resolve()
        assert (out / "docs" / "foo-pkg.el").is_symlink()


class _Recorder:
    def __init__(self, returncode: int = 0) -> None:
        self.returncode = returncode
        self.calls: list[tuple[list[str], str]] = []

    def execute(self, cmd, *, cwd=".", env=None, timeout=None) -> CommandResult:
        self.calls.append((cmd, cwd))
        return CommandResult(self.returncode, "", "boom")


class TestCommandHost:
    def test_templates_are_formatted(self, tmp_path: Path) -> None:
        rec = _Recorder()
        host = CommandHost(
            compile_cmd="emacs --batch -L {build_dir} -f batch-byte-recompile-directory {build_dir}",
            executor=rec,
        )
        host.compile("foo", str(tmp_path))
        assert rec.calls == [(
            ["emacs", "--batch", "-L", str(tmp_path), "-f", "batch-byte-recompile-directory", str(tmp_path)],
            str(tmp_path),
        )]

    def test_empty_template_is_skipped(self, tmp_path: Path) -> None:
        rec = _Recorder()
        host = CommandHost(executor=rec)
        host.generate_autoloads("foo", str(tmp_path))
        host.activate("foo", str(tmp_path))
        assert rec.calls == []

    def test_failure_raises(self, tmp_path: Path) -> None:
        host = CommandHost(activate_cmd="load {package}", executor=_Recorder(returncode=2))
        with pytest.raises(ExecutionError, match="activate foo失败"):
            host.activate("foo", str(tmp_path))
