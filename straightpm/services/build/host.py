"""宿主适配 — autoload 汇总、编译、激活

CommandHost 按配置中的命令模板在构建目录内执行外部命令，
模板可用占位符 {package} {build_dir}；模板为空则跳过该步骤。

示例配置:
    autoloads_cmd: emacs -Q --batch -L {build_dir} --eval "(loaddefs-generate \\"{build_dir}\\" \\"{build_dir}/{package}-autoloads.el\\")"
    compile_cmd: emacs -Q --batch -L {build_dir} -f batch-byte-recompile-directory {build_dir}
"""

from __future__ import annotations

import logging
import shlex
from typing import TYPE_CHECKING

from straightpm.utils.shell import CommandExecutor, run_cmd

if TYPE_CHECKING:
    from straightpm.core.config import Config

logger = logging.getLogger(__name__)


class CommandHost:
    """基于命令模板的宿主实现"""

    def __init__(
        self,
        autoloads_cmd: str = "",
        compile_cmd: str = "",
        activate_cmd: str = "",
        executor: CommandExecutor | None = None,
    ) -> None:
        self.autoloads_cmd = autoloads_cmd
        self.compile_cmd = compile_cmd
        self.activate_cmd = activate_cmd
        self._executor = executor

    @classmethod
    def from_config(cls, config: Config, executor: CommandExecutor | None = None) -> CommandHost:
        return cls(
            autoloads_cmd=config.autoloads_cmd,
            compile_cmd=config.compile_cmd,
            activate_cmd=config.activate_cmd,
            executor=executor,
        )

    def generate_autoloads(self, package: str, build_dir: str) -> None:
        self._run(self.autoloads_cmd, package, build_dir, "autoloads")

    def compile(self, package: str, build_dir: str) -> None:
        self._run(self.compile_cmd, package, build_dir, "compile")

    def activate(self, package: str, build_dir: str) -> None:
        self._run(self.activate_cmd, package, build_dir, "activate")

    def _run(self, template: str, package: str, build_dir: str, label: str) -> None:
        if not template:
            logger.debug("未配置 %s 命令，跳过: %s", label, package)
            return
        args = [
            part.format(package=package, build_dir=build_dir)
            for part in shlex.split(template)
        ]
        run_cmd(args, cwd=build_dir, label=f"{label} {package}", executor=self._executor)
