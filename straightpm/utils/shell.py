"""外部命令执行 — git 与宿主命令共用的子进程封装

所有外部调用经 CommandExecutor 协议执行：
  - GitBackend 用它驱动 git
  - CommandHost 用它执行 autoload / 编译 / 激活命令模板
测试时注入记录调用的假执行器即可，不需要 patch subprocess。
"""

from __future__ import annotations

import logging
import shlex
import subprocess
from dataclasses import dataclass
from typing import Protocol

from straightpm.core.exceptions import ExecutionError

logger = logging.getLogger(__name__)

# 找不到可执行文件时的返回码（与 shell 约定一致）
RC_NOT_FOUND = 127
RC_TIMEOUT = 124


@dataclass
class CommandResult:
    """一次外部命令的结果"""

    returncode: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        return self.returncode == 0

    @property
    def text(self) -> str:
        """去掉首尾空白的 stdout，git 查询类命令直接取这个"""
        return self.stdout.strip()


class CommandExecutor(Protocol):
    """命令执行器协议"""

    def execute(
        self,
        cmd: str | list[str],
        *,
        cwd: str = ".",
        env: dict[str, str] | None = None,
        timeout: int | None = None,
    ) -> CommandResult:
        ...


class LocalExecutor:
    """在本机起子进程执行；启动失败与超时都折算成失败结果而不抛异常"""

    def execute(
        self,
        cmd: str | list[str],
        *,
        cwd: str = ".",
        env: dict[str, str] | None = None,
        timeout: int | None = None,
    ) -> CommandResult:
        args = shlex.split(cmd) if isinstance(cmd, str) else list(cmd)
        try:
            r = subprocess.run(
                args, capture_output=True, text=True,
                cwd=cwd, env=env, check=False, timeout=timeout,
            )
        except FileNotFoundError as e:
            return CommandResult(RC_NOT_FOUND, "", f"找不到命令: {e.filename or args[0]}")
        except subprocess.TimeoutExpired:
            return CommandResult(RC_TIMEOUT, "", f"命令超时 ({timeout}s): {args[0]}")
        except OSError as e:
            return CommandResult(-1, "", str(e))
        return CommandResult(r.returncode, r.stdout, r.stderr)


_default_executor: CommandExecutor = LocalExecutor()


def get_executor() -> CommandExecutor:
    return _default_executor


def set_executor(executor: CommandExecutor) -> None:
    """替换进程级默认执行器（测试用）"""
    global _default_executor  # noqa: PLW0603
    _default_executor = executor


def format_cmd(cmd: str | list[str]) -> str:
    return cmd if isinstance(cmd, str) else shlex.join(cmd)


def run_cmd(
    cmd: str | list[str], *, cwd: str = ".",
    env: dict[str, str] | None = None,
    label: str = "cmd",
    timeout: int | None = None,
    executor: CommandExecutor | None = None,
) -> CommandResult:
    """执行命令，返回码非零时抛 ExecutionError（消息带 label 与 stderr 摘要）"""
    logger.debug("  %s: %s (cwd=%s)", label, format_cmd(cmd), cwd)
    r = (executor or get_executor()).execute(cmd, cwd=cwd, env=env, timeout=timeout)
    if not r.success:
        raise ExecutionError(f"{label}失败 (rc={r.returncode}): {r.stderr[:500]}")
    return r
