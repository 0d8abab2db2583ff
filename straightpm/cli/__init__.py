"""straightpm 命令行接口

CLI 按领域拆分为子模块，每个模块注册自己的命令到 main group。
"""

from __future__ import annotations

import functools
import os
from collections.abc import Callable
from typing import Any

import click

from straightpm import __version__
from straightpm.core.exceptions import StraightError
from straightpm.services.container import get_container, reset_container
from straightpm.utils.logger import setup_logging


def _svc() -> Any:
    """获取全局服务容器的快捷方式"""
    return get_container()


def _declare(svc: Any) -> list[str]:
    """声明包列表文件中的包"""
    return svc.packages.declare_file(svc.config.packages_file)


def _report_failures(failures: dict[str, str], action: str) -> None:
    if not failures:
        return
    for name, err in failures.items():
        click.echo(f"  {name}: {err}", err=True)
    raise click.ClickException(f"{action}失败: {len(failures)} 个")


def handle_errors(func: Callable[..., Any]) -> Callable[..., Any]:
    """业务异常转为 ClickException（非零退出）"""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except StraightError as e:
            raise click.ClickException(f"[{e.code}] {e}") from e

    return wrapper


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "-c", "config_path", default="straightpm.yml", help="配置文件路径")
def main(config_path: str) -> None:
    """straightpm - 基于源码检出的可复现包管理器"""
    setup_logging(
        level=os.getenv("STRAIGHTPM_LOG_LEVEL", "INFO"),
        json_output=os.getenv("STRAIGHTPM_LOG_JSON", "") == "1",
    )
    from straightpm.core.config import init_config
    try:
        init_config(config_path)
    except StraightError as e:
        raise click.ClickException(f"[{e.code}] {e}") from e
    reset_container()


# 注册各领域子命令
from straightpm.cli.cmd_packages import register as _reg_packages  # noqa: E402
from straightpm.cli.cmd_repos import register as _reg_repos  # noqa: E402

_reg_packages(main)
_reg_repos(main)
