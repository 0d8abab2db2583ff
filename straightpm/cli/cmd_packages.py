"""CLI — 包声明 / 使用 / 检查 / 重建命令"""

from __future__ import annotations

import click

from straightpm.cli import _declare, _report_failures, _svc, handle_errors
from straightpm.core.models import ALWAYS, LAZY, NEVER


def register(group: click.Group) -> None:
    group.add_command(declare)
    group.add_command(use)
    group.add_command(sync)
    group.add_command(check)
    group.add_command(rebuild)
    group.add_command(prune)
    group.add_command(recipes)


@click.command()
@handle_errors
def declare() -> None:
    """校验包列表文件：规范化并注册所有声明，报告配方冲突"""
    svc = _svc()
    names = _declare(svc)
    click.echo(f"已声明 {len(names)} 个包")
    conflicts = svc.session.registry.conflicts
    for c in conflicts:
        click.echo(f"  冲突: {c.other} / {c.package} 字段 {c.field}: {c.old!r} != {c.new!r}")
    if conflicts:
        raise click.ClickException(f"发现 {len(conflicts)} 处配方冲突")


@click.command()
@click.argument("names", nargs=-1, required=True)
@click.option("--lazy", is_flag=True, help="仅处理已检出的包")
@click.option("--no-build", "skip_build", is_flag=True, help="只检出不构建")
@handle_errors
def use(names: tuple[str, ...], lazy: bool, skip_build: bool) -> None:
    """检出、构建并激活指定的包"""
    svc = _svc()
    _declare(svc)
    for name in names:
        result = svc.packages.use_package(
            name,
            no_clone=LAZY if lazy else NEVER,
            no_build=ALWAYS if skip_build else NEVER,
            required=True,
        )
        mark = " (已重建)" if result.built else ""
        click.echo(f"  {result.package:24s} {result.state.value}{mark}")


@click.command()
@handle_errors
def sync() -> None:
    """按包列表文件完成一次完整的初始化运行"""
    svc = _svc()
    _declare(svc)
    failures = svc.packages.use_all()
    _report_failures(failures, "同步")
    click.echo(f"同步完成: {len(svc.session.activation_trace)} 个包已激活")


@click.command()
@click.argument("name", required=False)
@click.option("--all", "all_", is_flag=True, help="检查全部包")
@handle_errors
def check(name: str | None, all_: bool) -> None:
    """检查包的修改，仅重建过期的包"""
    svc = _svc()
    _declare(svc)
    if all_ or not name:
        _report_failures(svc.packages.check_all(), "检查")
        click.echo(f"已重建: {', '.join(sorted(svc.session.rebuilt)) or '无'}")
        return
    result = svc.packages.check_package(name)
    click.echo(f"{result.package}: {'已重建' if result.built else '无需重建'}")


@click.command()
@click.argument("name", required=False)
@click.option("--all", "all_", is_flag=True, help="重建全部包")
@handle_errors
def rebuild(name: str | None, all_: bool) -> None:
    """强制重建包"""
    svc = _svc()
    _declare(svc)
    if all_ or not name:
        failures = svc.packages.rebuild_all()
        _report_failures(failures, "重建")
        click.echo("全部包已重建")
        return
    svc.packages.rebuild_package(name)
    click.echo(f"已重建: {name}")


@click.command()
@handle_errors
def prune() -> None:
    """清理包列表中不再使用的构建产物"""
    svc = _svc()
    _declare(svc)
    _report_failures(svc.packages.use_all(), "同步")
    removed = svc.packages.prune_build()
    click.echo(f"已清理 {len(removed)} 个包" + (f": {', '.join(removed)}" if removed else ""))


@click.command()
@handle_errors
def recipes() -> None:
    """列出各配方来源提供的包"""
    listing = _svc().packages.list_recipes()
    if not listing:
        click.echo("没有配置配方来源。")
        return
    for source, names in listing.items():
        click.echo(f"[{source}] {len(names)} 个配方")
        for name in names:
            click.echo(f"  {name}")
