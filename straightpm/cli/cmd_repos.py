"""CLI — 代码仓与版本锁定命令"""

from __future__ import annotations

import click

from straightpm.cli import _declare, _report_failures, _svc, handle_errors


def register(group: click.Group) -> None:
    group.add_command(normalize)
    group.add_command(pull)
    group.add_command(push)
    group.add_command(freeze)
    group.add_command(thaw)


@click.command()
@click.argument("name", required=False)
@handle_errors
def normalize(name: str | None) -> None:
    """把代码仓（remote、分支）调整到与配方一致"""
    svc = _svc()
    _declare(svc)
    if name:
        svc.packages.normalize_package(name)
        click.echo(f"已校正: {name}")
        return
    _report_failures(svc.packages.normalize_all(), "校正")
    click.echo("全部代码仓已校正")


@click.command()
@click.argument("name", required=False)
@click.option("--upstream", is_flag=True, help="fork 的包从上游拉取")
@handle_errors
def pull(name: str | None, upstream: bool) -> None:
    """拉取代码仓更新"""
    svc = _svc()
    _declare(svc)
    if name:
        svc.packages.pull_package(name, upstream=upstream)
        click.echo(f"已拉取: {name}")
        return
    _report_failures(svc.packages.pull_all(upstream=upstream), "拉取")
    click.echo("全部代码仓已拉取")


@click.command()
@click.argument("name", required=False)
@handle_errors
def push(name: str | None) -> None:
    """推送本地提交"""
    svc = _svc()
    _declare(svc)
    if name:
        svc.packages.push_package(name)
        click.echo(f"已推送: {name}")
        return
    _report_failures(svc.packages.push_all(), "推送")
    click.echo("全部代码仓已推送")


@click.command()
@click.option("--force", is_flag=True, help="包列表不完整时仍写入")
@handle_errors
def freeze(force: bool) -> None:
    """把当前提交写入各 profile 的锁文件"""
    svc = _svc()
    _declare(svc)
    failures = svc.packages.use_all()
    if failures and not force:
        _report_failures(failures, "同步")
    written = svc.packages.freeze_versions(force=force)
    for profile, path in written.items():
        click.echo(f"  {profile}: {path}")


@click.command()
@handle_errors
def thaw() -> None:
    """把代码仓检出到锁文件中的提交"""
    svc = _svc()
    _declare(svc)
    _report_failures(svc.packages.thaw_versions(), "检出")
    click.echo("版本已恢复")
