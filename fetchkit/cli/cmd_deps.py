"""CLI - 依赖获取与缓存管理命令"""

from __future__ import annotations

import json
import signal
from collections.abc import Callable
from typing import Any

import click

from fetchkit.cli import _parse_kv_pairs
from fetchkit.core.config import Config, init_config
from fetchkit.core.exceptions import FetchKitError, ValidationError


def register(group: click.Group) -> None:
    group.add_command(configure)
    group.add_command(populate)
    group.add_command(status)
    group.add_command(invalidate)
    group.add_command(dashboard)


def _config_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """各命令共用的配置选项"""
    func = click.option(
        "--source-dir", "source_dirs", multiple=True, metavar="NAME=PATH",
        help="使用预置源码目录代替拉取（可多次）",
    )(func)
    func = click.option("--cache-root", default=None, help="缓存根目录（覆盖配置）")(func)
    func = click.option(
        "-c", "--config", "config_path", default="configs/fetchkit.yml", help="配置文件",
    )(func)
    return func


def _load_config(
    config_path: str, cache_root: str | None, source_dirs: tuple[str, ...],
) -> Config:
    cfg = init_config(config_path)
    if cache_root:
        cfg.cache_root = cache_root
    cfg.source_dir_overrides.update(_parse_kv_pairs(source_dirs))
    return cfg


def _fail(message: str, details: list[str] | None = None) -> None:
    click.echo(message, err=True)
    for d in details or []:
        click.echo(f"  - {d}", err=True)
    raise SystemExit(1)


def _load_requests(manifest: str) -> list[Any]:
    from fetchkit.core.dep.registry import load_manifest
    try:
        return load_manifest(manifest)
    except ValidationError as e:
        _fail(f"清单错误: {e}", e.details)
        return []


def _print_report(report: Any) -> None:
    click.echo("\n=== 配置报告 ===")
    for name, exp in report.exports.items():
        cached = report.populated.get(name)
        mark = "缓存" if cached is not None and cached.already_cached else "拉取"
        click.echo(f"  [ok      ] {name:20s} ({mark}) {exp.source_dir}")
        for target in exp.targets:
            click.echo(f"             {target.name} <{target.kind}>")
    for name, err in sorted(report.errors.items()):
        click.echo(f"  [{err.kind[:8]:8s}] {name:20s} {err.message}")
    click.echo(f"成功: {'是' if report.success else '否'} ({report.duration:.1f}秒)")


@click.command()
@click.option("-m", "--manifest", default=None, help="依赖清单路径（默认取配置 manifest）")
@_config_options
@click.option("-j", "--jobs", type=int, default=None, help="并行度（覆盖配置 max_workers）")
@click.option("--fail-fast", is_flag=True, help="首个失败即取消其余依赖")
@click.option(
    "--refresh/--no-refresh", default=None,
    help="是否向远端确认分支类 ref（覆盖配置 refresh_mutable_refs）",
)
@click.option("--offline", is_flag=True, help="完全离线，只使用已缓存内容")
@click.option("--json", "as_json", is_flag=True, help="以 JSON 输出报告")
def configure(
    manifest: str | None, config_path: str, cache_root: str | None,
    source_dirs: tuple[str, ...], jobs: int | None, fail_fast: bool,
    refresh: bool | None, offline: bool, as_json: bool,
) -> None:
    """执行一次配置：声明 → 就绪 → 集成，全部成功才发布"""
    from fetchkit.core.cancel import CancelToken
    from fetchkit.core.graph import InMemoryGraph
    from fetchkit.core.orchestrator import Orchestrator

    cfg = _load_config(config_path, cache_root, source_dirs)
    if jobs is not None:
        cfg.max_workers = max(1, jobs)
    if fail_fast:
        cfg.fail_fast = True
    if refresh is not None:
        cfg.refresh_mutable_refs = refresh
    if offline:
        cfg.fully_disconnected = True
    requests = _load_requests(manifest or cfg.manifest)

    orch = Orchestrator.from_config(cfg)
    token = CancelToken()
    previous = signal.signal(signal.SIGINT, lambda *_: token.cancel("用户中断"))
    try:
        report = orch.configure(requests, graph=InMemoryGraph(), cancel=token)
    finally:
        signal.signal(signal.SIGINT, previous)

    if as_json:
        click.echo(json.dumps(report.to_dict(), ensure_ascii=False, indent=2))
    else:
        _print_report(report)
    if not report.success:
        raise SystemExit(1)


@click.command()
@click.argument("name")
@click.option("-m", "--manifest", default=None, help="依赖清单路径（默认取配置 manifest）")
@_config_options
@click.option("--refresh/--no-refresh", default=None, help="是否向远端确认分支类 ref")
def populate(
    name: str, manifest: str | None, config_path: str, cache_root: str | None,
    source_dirs: tuple[str, ...], refresh: bool | None,
) -> None:
    """只就绪单个依赖（不集成）"""
    from fetchkit.core.dep.cache import PopulationCache
    from fetchkit.core.dep.locator import fingerprint

    cfg = _load_config(config_path, cache_root, source_dirs)
    requests = {r.name: r for r in _load_requests(manifest or cfg.manifest)}
    req = requests.get(name)
    if req is None:
        _fail(f"清单中未声明依赖: {name}")
        return
    if refresh is None:
        refresh = req.refresh
    cache = PopulationCache.from_config(cfg)
    try:
        result = cache.populate(
            name, fingerprint(name, req.locator), req.locator, refresh=refresh,
        )
    except FetchKitError as e:
        _fail(f"失败 [{e.code}]: {e}")
        return
    suffix = "（已缓存）" if result.already_cached else ""
    click.echo(f"就绪: {name} -> {result.local_path}{suffix}")
    if result.unverified:
        click.echo("  警告: 未声明摘要，内容未校验")


@click.command()
@_config_options
@click.option("--json", "as_json", is_flag=True, help="以 JSON 输出")
def status(
    config_path: str, cache_root: str | None, source_dirs: tuple[str, ...], as_json: bool,
) -> None:
    """列出缓存中所有依赖的记录"""
    from fetchkit.core.dep.cache import PopulationCache

    cache = PopulationCache.from_config(_load_config(config_path, cache_root, source_dirs))
    records = cache.list_records()
    if as_json:
        click.echo(json.dumps([r.to_dict() for r in records], ensure_ascii=False, indent=2))
        return
    if not records:
        click.echo("缓存为空。")
        return
    for r in records:
        flags = []
        if r.unverified:
            flags.append("未校验")
        if cache.stale_fetching(r):
            flags.append("残留")
        elif cache.is_locked(r.name):
            flags.append("拉取中")
        commit = r.resolved_commit[:12] if r.resolved_commit else "-"
        extra = f" [{', '.join(flags)}]" if flags else ""
        click.echo(f"  {r.name:20s} {r.state.value:10s} {commit:12s} {r.local_path}{extra}")
        if r.last_error:
            click.echo(f"      {r.error_kind}: {r.last_error}")


@click.command()
@click.argument("name")
@_config_options
def invalidate(
    name: str, config_path: str, cache_root: str | None, source_dirs: tuple[str, ...],
) -> None:
    """清除依赖的缓存内容与记录"""
    from fetchkit.core.dep.cache import PopulationCache
    from fetchkit.core.dep.registry import validate_name

    cache = PopulationCache.from_config(_load_config(config_path, cache_root, source_dirs))
    try:
        validate_name(name)
        removed = cache.invalidate(name)
    except ValidationError as e:
        _fail(str(e))
        return
    click.echo(f"已清除: {name}" if removed else f"缓存中不存在: {name}")


@click.command()
@click.option("--port", default=8888, help="端口")
@click.option("--host", default="127.0.0.1", help="监听地址")
@click.option("-c", "--config", "config_path", default="configs/fetchkit.yml", help="配置文件")
def dashboard(port: int, host: str, config_path: str) -> None:
    """启动缓存看板（只读 API + 清除）"""
    from fetchkit.web.app import run_server
    init_config(config_path)
    run_server(port=port, host=host)
