"""fetchkit 命令行接口

CLI 按领域拆分为子模块，每个模块注册自己的命令到 main group。
"""

import os

import click

from fetchkit import __version__
from fetchkit.utils.logger import setup_logging


def _parse_kv_pairs(pairs: tuple[str, ...]) -> dict[str, str]:
    """解析 key=value 参数对"""
    result: dict[str, str] = {}
    for p in pairs:
        if "=" not in p:
            raise click.BadParameter(f"需要 NAME=PATH 格式: {p}")
        k, v = p.split("=", 1)
        result[k.strip()] = v.strip()
    return result


@click.group()
@click.version_option(version=__version__)
def main() -> None:
    """fetchkit - 外部依赖获取与集成"""
    setup_logging(
        level=os.getenv("FETCHKIT_LOG_LEVEL", "INFO"),
        json_output=os.getenv("FETCHKIT_LOG_JSON", "") == "1",
    )


# 注册各领域子命令
from fetchkit.cli.cmd_deps import register as _reg_deps  # noqa: E402

_reg_deps(main)
