"""依赖声明注册表

职责:
- 单次配置过程内按名字记录首个声明（先声明者胜）
- 同名同来源重复声明视为无操作；同名不同来源返回冲突且不修改已有条目
- 从 YAML 清单加载声明请求（支持 include 其他清单）

清单格式:
    include:
      - common.yml                   # 相对当前清单
    dependencies:
      fmt:
        git_repository: https://github.com/fmtlib/fmt.git
        git_tag: 10.2.1
        options:
          build_testing: false
      lib1:
        url: https://example.com/lib1-1.0.tar.gz
        url_hash: sha256:...
        refresh: false               # 仅对分支类 git_tag 有意义
"""

from __future__ import annotations

import logging
import re
import threading
import time
from pathlib import Path

import yaml

from fetchkit.core.dep.integrator import IntegrationOptions
from fetchkit.core.dep.locator import Locator, parse_locator
from fetchkit.core.dep.models import Declaration, DeclareResult
from fetchkit.core.exceptions import ValidationError
from fetchkit.core.models import DependencyRequest
from fetchkit.utils.yaml_io import load_yaml

logger = logging.getLogger(__name__)

# 依赖名用于目录名与变量前缀
_SAFE_NAME_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.\-]*$")
_ENTRY_KEYS = frozenset(("options", "refresh"))
_LOCATOR_KEYS = frozenset(("git_repository", "git_tag", "url", "url_hash", "source_dir"))


def validate_name(name: str) -> None:
    if not isinstance(name, str) or not _SAFE_NAME_RE.match(name):
        raise ValidationError(f"依赖名包含非法字符: {name!r}")


class DeclarationRegistry:
    """进程内声明注册表（线程安全，每次配置过程开始时 reset）"""

    def __init__(self) -> None:
        self._entries: dict[str, Declaration] = {}
        self._lock = threading.Lock()

    def declare(
        self,
        name: str,
        locator: Locator,
        options: IntegrationOptions | None = None,
    ) -> DeclareResult:
        validate_name(name)
        with self._lock:
            existing = self._entries.get(name)
            if existing is None:
                self._entries[name] = Declaration(
                    name=name, locator=locator, options=options,
                    first_declared_at=time.time(),
                )
                logger.debug("声明依赖: %s (%s)", name, locator.describe())
                return DeclareResult(accepted=True)
        if existing.locator == locator:
            return DeclareResult(accepted=True)
        logger.warning(
            "依赖重复声明且来源不一致: %s 已有 %s, 忽略 %s",
            name, existing.locator.describe(), locator.describe(),
        )
        return DeclareResult(accepted=False, existing=existing.locator)

    def get(self, name: str) -> Declaration | None:
        with self._lock:
            return self._entries.get(name)

    def names(self) -> list[str]:
        """按声明顺序返回依赖名"""
        with self._lock:
            return list(self._entries)

    def reset(self) -> None:
        with self._lock:
            self._entries.clear()


def load_manifest(path: str | Path) -> list[DependencyRequest]:
    """加载依赖清单，返回按出现顺序排列的声明请求

    Raises:
        ValidationError: 清单缺失、格式错误或条目无效（details 汇总全部问题）
    """
    requests: list[DependencyRequest] = []
    errors: list[str] = []
    _load_into(Path(path), requests, errors, stack=())
    if errors:
        raise ValidationError(f"依赖清单无效: {path}", details=errors)
    logger.info("已加载 %d 个依赖声明: %s", len(requests), path)
    return requests


def _load_into(
    path: Path,
    requests: list[DependencyRequest],
    errors: list[str],
    stack: tuple[Path, ...],
) -> None:
    resolved = path.resolve()
    if resolved in stack:
        chain = " -> ".join(str(p) for p in (*stack, resolved))
        errors.append(f"清单循环 include: {chain}")
        return
    if not path.is_file():
        errors.append(f"清单文件不存在: {path}")
        return
    try:
        data = load_yaml(path)
    except (yaml.YAMLError, ValueError) as e:
        errors.append(f"{path}: 解析失败 - {e}")
        return

    for include in data.get("include") or []:
        _load_into(path.parent / str(include), requests, errors, (*stack, resolved))

    deps = data.get("dependencies") or {}
    if not isinstance(deps, dict):
        errors.append(f"{path}: dependencies 必须为映射")
        return
    for name, entry in deps.items():
        try:
            requests.append(_parse_entry(str(name), entry))
        except ValidationError as e:
            errors.append(f"{path}: {name}: {e}")
            errors.extend(f"{path}: {name}:   {d}" for d in e.details)


def _parse_entry(name: str, entry: object) -> DependencyRequest:
    validate_name(name)
    if not isinstance(entry, dict):
        raise ValidationError("条目必须为映射")
    unknown = sorted(set(entry) - _ENTRY_KEYS - _LOCATOR_KEYS)
    if unknown:
        raise ValidationError(f"未知字段: {', '.join(unknown)}")
    fields = {k: v for k, v in entry.items() if k not in _ENTRY_KEYS}
    locator = parse_locator(fields)
    options = IntegrationOptions.from_mapping(entry.get("options"))
    refresh = entry.get("refresh")
    if refresh is not None and not isinstance(refresh, bool):
        raise ValidationError(f"refresh 必须为布尔值: {refresh!r}")
    return DependencyRequest(name=name, locator=locator, options=options, refresh=refresh)
