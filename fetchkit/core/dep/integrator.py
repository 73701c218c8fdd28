"""依赖集成器

职责:
- 读取依赖自带的构建描述 (fetchkit.yml)
- 在求值前预置配置变量（覆盖选项、宿主变量、<name>_SOURCE_DIR 等）
- 产出带命名空间的图变更批次 (GraphBatch) 与导出结果 (ExportedTargetSet)

构建描述格式:
    project: lib1
    variables:
      LIB1_VERSION: "1.2"
      LIB1_INCLUDE_DIR: ${lib1_SOURCE_DIR}/include
    targets:
      - name: core
        type: library            # library / static_library / shared_library /
                                 # executable / interface / test
        sources: [src/core.c]
        depends: [fmt::fmt]
        output_dir: ${lib1_BINARY_DIR}/lib
        if: LIB1_WITH_CORE       # 可选，变量为真时才生成
"""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from pathlib import Path, PurePosixPath
from types import MappingProxyType
from typing import Any

import yaml

from fetchkit.core.exceptions import IntegrationError, ValidationError
from fetchkit.core.graph import (
    NAMESPACE_SEP,
    AddTarget,
    AddVariable,
    ExportedTargetSet,
    GraphBatch,
    GraphIntent,
    TargetDef,
)
from fetchkit.utils.yaml_io import load_yaml

logger = logging.getLogger(__name__)

DESCRIPTION_FILE = "fetchkit.yml"

_TYPES = ("library", "static_library", "shared_library", "executable", "interface", "test")
_TARGET_KEYS = frozenset(("name", "type", "sources", "depends", "output_dir", "if"))
_DESCRIPTION_KEYS = frozenset(("project", "variables", "targets"))

_SAFE_NAME_RE = re.compile(r"^[A-Za-z0-9_.\-]+$")
_VAR_RE = re.compile(r"\$\{([A-Za-z0-9_.\-]+)\}")
_FALSY = frozenset(("", "0", "OFF", "NO", "FALSE", "N", "IGNORE", "NOTFOUND"))


def _on_off(value: bool) -> str:
    return "ON" if value else "OFF"


def is_truthy(value: str) -> bool:
    """CMake 风格的真值判断"""
    text = str(value).strip().upper()
    return text not in _FALSY and not text.endswith("-NOTFOUND")


@dataclass(frozen=True)
class IntegrationOptions:
    """集成覆盖选项（封闭集合，未知键直接拒绝）

    build_shared_libs: 覆盖 BUILD_SHARED_LIBS；None 表示沿用描述文件的声明
    build_testing:     是否生成依赖自身的 test 目标
    source_subdir:     构建描述所在的子目录（相对内容根目录）
    exclude_from_all:  导出目标不参与默认构建
    variables:         额外预置变量，优先级最高
    """

    build_shared_libs: bool | None = None
    build_testing: bool = False
    source_subdir: str = ""
    exclude_from_all: bool = False
    variables: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> IntegrationOptions:
        if not data:
            return cls()
        known = set(cls.__dataclass_fields__)
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValidationError(
                f"未知的集成选项: {', '.join(unknown)}",
                details=[f"可用: {', '.join(sorted(known))}"],
            )
        errors: list[str] = []
        for key in ("build_testing", "exclude_from_all"):
            if key in data and not isinstance(data[key], bool):
                errors.append(f"{key} 必须为布尔值")
        shared = data.get("build_shared_libs")
        if shared is not None and not isinstance(shared, bool):
            errors.append("build_shared_libs 必须为布尔值或留空")
        subdir = data.get("source_subdir", "")
        if not isinstance(subdir, str):
            errors.append("source_subdir 必须为字符串")
        elif PurePosixPath(subdir).is_absolute() or ".." in PurePosixPath(subdir).parts:
            errors.append(f"source_subdir 必须是内容目录内的相对路径: {subdir}")
        variables = data.get("variables") or {}
        if not isinstance(variables, Mapping):
            errors.append("variables 必须为映射")
            variables = {}
        if errors:
            raise ValidationError("集成选项无效", details=errors)
        return cls(
            build_shared_libs=shared,
            build_testing=data.get("build_testing", False),
            source_subdir=subdir,
            exclude_from_all=data.get("exclude_from_all", False),
            variables={str(k): _scalar(v) for k, v in variables.items()},
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["variables"] = dict(self.variables)
        return data


def _scalar(value: Any) -> str:
    if isinstance(value, bool):
        return _on_off(value)
    return str(value)


class _Scope:
    """变量作用域: 预置变量不可被描述文件覆盖"""

    def __init__(self, seeded: Mapping[str, str]) -> None:
        self.values: dict[str, str] = dict(seeded)
        self.seeded = frozenset(seeded)

    def expand(self, text: str) -> str:
        # 未定义变量展开为空串
        return _VAR_RE.sub(lambda m: self.values.get(m.group(1), ""), str(text))

    def define(self, name: str, raw: Any) -> bool:
        if name in self.seeded:
            return False
        self.values[name] = self.expand(_scalar(raw))
        return True

    def condition(self, expr: str) -> bool:
        expr = str(expr).strip()
        negate = expr.upper().startswith("NOT ")
        if negate:
            expr = expr[4:].strip()
        value = self.values.get(expr, expr if expr.upper() in ("ON", "TRUE", "1") else "")
        return is_truthy(value) != negate


class Integrator:
    """把已就绪依赖的构建描述转换为图变更批次

    同一配置过程内按名字幂等: 再次集成同名依赖直接返回已发布的结果。
    """

    def __init__(self, host_variables: Mapping[str, str] | None = None) -> None:
        self.host_variables = dict(host_variables or {})
        self._published: dict[str, ExportedTargetSet] = {}
        self._lock = threading.Lock()

    def reset(self) -> None:
        with self._lock:
            self._published.clear()

    def published(self, name: str) -> ExportedTargetSet | None:
        with self._lock:
            return self._published.get(name)

    def integrate(
        self,
        name: str,
        local_path: str | Path,
        options: IntegrationOptions | None = None,
        *,
        binary_dir: str | Path = "",
    ) -> ExportedTargetSet:
        """求值构建描述并发布导出结果

        Raises:
            IntegrationError: 构建描述缺失或格式错误
        """
        existing = self.published(name)
        if existing is not None:
            logger.info("已集成，跳过: %s", name)
            return existing

        options = options or IntegrationOptions()
        source_dir = Path(local_path)
        project_dir = source_dir / options.source_subdir if options.source_subdir else source_dir
        binary = Path(binary_dir) if binary_dir else source_dir.parent / f"{name}-build"
        description = self._load(name, project_dir)

        lc = name.lower()
        seeded = {
            **self.host_variables,
            "BUILD_TESTING": _on_off(options.build_testing),
            f"{lc}_SOURCE_DIR": str(source_dir),
            f"{lc}_BINARY_DIR": str(binary),
            f"{lc}_POPULATED": "TRUE",
            "PROJECT_SOURCE_DIR": str(project_dir),
            "PROJECT_BINARY_DIR": str(binary),
        }
        if options.build_shared_libs is not None:
            seeded["BUILD_SHARED_LIBS"] = _on_off(options.build_shared_libs)
        seeded.update(options.variables)
        scope = _Scope(seeded)

        declared = self._evaluate_variables(name, description, scope)
        targets = self._evaluate_targets(name, description, scope, project_dir, binary, options)

        exported = {
            f"{lc}_SOURCE_DIR": str(source_dir),
            f"{lc}_BINARY_DIR": str(binary),
            f"{lc}_POPULATED": "TRUE",
            **declared,
        }
        intents: list[GraphIntent] = [AddVariable(k, v) for k, v in exported.items()]
        intents.extend(AddTarget(t) for t in targets)
        batch = GraphBatch(dependency=name, intents=tuple(intents))

        result = ExportedTargetSet(
            name=name,
            targets=tuple(t.handle() for t in targets),
            variables=MappingProxyType(exported),
            source_dir=str(source_dir),
            binary_dir=str(binary),
            batch=batch,
        )
        with self._lock:
            result = self._published.setdefault(name, result)
        logger.info(
            "集成完成: %s (%d 个目标, %d 个变量)", name, len(result.targets), len(exported),
        )
        return result

    @staticmethod
    def _load(name: str, project_dir: Path) -> dict[str, Any]:
        path = project_dir / DESCRIPTION_FILE
        if not path.is_file():
            raise IntegrationError(f"依赖 '{name}' 缺少构建描述: {path}")
        try:
            data = load_yaml(path)
        except (yaml.YAMLError, ValueError) as e:
            raise IntegrationError(f"依赖 '{name}' 构建描述解析失败: {e}") from e
        if not data:
            raise IntegrationError(f"依赖 '{name}' 构建描述为空或不是映射: {path}")
        unknown = sorted(set(data) - _DESCRIPTION_KEYS)
        if unknown:
            raise IntegrationError(f"依赖 '{name}' 构建描述含未知字段: {', '.join(unknown)}")
        return data

    @staticmethod
    def _evaluate_variables(
        name: str, description: dict[str, Any], scope: _Scope,
    ) -> dict[str, str]:
        raw = description.get("variables") or {}
        if not isinstance(raw, dict):
            raise IntegrationError(f"依赖 '{name}' 的 variables 必须为映射")
        declared: dict[str, str] = {}
        for var, value in raw.items():
            if isinstance(value, (dict, list)):
                raise IntegrationError(f"依赖 '{name}' 的变量 {var} 必须为标量")
            if scope.define(str(var), value):
                declared[str(var)] = scope.values[str(var)]
            else:
                logger.debug("  变量已预置，忽略描述中的默认值: %s", var)
        return declared

    def _evaluate_targets(
        self,
        name: str,
        description: dict[str, Any],
        scope: _Scope,
        project_dir: Path,
        binary: Path,
        options: IntegrationOptions,
    ) -> list[TargetDef]:
        raw = description.get("targets")
        if raw is None:
            raw = []
        if not isinstance(raw, list):
            raise IntegrationError(f"依赖 '{name}' 的 targets 必须为列表")

        entries = [self._check_target(name, i, entry) for i, entry in enumerate(raw)]
        local_names = {e["name"] for e in entries}
        if len(local_names) != len(entries):
            raise IntegrationError(f"依赖 '{name}' 的构建描述中存在重名目标")

        shared = is_truthy(scope.values.get("BUILD_SHARED_LIBS", "OFF"))
        targets: list[TargetDef] = []
        for entry in entries:
            kind = entry.get("type", "library")
            if kind == "test" and not is_truthy(scope.values["BUILD_TESTING"]):
                continue
            if "if" in entry and not scope.condition(entry["if"]):
                logger.debug("  条件不满足，跳过目标: %s::%s", name, entry["name"])
                continue
            if kind == "library":
                kind = "shared_library" if shared else "static_library"

            sources = []
            for src in entry.get("sources", []):
                path = Path(scope.expand(src))
                if not path.is_absolute():
                    path = project_dir / path
                if not path.exists():
                    raise IntegrationError(
                        f"依赖 '{name}' 目标 {entry['name']} 的源文件不存在: {path}"
                    )
                sources.append(str(path))

            depends = tuple(
                f"{name}{NAMESPACE_SEP}{dep}" if dep in local_names else dep
                for dep in (scope.expand(d) for d in entry.get("depends", []))
            )
            output_dir = scope.expand(entry.get("output_dir", "")) or str(binary)
            targets.append(TargetDef(
                name=f"{name}{NAMESPACE_SEP}{entry['name']}",
                kind=kind,
                dependency=name,
                sources=tuple(sources),
                depends=depends,
                output_dir=output_dir,
                exclude_from_all=options.exclude_from_all,
            ))
        return targets

    @staticmethod
    def _check_target(name: str, index: int, entry: Any) -> dict[str, Any]:
        where = f"依赖 '{name}' 的第 {index + 1} 个目标"
        if not isinstance(entry, dict):
            raise IntegrationError(f"{where}必须为映射")
        unknown = sorted(set(entry) - _TARGET_KEYS)
        if unknown:
            raise IntegrationError(f"{where}含未知字段: {', '.join(unknown)}")
        target_name = entry.get("name")
        if not isinstance(target_name, str) or not _SAFE_NAME_RE.match(target_name):
            raise IntegrationError(f"{where}名称无效: {target_name!r}")
        if entry.get("type", "library") not in _TYPES:
            raise IntegrationError(f"{where}类型无效: {entry.get('type')!r}")
        for key in ("sources", "depends"):
            value = entry.get(key, [])
            if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
                raise IntegrationError(f"{where}的 {key} 必须为字符串列表")
        return entry
