"""宿主构建图接口

引擎只向宿主图追加节点：
- HostGraph 协议: add_target / add_variable / resolve
- GraphBatch: 单个依赖集成产生的一批变更意图（AddTarget / AddVariable），
  由编排器在写锁下串行应用，集成器本身从不直接修改宿主图
- InMemoryGraph: 协议的内存实现，供 CLI 与测试使用
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Protocol, Union

from fetchkit.core.exceptions import ValidationError

logger = logging.getLogger(__name__)

TARGET_KINDS = (
    "static_library",
    "shared_library",
    "executable",
    "interface",
    "test",
)

NAMESPACE_SEP = "::"


@dataclass(frozen=True)
class TargetHandle:
    """供使用方链接的目标句柄"""

    name: str            # 带命名空间的全名，如 lib1::core
    kind: str
    dependency: str = ""
    output_dir: str = ""


@dataclass(frozen=True)
class TargetDef:
    """一个待追加到宿主图的目标定义"""

    name: str
    kind: str
    dependency: str = ""
    sources: tuple[str, ...] = ()
    depends: tuple[str, ...] = ()
    output_dir: str = ""
    exclude_from_all: bool = False

    def handle(self) -> TargetHandle:
        return TargetHandle(
            name=self.name, kind=self.kind,
            dependency=self.dependency, output_dir=self.output_dir,
        )


@dataclass(frozen=True)
class AddTarget:
    target: TargetDef


@dataclass(frozen=True)
class AddVariable:
    name: str
    value: str


GraphIntent = Union[AddTarget, AddVariable]


@dataclass(frozen=True)
class GraphBatch:
    """单个依赖的一批图变更意图"""

    dependency: str
    intents: tuple[GraphIntent, ...] = ()

    @property
    def targets(self) -> list[TargetDef]:
        return [i.target for i in self.intents if isinstance(i, AddTarget)]

    @property
    def variables(self) -> dict[str, str]:
        return {i.name: i.value for i in self.intents if isinstance(i, AddVariable)}


@dataclass(frozen=True)
class ExportedTargetSet:
    """一次成功集成的导出结果，发布后不可变"""

    name: str
    targets: tuple[TargetHandle, ...]
    variables: Mapping[str, str]
    source_dir: str
    binary_dir: str
    batch: GraphBatch = field(repr=False, compare=False, default=GraphBatch(""))

    def target(self, short_name: str) -> TargetHandle | None:
        """按短名（不含命名空间）查找导出目标"""
        full = f"{self.name}{NAMESPACE_SEP}{short_name}"
        for handle in self.targets:
            if handle.name in (full, short_name):
                return handle
        return None


class HostGraph(Protocol):
    """宿主构建图的追加式接口

    约定: resolve(name) 返回 None 的目标名，add_target 必须接受。
    发布前的重名预检 (check_batches) 只依赖 resolve；接口不提供删除，
    若实现在预检通过后仍拒绝某个目标，先前已应用的批次不会回滚，
    编排器会把该依赖报告为 GRAPH_REJECTED。
    """

    def add_target(self, target: TargetDef) -> TargetHandle:
        ...

    def add_variable(self, name: str, value: str) -> None:
        ...

    def resolve(self, name: str) -> TargetHandle | None:
        ...


class InMemoryGraph:
    """HostGraph 的内存实现"""

    def __init__(self, variables: Mapping[str, str] | None = None) -> None:
        self.targets: dict[str, TargetDef] = {}
        self.variables: dict[str, str] = dict(variables or {})

    def add_target(self, target: TargetDef) -> TargetHandle:
        if target.name in self.targets:
            raise ValidationError(f"目标重名: {target.name}")
        self.targets[target.name] = target
        return target.handle()

    def add_variable(self, name: str, value: str) -> None:
        if name in self.variables and self.variables[name] != value:
            logger.warning("变量被覆盖: %s = %s (原值 %s)", name, value, self.variables[name])
        self.variables[name] = value

    def resolve(self, name: str) -> TargetHandle | None:
        target = self.targets.get(name)
        return target.handle() if target is not None else None


def check_batches(
    graph: HostGraph, batches: list[GraphBatch],
) -> list[tuple[str, str]]:
    """应用前检查目标重名（与宿主已有目标或批次之间），返回 (依赖名, 冲突描述)"""
    problems: list[tuple[str, str]] = []
    seen: dict[str, str] = {}
    for batch in batches:
        for target in batch.targets:
            if graph.resolve(target.name) is not None:
                problems.append((batch.dependency, f"目标 {target.name} 与宿主图已有目标重名"))
            elif target.name in seen:
                problems.append(
                    (batch.dependency, f"目标 {target.name} 与 {seen[target.name]} 的目标重名")
                )
            seen[target.name] = batch.dependency
    return problems


def apply_batch(graph: HostGraph, batch: GraphBatch) -> list[TargetHandle]:
    """按顺序应用一批意图（调用方负责串行化）"""
    handles: list[TargetHandle] = []
    for intent in batch.intents:
        if isinstance(intent, AddVariable):
            graph.add_variable(intent.name, intent.value)
        else:
            handles.append(graph.add_target(intent.target))
    return handles
