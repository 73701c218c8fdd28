"""编排层数据模型

数据类：
- DependencyRequest: 一次配置过程中请求的依赖（名字 + 来源 + 集成选项）
- DependencyFailure: 单个依赖的结构化错误（kind + 原因）
- PassReport: 一次配置过程的汇总报告
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from fetchkit.core.dep.integrator import IntegrationOptions
    from fetchkit.core.dep.locator import Locator
    from fetchkit.core.dep.models import PopulateResult
    from fetchkit.core.graph import ExportedTargetSet


@dataclass(frozen=True)
class DependencyRequest:
    """依赖请求

    refresh=None 时沿用配置中的 refresh_mutable_refs。
    """

    name: str
    locator: Locator
    options: IntegrationOptions | None = None
    refresh: bool | None = None


@dataclass(frozen=True)
class DependencyFailure:
    """单个依赖失败的原因；kind 取自异常的 code"""

    kind: str
    message: str
    retryable: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "retryable": self.retryable}


@dataclass
class PassReport:
    """一次配置过程的结果

    success=True 当且仅当所有依赖都成功，且导出结果已全部应用到宿主图。
    """

    success: bool = False
    exports: dict[str, ExportedTargetSet] = field(default_factory=dict)
    errors: dict[str, DependencyFailure] = field(default_factory=dict)
    populated: dict[str, PopulateResult] = field(default_factory=dict)
    duration: float = 0.0

    @property
    def failed_names(self) -> list[str]:
        return sorted(self.errors)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "duration": round(self.duration, 3),
            "exports": {
                name: {
                    "source_dir": exp.source_dir,
                    "binary_dir": exp.binary_dir,
                    "targets": [t.name for t in exp.targets],
                    "variables": dict(exp.variables),
                }
                for name, exp in self.exports.items()
            },
            "errors": {name: err.to_dict() for name, err in self.errors.items()},
            "fetched": sorted(
                name for name, r in self.populated.items() if not r.already_cached
            ),
        }
