"""依赖数据模型

数据类:
- PopulationState / PopulationRecord: 缓存中每个依赖的落盘状态机
- FetchOutcome: 单次物理拉取的结果
- PopulateResult: populate() 的返回值
- Declaration / DeclareResult: 声明注册表条目
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from fetchkit.core.dep.integrator import IntegrationOptions
from fetchkit.core.dep.locator import Locator


class PopulationState(str, Enum):
    """Population Record 状态

    empty → fetching → populated | failed；failed → fetching（重试）。
    populated 为终态。
    """

    EMPTY = "empty"
    FETCHING = "fetching"
    POPULATED = "populated"
    FAILED = "failed"


@dataclass
class PopulationRecord:
    """单个依赖在缓存根目录下的持久化记录（{name}-meta/record.yml）"""

    name: str
    fingerprint: str
    state: PopulationState = PopulationState.EMPTY
    local_path: str = ""
    last_error: str = ""
    error_kind: str = ""
    owner_pid: int = 0
    owner_host: str = ""
    resolved_commit: str = ""
    unverified: bool = False
    locator: dict[str, str] = field(default_factory=dict)
    updated_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PopulationRecord:
        known = {f for f in cls.__dataclass_fields__}
        values = {k: v for k, v in data.items() if k in known}
        values["state"] = PopulationState(values.get("state", "empty"))
        return cls(**values)


@dataclass(frozen=True)
class FetchOutcome:
    """一次物理拉取的结果"""

    local_path: str
    resolved_commit: str = ""
    unverified: bool = False


@dataclass(frozen=True)
class PopulateResult:
    """populate() 返回值

    already_cached=True 表示本次调用未触发物理拉取。
    unverified=True 表示 Archive 未声明摘要，内容未经校验。
    """

    name: str
    local_path: str
    already_cached: bool
    unverified: bool = False
    resolved_commit: str = ""


@dataclass(frozen=True)
class Declaration:
    """声明注册表条目"""

    name: str
    locator: Locator
    options: IntegrationOptions | None = None
    first_declared_at: float = 0.0


@dataclass(frozen=True)
class DeclareResult:
    """declare() 结果: accepted=False 时 existing 为已存在的 Locator"""

    accepted: bool
    existing: Locator | None = None
