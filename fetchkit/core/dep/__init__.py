"""依赖获取与集成

模块划分:
- locator.py:    来源描述 (VcsRef / Archive / LocalPath) 与指纹
- integrity.py:  摘要校验
- fetcher.py:    按来源类型拉取内容
- lock.py:       跨进程指纹锁
- cache.py:      Population Cache（落盘记录 + 至多一次拉取）
- registry.py:   声明注册表与清单加载
- integrator.py: 构建描述求值，产出图变更批次
"""

from fetchkit.core.dep.locator import Archive, LocalPath, Locator, VcsRef, fingerprint, parse_locator
from fetchkit.core.dep.models import PopulateResult, PopulationRecord, PopulationState
from fetchkit.core.dep.integrator import IntegrationOptions, Integrator
from fetchkit.core.dep.fetcher import ContentFetcher
from fetchkit.core.dep.cache import PopulationCache
from fetchkit.core.dep.registry import DeclarationRegistry, load_manifest

__all__ = [
    "Archive",
    "LocalPath",
    "Locator",
    "VcsRef",
    "fingerprint",
    "parse_locator",
    "PopulateResult",
    "PopulationRecord",
    "PopulationState",
    "IntegrationOptions",
    "Integrator",
    "ContentFetcher",
    "PopulationCache",
    "DeclarationRegistry",
    "load_manifest",
]
