"""依赖来源定位 (Locator) 与指纹

Locator 是三选一的标签联合:
  - VcsRef:    远端仓库 + 分支/标签/提交
  - Archive:   远端压缩包 URL + 可选摘要
  - LocalPath: 本地目录，直接透传

指纹 = sha256(name, 变体类型, 完整载荷)，作为 Population Cache 的键。
"""

from __future__ import annotations

import hashlib
import json
import re
from collections.abc import Mapping
from dataclasses import asdict, dataclass
from typing import Any, ClassVar, Union

from fetchkit.core.dep.integrity import normalize_digest
from fetchkit.core.exceptions import ValidationError

COMMIT_PATTERN = re.compile(r"^[0-9a-f]{40}$")

# 清单中声明来源所用的字段，每组对应一个变体
_VCS_KEYS = ("git_repository", "git_tag")
_ARCHIVE_KEYS = ("url", "url_hash")
_LOCAL_KEYS = ("source_dir",)


@dataclass(frozen=True)
class VcsRef:
    repository_url: str
    ref: str

    kind: ClassVar[str] = "vcs"

    def __post_init__(self) -> None:
        if not self.repository_url:
            raise ValidationError("VcsRef 需要 repository_url")
        if not self.ref:
            raise ValidationError(f"VcsRef 需要 ref: {self.repository_url}")
        # 提交号统一小写，保证指纹与 rev-parse 输出一致
        if COMMIT_PATTERN.fullmatch(self.ref.lower()):
            object.__setattr__(self, "ref", self.ref.lower())

    @property
    def is_mutable(self) -> bool:
        """非 40 位提交号的 ref（分支/标签）不可按内容寻址，需要向远端确认"""
        return not COMMIT_PATTERN.fullmatch(self.ref)

    def describe(self) -> str:
        return f"git {self.repository_url}@{self.ref}"


@dataclass(frozen=True)
class Archive:
    url: str
    digest: str = ""

    kind: ClassVar[str] = "archive"

    def __post_init__(self) -> None:
        if not self.url:
            raise ValidationError("Archive 需要 url")
        if self.digest:
            object.__setattr__(self, "digest", normalize_digest(self.digest))

    def describe(self) -> str:
        pin = f" [{self.digest}]" if self.digest else " [未校验]"
        return f"archive {self.url}{pin}"


@dataclass(frozen=True)
class LocalPath:
    path: str

    kind: ClassVar[str] = "local"

    def __post_init__(self) -> None:
        if not self.path:
            raise ValidationError("LocalPath 需要 path")

    def describe(self) -> str:
        return f"local {self.path}"


Locator = Union[VcsRef, Archive, LocalPath]

_KINDS: dict[str, type] = {"vcs": VcsRef, "archive": Archive, "local": LocalPath}


def locator_to_dict(locator: Locator) -> dict[str, str]:
    """序列化为 {kind, ...载荷}，用于持久化和 Web 输出"""
    return {"kind": locator.kind, **asdict(locator)}


def locator_from_dict(data: Mapping[str, Any]) -> Locator:
    """locator_to_dict 的逆操作"""
    payload = dict(data)
    kind = payload.pop("kind", "")
    cls = _KINDS.get(kind)
    if cls is None:
        raise ValidationError(f"未知的 Locator 类型: {kind!r}")
    try:
        return cls(**payload)
    except TypeError as e:
        raise ValidationError(f"Locator 字段无效 ({kind}): {e}") from e


def parse_locator(fields: Mapping[str, Any]) -> Locator:
    """从声明字段构造 Locator

    git_repository + git_tag → VcsRef
    url (+ url_hash)         → Archive
    source_dir               → LocalPath

    必须恰好命中一组，否则报错。
    """
    present = [
        group for group in (_VCS_KEYS, _ARCHIVE_KEYS, _LOCAL_KEYS)
        if fields.get(group[0])
    ]
    if len(present) != 1:
        raise ValidationError(
            "依赖来源必须且只能指定一种: git_repository / url / source_dir",
            details=[f"实际指定: {[g[0] for g in present] or '无'}"],
        )
    group = present[0]
    if group is _VCS_KEYS:
        return VcsRef(
            repository_url=str(fields["git_repository"]),
            ref=str(fields.get("git_tag") or ""),
        )
    if group is _ARCHIVE_KEYS:
        return Archive(url=str(fields["url"]), digest=str(fields.get("url_hash") or ""))
    return LocalPath(path=str(fields["source_dir"]))


def fingerprint(name: str, locator: Locator) -> str:
    """稳定指纹: 跨进程一致，只依赖 (name, 变体, 载荷)"""
    canonical = json.dumps(
        {"name": name, "kind": locator.kind, "payload": asdict(locator)},
        sort_keys=True, separators=(",", ":"),
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
