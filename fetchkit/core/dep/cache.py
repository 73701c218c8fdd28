"""Population Cache - 按依赖名落盘的内容缓存

目录布局:
  {root}/{name}-src/            拉取到的内容
  {root}/{name}-meta/record.yml Population Record
  {root}/{name}-meta/lock       指纹锁
  {root}/{name}-build/          构建输出目录（供集成阶段导出）

缓存策略:
  - Populated 且指纹一致 → 直接返回，不触发拉取（跨进程、跨多次运行）
  - 分支类 VcsRef 在 refresh 开启时向远端确认提交；提交未变仍命中缓存
  - 缺失 / Failed / 陈旧 Fetching → 抢锁 → 写 Fetching → 拉取 → 写 Populated / Failed
  - 同一依赖的并发请求: 进程内先排队在线程锁上，跨进程排队在文件锁上，
    拿到锁后重新读取记录，因此只会发生一次物理拉取
"""

from __future__ import annotations

import logging
import os
import shutil
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

import yaml

if TYPE_CHECKING:
    from fetchkit.core.cancel import CancelToken
    from fetchkit.core.config import Config

from fetchkit.core.dep.fetcher import ArchiveFetcher, ContentFetcher, GitFetcher
from fetchkit.core.dep.lock import HOSTNAME, FingerprintLock, is_locked, owner_alive
from fetchkit.core.dep.locator import LocalPath, Locator, VcsRef, locator_to_dict
from fetchkit.core.dep.models import PopulateResult, PopulationRecord, PopulationState
from fetchkit.core.exceptions import FetchError, FetchKitError, ValidationError
from fetchkit.utils.yaml_io import load_yaml, save_yaml

logger = logging.getLogger(__name__)

RECORD_FILE = "record.yml"
LOCK_FILE = "lock"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class PopulationCache:
    """内容寻址的落盘缓存，保证每个指纹至多一次物理拉取"""

    def __init__(
        self,
        root: str | Path,
        fetcher: ContentFetcher | None = None,
        *,
        lock_timeout: float = 600.0,
        lock_poll_interval: float = 0.2,
        refresh_mutable_refs: bool = True,
        fully_disconnected: bool = False,
        source_dir_overrides: dict[str, str] | None = None,
    ) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.fetcher = fetcher or ContentFetcher()
        self.lock_timeout = lock_timeout
        self.lock_poll_interval = lock_poll_interval
        self.refresh_mutable_refs = refresh_mutable_refs
        self.fully_disconnected = fully_disconnected
        self.source_dir_overrides = dict(source_dir_overrides or {})
        self._guard = threading.Lock()
        self._name_locks: dict[str, threading.Lock] = {}

    @classmethod
    def from_config(cls, cfg: Config, fetcher: ContentFetcher | None = None) -> PopulationCache:
        """按配置组装缓存及默认拉取器"""
        if fetcher is None:
            fetcher = ContentFetcher(
                git=GitFetcher(shallow=cfg.git_shallow, timeout=cfg.download_timeout),
                archive=ArchiveFetcher(
                    timeout=cfg.download_timeout, allow_file_urls=cfg.allow_file_urls,
                ),
            )
        return cls(
            cfg.cache_root,
            fetcher,
            lock_timeout=cfg.lock_timeout,
            lock_poll_interval=cfg.lock_poll_interval,
            refresh_mutable_refs=cfg.refresh_mutable_refs,
            fully_disconnected=cfg.fully_disconnected,
            source_dir_overrides=cfg.source_dir_overrides,
        )

    # ------------------------------------------------------------------
    # 路径
    # ------------------------------------------------------------------

    def src_dir(self, name: str) -> Path:
        return self.root / f"{name}-src"

    def meta_dir(self, name: str) -> Path:
        return self.root / f"{name}-meta"

    def binary_dir(self, name: str) -> Path:
        return self.root / f"{name}-build"

    def _record_path(self, name: str) -> Path:
        return self.meta_dir(name) / RECORD_FILE

    def _lock_path(self, name: str) -> Path:
        return self.meta_dir(name) / LOCK_FILE

    # ------------------------------------------------------------------
    # 记录读写
    # ------------------------------------------------------------------

    def read(self, name: str) -> PopulationRecord | None:
        """读取 Population Record；不存在或损坏返回 None"""
        path = self._record_path(name)
        try:
            data = load_yaml(path)
        except (yaml.YAMLError, ValueError) as e:
            logger.warning("Population Record 损坏，按缺失处理: %s (%s)", path, e)
            return None
        if not data:
            return None
        try:
            return PopulationRecord.from_dict(data)
        except (TypeError, ValueError) as e:
            logger.warning("Population Record 字段无效，按缺失处理: %s (%s)", path, e)
            return None

    def _write(self, record: PopulationRecord) -> None:
        record.updated_at = _now()
        save_yaml(self._record_path(record.name), record.to_dict())

    def list_records(self) -> list[PopulationRecord]:
        """列出缓存根目录下所有依赖的记录"""
        records: list[PopulationRecord] = []
        for meta in sorted(self.root.glob("*-meta")):
            if not meta.is_dir():
                continue
            record = self.read(meta.name[: -len("-meta")])
            if record is not None:
                records.append(record)
        return records

    def is_locked(self, name: str) -> bool:
        return is_locked(self._lock_path(name))

    def invalidate(self, name: str) -> bool:
        """删除依赖的缓存内容与记录，正在拉取时拒绝"""
        if self.is_locked(name):
            raise ValidationError(f"依赖 '{name}' 正在拉取，无法清除缓存")
        removed = False
        for path in (self.src_dir(name), self.meta_dir(name), self.binary_dir(name)):
            if path.exists():
                shutil.rmtree(path)
                removed = True
        if removed:
            logger.info("缓存已清除: %s", name)
        return removed

    # ------------------------------------------------------------------
    # populate
    # ------------------------------------------------------------------

    def _name_lock(self, name: str) -> threading.Lock:
        with self._guard:
            return self._name_locks.setdefault(name, threading.Lock())

    def populate(
        self,
        name: str,
        fingerprint: str,
        locator: Locator,
        *,
        refresh: bool | None = None,
        cancel: CancelToken | None = None,
    ) -> PopulateResult:
        """把 Locator 变成本地内容

        refresh=None 时使用构造参数 refresh_mutable_refs。

        Raises:
            FetchError / DigestMismatchError / LockTimeoutError / FetchCancelledError
        """
        override = self.source_dir_overrides.get(name)
        if override:
            path = Path(override).expanduser()
            if not path.is_dir():
                raise FetchError("not_found", f"预置源码目录不存在: {name} -> {path}")
            logger.info("使用预置源码目录: %s -> %s", name, path)
            return PopulateResult(name=name, local_path=str(path), already_cached=True)

        if isinstance(locator, LocalPath):
            outcome = self.fetcher.local.fetch(locator, cancel=cancel)
            return PopulateResult(name=name, local_path=outcome.local_path, already_cached=True)

        if refresh is None:
            refresh = self.refresh_mutable_refs

        with self._name_lock(name):
            return self._populate_locked(name, fingerprint, locator, refresh, cancel)

    def _populate_locked(
        self,
        name: str,
        fingerprint: str,
        locator: Locator,
        refresh: bool,
        cancel: CancelToken | None,
    ) -> PopulateResult:
        record = self.read(name)
        if self.fully_disconnected:
            if self._is_usable(record, fingerprint):
                logger.info("离线模式，使用已缓存内容: %s", name)
                return self._hit(record)
            raise FetchError("network", f"离线模式下依赖 '{name}' 未缓存，无法拉取")

        remote_commit = ""
        if self._is_usable(record, fingerprint):
            if not self._needs_remote_check(locator, refresh):
                logger.info("缓存命中: %s -> %s", name, record.local_path)
                return self._hit(record)
            remote_commit = self.fetcher.resolve_remote(locator, cancel=cancel)
            if remote_commit == record.resolved_commit:
                logger.info("远端未变化，缓存命中: %s@%s", name, remote_commit[:12])
                return self._hit(record)
            logger.info(
                "远端已更新，重新拉取: %s %s -> %s",
                name, record.resolved_commit[:12], remote_commit[:12],
            )

        with FingerprintLock(
            self._lock_path(name), fingerprint,
            timeout=self.lock_timeout, poll_interval=self.lock_poll_interval,
            cancel=cancel,
        ):
            # 其他进程可能在等待期间完成了拉取
            record = self.read(name)
            if self._is_usable(record, fingerprint):
                if self._needs_remote_check(locator, refresh) and not remote_commit:
                    remote_commit = self.fetcher.resolve_remote(locator, cancel=cancel)
                if not remote_commit or record.resolved_commit == remote_commit:
                    logger.info("等待期间已由其他进程拉取完成: %s", name)
                    return self._hit(record)
            if record is not None and record.state is PopulationState.FETCHING:
                logger.warning(
                    "上次拉取未完成 (pid=%s host=%s)，按失败处理并从头重试: %s",
                    record.owner_pid, record.owner_host, name,
                )
            return self._fetch(name, fingerprint, locator, cancel)

    @staticmethod
    def _needs_remote_check(locator: Locator, refresh: bool) -> bool:
        return refresh and isinstance(locator, VcsRef) and locator.is_mutable

    @staticmethod
    def _is_usable(record: PopulationRecord | None, fingerprint: str) -> bool:
        return (
            record is not None
            and record.state is PopulationState.POPULATED
            and record.fingerprint == fingerprint
            and Path(record.local_path).is_dir()
        )

    @staticmethod
    def _hit(record: PopulationRecord) -> PopulateResult:
        return PopulateResult(
            name=record.name,
            local_path=record.local_path,
            already_cached=True,
            unverified=record.unverified,
            resolved_commit=record.resolved_commit,
        )

    def _fetch(
        self, name: str, fingerprint: str, locator: Locator, cancel: CancelToken | None,
    ) -> PopulateResult:
        """持锁状态下的物理拉取: Fetching → Populated / Failed"""
        record = PopulationRecord(
            name=name,
            fingerprint=fingerprint,
            state=PopulationState.FETCHING,
            owner_pid=os.getpid(),
            owner_host=HOSTNAME,
            locator=locator_to_dict(locator),
        )
        self._write(record)
        self._discard_partials(name)

        dest = self.src_dir(name)
        staging = self.root / f".{name}-src.partial-{uuid.uuid4().hex[:8]}"
        logger.info("开始拉取: %s (%s)", name, locator.describe())
        try:
            outcome = self.fetcher.fetch(locator, staging, cancel=cancel)
            if dest.exists():
                shutil.rmtree(dest)
            os.rename(staging, dest)
        except BaseException as e:
            shutil.rmtree(staging, ignore_errors=True)
            record.state = PopulationState.FAILED
            record.last_error = str(e) or type(e).__name__
            record.error_kind = e.code if isinstance(e, FetchKitError) else type(e).__name__
            record.owner_pid = 0
            self._write(record)
            logger.error("拉取失败: %s [%s] %s", name, record.error_kind, record.last_error)
            raise

        record.state = PopulationState.POPULATED
        record.local_path = str(dest)
        record.resolved_commit = outcome.resolved_commit
        record.unverified = outcome.unverified
        record.owner_pid = 0
        record.last_error = ""
        record.error_kind = ""
        self._write(record)
        logger.info("拉取完成: %s -> %s", name, dest)
        return PopulateResult(
            name=name,
            local_path=str(dest),
            already_cached=False,
            unverified=outcome.unverified,
            resolved_commit=outcome.resolved_commit,
        )

    def _discard_partials(self, name: str) -> None:
        """清理崩溃遗留的半成品目录/下载文件（持锁调用）"""
        for pattern in (f".{name}-src.partial-*", f"..{name}-src.partial-*"):
            for leftover in self.root.glob(pattern):
                logger.info("清理未完成的拉取残留: %s", leftover)
                if leftover.is_dir():
                    shutil.rmtree(leftover, ignore_errors=True)
                else:
                    leftover.unlink(missing_ok=True)

    def stale_fetching(self, record: PopulationRecord) -> bool:
        """Fetching 记录的持有进程已退出"""
        return record.state is PopulationState.FETCHING and not owner_alive(
            record.owner_pid, record.owner_host,
        )
