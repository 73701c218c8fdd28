"""配置编排器

一次配置过程 (configure) 对每个请求的依赖执行:
    声明 (Declare) → 就绪 (Populate) → 集成 (Integrate)

- 不同依赖在有界线程池中并行就绪与集成；单个依赖出错即短路，其余依赖继续
- fail_fast=True 时首个失败会取消其余工作
- 集成只产出 GraphBatch；全部依赖成功后才在写锁下串行应用到宿主图，
  任一依赖失败则宿主图保持不变
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import TYPE_CHECKING, Any, Iterable

from fetchkit.core.cancel import CancelToken
from fetchkit.core.dep.cache import PopulationCache
from fetchkit.core.dep.integrator import Integrator
from fetchkit.core.dep.locator import fingerprint
from fetchkit.core.dep.registry import DeclarationRegistry
from fetchkit.core.exceptions import (
    ConflictingDeclarationError,
    FetchCancelledError,
    FetchError,
    FetchKitError,
)
from fetchkit.core.graph import apply_batch, check_batches
from fetchkit.core.models import DependencyFailure, DependencyRequest, PassReport

if TYPE_CHECKING:
    from fetchkit.core.config import Config
    from fetchkit.core.dep.fetcher import ContentFetcher
    from fetchkit.core.dep.models import PopulateResult
    from fetchkit.core.graph import ExportedTargetSet, HostGraph

logger = logging.getLogger(__name__)


def _failure(exc: BaseException) -> DependencyFailure:
    if isinstance(exc, FetchKitError):
        return DependencyFailure(kind=exc.code, message=str(exc), retryable=exc.retryable)
    return DependencyFailure(kind=type(exc).__name__, message=str(exc))


class Orchestrator:
    """驱动声明 / 就绪 / 集成的编排器"""

    def __init__(
        self,
        cache: PopulationCache,
        *,
        registry: DeclarationRegistry | None = None,
        integrator: Integrator | None = None,
        max_workers: int = 8,
        fail_fast: bool = False,
        network_retries: int = 0,
        retry_backoff: float = 1.0,
    ) -> None:
        self.cache = cache
        self.registry = registry or DeclarationRegistry()
        self.integrator = integrator or Integrator()
        self.max_workers = max(1, max_workers)
        self.fail_fast = fail_fast
        self.network_retries = max(0, network_retries)
        self.retry_backoff = retry_backoff
        # 宿主图写锁：批次串行应用
        self._graph_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._populated: dict[str, PopulateResult] = {}

    @classmethod
    def from_config(
        cls,
        cfg: Config,
        *,
        fetcher: ContentFetcher | None = None,
        host_variables: dict[str, str] | None = None,
    ) -> Orchestrator:
        return cls(
            PopulationCache.from_config(cfg, fetcher),
            integrator=Integrator(host_variables),
            max_workers=cfg.max_workers,
            fail_fast=cfg.fail_fast,
            network_retries=cfg.network_retries,
        )

    # ------------------------------------------------------------------
    # 配置过程
    # ------------------------------------------------------------------

    def configure(
        self,
        requests: Iterable[DependencyRequest],
        *,
        graph: HostGraph,
        cancel: CancelToken | None = None,
    ) -> PassReport:
        """执行一次完整的配置过程，返回汇总报告"""
        start = time.monotonic()
        self.registry.reset()
        self.integrator.reset()
        with self._state_lock:
            self._populated.clear()

        report = PassReport()
        token = CancelToken(parent=cancel)
        pending = self._declare_all(list(requests), report)
        if report.errors and self.fail_fast:
            token.cancel("声明冲突 (fail_fast)")

        logger.info("配置开始: %d 个依赖 (workers=%d)", len(pending), self.max_workers)
        exported: dict[str, ExportedTargetSet] = {}
        if pending:
            workers = min(self.max_workers, len(pending))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="fetchkit") as pool:
                futures = {pool.submit(self._process, req, token): req.name for req in pending}
                for future in as_completed(futures):
                    name = futures[future]
                    try:
                        exported[name] = future.result()
                    except Exception as e:  # noqa: BLE001
                        self._record_failure(report, name, e, token)

        report.populated = self.populated()
        if not report.errors and cancel is not None and cancel.cancelled:
            logger.warning("配置过程已取消，不发布导出结果: %s", cancel.reason)
        elif not report.errors:
            ordered = {req.name: exported[req.name] for req in pending}
            report.success = self._publish(graph, ordered, report)
            if report.success:
                report.exports = ordered
        else:
            logger.error(
                "配置失败，宿主图未修改: %s", ", ".join(report.failed_names),
            )

        report.duration = time.monotonic() - start
        logger.info(
            "配置结束: 成功=%s, 导出 %d, 失败 %d (%.1f秒)",
            report.success, len(report.exports), len(report.errors), report.duration,
        )
        return report

    def _declare_all(
        self, requests: list[DependencyRequest], report: PassReport,
    ) -> list[DependencyRequest]:
        pending: list[DependencyRequest] = []
        seen: set[str] = set()
        for req in requests:
            try:
                result = self.registry.declare(req.name, req.locator, req.options)
            except FetchKitError as e:
                report.errors[req.name] = _failure(e)
                continue
            if not result.accepted:
                err = ConflictingDeclarationError(
                    req.name, result.existing.describe(), req.locator.describe(),
                )
                logger.error("%s", err)
                report.errors[req.name] = _failure(err)
                continue
            if req.name not in seen:
                seen.add(req.name)
                pending.append(req)
        # 冲突的名字不再就绪
        return [req for req in pending if req.name not in report.errors]

    def _record_failure(
        self, report: PassReport, name: str, exc: BaseException, token: CancelToken,
    ) -> None:
        failure = _failure(exc)
        report.errors[name] = failure
        if isinstance(exc, FetchCancelledError):
            logger.info("已取消: %s", name)
            return
        if not isinstance(exc, FetchKitError):
            logger.error("处理依赖 '%s' 时出错", name, exc_info=exc)
        else:
            logger.error("依赖失败: %s [%s] %s", name, failure.kind, failure.message)
        if self.fail_fast and not token.cancelled:
            token.cancel(f"fail_fast: {name} 失败")

    def _process(self, req: DependencyRequest, token: CancelToken) -> ExportedTargetSet:
        """单个依赖: 就绪 → 集成（在工作线程中执行）"""
        token.raise_if_cancelled(req.name)
        fp = fingerprint(req.name, req.locator)
        result = self._populate(req, fp, token)
        with self._state_lock:
            self._populated[req.name] = result
        token.raise_if_cancelled(req.name)
        return self.integrator.integrate(
            req.name, result.local_path, req.options,
            binary_dir=self.cache.binary_dir(req.name),
        )

    def _populate(self, req: DependencyRequest, fp: str, token: CancelToken) -> PopulateResult:
        """就绪，瞬时网络错误按 network_retries 重试"""
        attempt = 0
        while True:
            try:
                return self.cache.populate(
                    req.name, fp, req.locator, refresh=req.refresh, cancel=token,
                )
            except FetchError as e:
                if not e.retryable or attempt >= self.network_retries:
                    raise
                attempt += 1
                delay = self.retry_backoff * attempt
                logger.warning(
                    "网络错误，%.1f 秒后重试 (%d/%d): %s - %s",
                    delay, attempt, self.network_retries, req.name, e,
                )
                if token.wait(delay):
                    token.raise_if_cancelled(req.name)

    def _publish(
        self, graph: HostGraph, exported: dict[str, ExportedTargetSet], report: PassReport,
    ) -> bool:
        """在写锁下校验并串行应用所有批次"""
        batches = [exp.batch for exp in exported.values()]
        with self._graph_lock:
            problems = check_batches(graph, batches)
            if problems:
                for name, message in problems:
                    report.errors.setdefault(
                        name, DependencyFailure(kind="TARGET_CONFLICT", message=message),
                    )
                    logger.error("目标冲突: %s - %s", name, message)
                return False
            applied: list[str] = []
            for batch in batches:
                try:
                    handles = apply_batch(graph, batch)
                except Exception as e:  # noqa: BLE001
                    # 预检已通过，宿主图实现违反了 HostGraph 约定
                    report.errors[batch.dependency] = DependencyFailure(
                        kind="GRAPH_REJECTED", message=str(e),
                    )
                    logger.error(
                        "宿主图拒绝变更，已应用的批次无法回滚: %s - %s (已应用: %s)",
                        batch.dependency, e, ", ".join(applied) or "无",
                    )
                    return False
                applied.append(batch.dependency)
                logger.debug("已应用: %s (%d 个目标)", batch.dependency, len(handles))
        logger.info("已发布 %d 个依赖到宿主图", len(batches))
        return True

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------

    def populated(self) -> dict[str, PopulateResult]:
        with self._state_lock:
            return dict(self._populated)

    def get_properties(self, name: str) -> dict[str, Any]:
        """当前配置过程中依赖的就绪属性 (populated / source_dir / binary_dir)"""
        with self._state_lock:
            result = self._populated.get(name)
        if result is None:
            return {"populated": False, "source_dir": "", "binary_dir": ""}
        return {
            "populated": True,
            "source_dir": result.local_path,
            "binary_dir": str(self.cache.binary_dir(name)),
        }
