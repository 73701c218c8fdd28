"""外部命令执行工具 - 统一子进程调用

通过 CommandExecutor 协议抽象子进程执行（git 等外部客户端），
方便测试替换；LocalExecutor 轮询取消令牌，取消时终止子进程。
"""

from __future__ import annotations

import logging
import subprocess
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from fetchkit.core.cancel import CancelToken

from fetchkit.core.exceptions import FetchCancelledError

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.1


# =========================================================================
# 命令执行结果
# =========================================================================

@dataclass
class CommandResult:
    """命令执行结果（与 subprocess 解耦）"""

    returncode: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        return self.returncode == 0


# =========================================================================
# 命令执行器协议
# =========================================================================

class CommandExecutor(Protocol):
    """命令执行器协议 - 抽象子进程调用

    测试时可注入 mock 实现，无需 patch subprocess。
    """

    def execute(
        self,
        cmd: list[str],
        *,
        cwd: str = ".",
        env: dict[str, str] | None = None,
        timeout: float | None = None,
        cancel: CancelToken | None = None,
    ) -> CommandResult:
        """执行命令并返回结果"""
        ...


# =========================================================================
# 默认实现: 本地执行器
# =========================================================================

class LocalExecutor:
    """本地命令执行器（默认实现）"""

    def execute(
        self,
        cmd: list[str],
        *,
        cwd: str = ".",
        env: dict[str, str] | None = None,
        timeout: float | None = None,
        cancel: CancelToken | None = None,
    ) -> CommandResult:
        logger.debug("  执行: %s (cwd=%s)", " ".join(cmd), cwd)
        proc = subprocess.Popen(
            cmd, cwd=cwd, env=env, text=True,
            stdout=subprocess.PIPE, stderr=subprocess.PIPE,
        )
        deadline = time.monotonic() + timeout if timeout else None
        while True:
            try:
                stdout, stderr = proc.communicate(timeout=_POLL_INTERVAL)
                break
            except subprocess.TimeoutExpired:
                if cancel is not None and cancel.cancelled:
                    _terminate(proc)
                    raise FetchCancelledError(
                        f"命令被取消: {' '.join(cmd)}"
                    ) from None
                if deadline is not None and time.monotonic() > deadline:
                    _terminate(proc)
                    raise
        return CommandResult(
            returncode=proc.returncode,
            stdout=stdout,
            stderr=stderr,
        )


def _terminate(proc: subprocess.Popen[str]) -> None:
    proc.kill()
    proc.communicate()
