"""外部取消信号

整个配置过程共享一个 CancelToken：拉取器在每个步骤之间检查，
锁等待与子进程轮询也会响应取消。

子令牌 (CancelToken(parent=...)) 在父令牌取消时同样视为已取消，
编排器用它实现 fail_fast 而不影响调用方传入的令牌。
"""

from __future__ import annotations

import threading
import time

from fetchkit.core.exceptions import FetchCancelledError

_PARENT_POLL = 0.05


class CancelToken:
    """基于 threading.Event 的取消令牌"""

    def __init__(self, parent: CancelToken | None = None) -> None:
        self._event = threading.Event()
        self._parent = parent
        self._reason = ""

    def cancel(self, reason: str = "") -> None:
        self._reason = reason or "外部取消"
        self._event.set()

    @property
    def reason(self) -> str:
        if self._event.is_set():
            return self._reason
        return self._parent.reason if self._parent is not None else ""

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.cancelled

    def wait(self, timeout: float) -> bool:
        """等待最多 timeout 秒，返回期间是否被取消"""
        if self._parent is None:
            return self._event.wait(timeout)
        deadline = time.monotonic() + timeout
        while not self.cancelled:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            self._event.wait(min(remaining, _PARENT_POLL))
        return True

    def raise_if_cancelled(self, where: str = "") -> None:
        if self.cancelled:
            label = f" ({where})" if where else ""
            raise FetchCancelledError(f"已取消{label}: {self.reason}")


def check_cancel(token: CancelToken | None, where: str = "") -> None:
    """token 可能为 None 的便捷检查"""
    if token is not None:
        token.raise_if_cancelled(where)
