"""跨进程指纹锁

锁文件 {root}/{name}-meta/lock 以 O_CREAT|O_EXCL 创建，内容记录持有者
(pid, host, fingerprint, acquired_at)。等待方轮询：
  - 持有者在本机且进程已退出 → 视为陈旧锁，回收后重新抢占
  - 超过 timeout → LockTimeoutError
  - 取消令牌触发 → FetchCancelledError
"""

from __future__ import annotations

import json
import logging
import os
import socket
import time
import uuid
from pathlib import Path
from typing import Any

from fetchkit.core.cancel import CancelToken, check_cancel
from fetchkit.core.exceptions import LockTimeoutError

logger = logging.getLogger(__name__)

HOSTNAME = socket.gethostname()


def pid_alive(pid: int) -> bool:
    """本机进程存活检查"""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # 进程存在但属于其他用户
        return True
    return True


def owner_alive(pid: int, host: str) -> bool:
    """持有者是否仍然存活；其他主机上的持有者无法探测，按存活处理"""
    if host and host != HOSTNAME:
        return True
    return pid_alive(pid)


class FingerprintLock:
    """单个依赖的文件锁（可跨进程、可超时、可取消）"""

    def __init__(
        self,
        path: Path,
        fingerprint: str,
        *,
        timeout: float = 600.0,
        poll_interval: float = 0.2,
        cancel: CancelToken | None = None,
    ) -> None:
        self.path = path
        self.fingerprint = fingerprint
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.cancel = cancel
        self._token = ""

    def __enter__(self) -> FingerprintLock:
        self.acquire()
        return self

    def __exit__(self, *exc: object) -> None:
        self.release()

    @property
    def held(self) -> bool:
        return bool(self._token)

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        deadline = time.monotonic() + self.timeout
        waited = False
        while True:
            check_cancel(self.cancel, f"等待锁 {self.path}")
            if self._try_create():
                if waited:
                    logger.info("已获得锁: %s", self.path)
                return
            holder = read_holder(self.path)
            if holder is not None and not owner_alive(
                int(holder.get("pid", 0)), str(holder.get("host", "")),
            ):
                self._reclaim(holder)
                continue
            if time.monotonic() >= deadline:
                raise LockTimeoutError(
                    f"等待锁超时 ({self.timeout:.0f}s): {self.path}，"
                    f"持有者: {holder}"
                )
            if not waited:
                logger.info("锁被占用，等待: %s (持有者 %s)", self.path, holder)
                waited = True
            if self.cancel is not None:
                self.cancel.wait(self.poll_interval)
            else:
                time.sleep(self.poll_interval)

    def release(self) -> None:
        if not self._token:
            return
        holder = read_holder(self.path)
        if holder is not None and holder.get("token") == self._token:
            self.path.unlink(missing_ok=True)
        else:
            logger.warning("锁文件已被他人回收，跳过删除: %s", self.path)
        self._token = ""

    def _try_create(self) -> bool:
        token = uuid.uuid4().hex
        try:
            fd = os.open(str(self.path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        body = {
            "pid": os.getpid(),
            "host": HOSTNAME,
            "fingerprint": self.fingerprint,
            "token": token,
            "acquired_at": time.time(),
        }
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(body, f)
        self._token = token
        return True

    def _reclaim(self, stale: dict[str, Any]) -> None:
        """回收陈旧锁

        先改名再确认内容：若改名拿到的已是别人新建的锁，则用 link 放回。
        """
        moved = self.path.with_name(f"{self.path.name}.stale-{uuid.uuid4().hex}")
        try:
            os.rename(self.path, moved)
        except FileNotFoundError:
            return
        current = read_holder(moved)
        if current is not None and current.get("token") != stale.get("token"):
            try:
                os.link(moved, self.path)
            except FileExistsError:
                logger.warning("回收锁时发生竞争，放弃恢复: %s", self.path)
            moved.unlink(missing_ok=True)
            return
        moved.unlink(missing_ok=True)
        logger.warning(
            "回收陈旧锁: %s (pid=%s host=%s 已退出)",
            self.path, stale.get("pid"), stale.get("host"),
        )


def read_holder(path: Path) -> dict[str, Any] | None:
    """读取锁持有者信息；文件不存在返回 None，内容损坏视为无主（pid=0）"""
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        # 写入中途崩溃留下的空/半截文件；刚创建尚未写入的情况给一点宽限
        try:
            age = time.time() - path.stat().st_mtime
        except FileNotFoundError:
            return None
        if age < 2.0:
            return {"pid": os.getpid(), "host": HOSTNAME, "token": "", "partial": True}
        return {"pid": 0, "host": HOSTNAME, "token": ""}
    return data if isinstance(data, dict) else {"pid": 0, "host": HOSTNAME, "token": ""}


def is_locked(path: Path) -> bool:
    """锁文件存在且持有者存活"""
    holder = read_holder(path)
    if holder is None:
        return False
    return owner_alive(int(holder.get("pid", 0)), str(holder.get("host", "")))
