"""网络工具 - URL 安全校验 + 分块下载"""

from __future__ import annotations

import logging
import urllib.error
import urllib.request
from pathlib import Path
from typing import TYPE_CHECKING
from urllib.parse import urlparse

if TYPE_CHECKING:
    from fetchkit.core.cancel import CancelToken

from fetchkit.core.exceptions import ValidationError

logger = logging.getLogger(__name__)

_ALLOWED_SCHEMES = frozenset(("http", "https"))

CHUNK_SIZE = 64 * 1024


def validate_url_scheme(url: str, *, context: str = "", allow_file: bool = False) -> None:
    """校验 URL 仅使用 http/https，防止 file:// 等非预期协议访问

    allow_file=True 时额外放行 file://（离线镜像 / 测试）。

    Raises:
        ValidationError: URL scheme 不在白名单内
    """
    parsed = urlparse(url)
    allowed = _ALLOWED_SCHEMES | {"file"} if allow_file else _ALLOWED_SCHEMES
    if parsed.scheme not in allowed:
        label = f" ({context})" if context else ""
        raise ValidationError(
            f"不允许的 URL 协议 '{parsed.scheme}'{label}，"
            f"仅支持 {'/'.join(sorted(allowed))}: {url}"
        )


def download(
    url: str,
    dest: Path,
    *,
    timeout: float = 300,
    cancel: CancelToken | None = None,
) -> int:
    """分块下载 url 到 dest，返回写入字节数

    每个分块之间检查取消令牌；失败时删除不完整的目标文件。

    Raises:
        urllib.error.URLError / OSError: 传输失败
        FetchCancelledError: 被取消
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    written = 0
    try:
        with urllib.request.urlopen(url, timeout=timeout) as resp, open(dest, "wb") as f:  # nosec B310
            while True:
                if cancel is not None:
                    cancel.raise_if_cancelled(f"下载 {url}")
                chunk = resp.read(CHUNK_SIZE)
                if not chunk:
                    break
                f.write(chunk)
                written += len(chunk)
    except BaseException:
        dest.unlink(missing_ok=True)
        raise
    logger.debug("  已下载 %d 字节: %s", written, url)
    return written


def is_not_found(exc: BaseException) -> bool:
    """HTTP 404/410 或本地文件不存在视为资源不存在，而非瞬时网络错误"""
    if isinstance(exc, urllib.error.HTTPError):
        return exc.code in (404, 410)
    reason = getattr(exc, "reason", None)
    return isinstance(exc, FileNotFoundError) or isinstance(reason, FileNotFoundError)
