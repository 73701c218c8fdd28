"""完整性校验

摘要格式统一为 "<algo>:<hex>"，同时兼容 "SHA256=<hex>" 写法。
比较使用 hmac.compare_digest，耗时与首个不同字节的位置无关。
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import re
from pathlib import Path

from fetchkit.core.exceptions import DigestMismatchError, ValidationError

logger = logging.getLogger(__name__)

# 算法 -> 十六进制摘要长度
SUPPORTED_ALGORITHMS: dict[str, int] = {
    "md5": 32,
    "sha1": 40,
    "sha256": 64,
    "sha512": 128,
}

_DIGEST_RE = re.compile(r"^(?P<algo>[A-Za-z0-9]+)[:=](?P<hex>[0-9A-Fa-f]+)$")

_CHUNK_SIZE = 1024 * 1024


def parse_digest(digest: str) -> tuple[str, str]:
    """解析摘要字符串，返回 (算法, 小写十六进制)

    Raises:
        ValidationError: 格式错误、算法不支持或长度不符
    """
    m = _DIGEST_RE.match(digest.strip())
    if m is None:
        raise ValidationError(f"摘要格式无效，应为 <algo>:<hex>: {digest!r}")
    algo = m.group("algo").lower()
    hex_value = m.group("hex").lower()
    expected_len = SUPPORTED_ALGORITHMS.get(algo)
    if expected_len is None:
        raise ValidationError(
            f"不支持的摘要算法 '{algo}'，可用: {', '.join(SUPPORTED_ALGORITHMS)}"
        )
    if len(hex_value) != expected_len:
        raise ValidationError(
            f"{algo} 摘要长度应为 {expected_len}，实际 {len(hex_value)}: {digest!r}"
        )
    return algo, hex_value


def normalize_digest(digest: str) -> str:
    """规范化为 "<algo>:<hex>"，保证等价写法的 Locator 指纹相同"""
    algo, hex_value = parse_digest(digest)
    return f"{algo}:{hex_value}"


def compute_digest(data: bytes | Path, algo: str) -> str:
    """计算内容摘要（文件分块读取）"""
    h = hashlib.new(algo)
    if isinstance(data, Path):
        with open(data, "rb") as f:
            for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
                h.update(chunk)
    else:
        h.update(data)
    return h.hexdigest()


def verify(data: bytes | Path, expected_digest: str) -> None:
    """校验内容摘要，不一致抛 DigestMismatchError"""
    algo, expected = parse_digest(expected_digest)
    actual = compute_digest(data, algo)
    if not hmac.compare_digest(actual.encode("ascii"), expected.encode("ascii")):
        source = data.name if isinstance(data, Path) else f"{len(data)} 字节"
        raise DigestMismatchError(
            expected=f"{algo}:{expected}", actual=f"{algo}:{actual}", source=source,
        )
    if isinstance(data, Path):
        logger.info("  校验和通过: %s (%s)", data.name, algo)
