"""摘要校验测试"""

from __future__ import annotations

import hashlib
from pathlib import Path

import pytest

from fetchkit.core.dep.integrity import compute_digest, normalize_digest, parse_digest, verify
from fetchkit.core.exceptions import DigestMismatchError, ValidationError

DATA = b"fetchkit payload\n"


class TestParseDigest:
    @pytest.mark.parametrize("algo", ["md5", "sha1", "sha256", "sha512"])
    def test_supported(self, algo: str) -> None:
        hex_value = hashlib.new(algo, DATA).hexdigest()
        assert parse_digest(f"{algo}:{hex_value}") == (algo, hex_value)

    def test_cmake_style(self) -> None:
        hex_value = hashlib.sha256(DATA).hexdigest()
        assert normalize_digest(f"SHA256={hex_value.upper()}") == f"sha256:{hex_value}"

    def test_unknown_algorithm(self) -> None:
        with pytest.raises(ValidationError, match="不支持的摘要算法"):
            parse_digest("crc32:deadbeef")

    def test_wrong_length(self) -> None:
        with pytest.raises(ValidationError, match="长度"):
            parse_digest("sha256:abcd")

    def test_garbage(self) -> None:
        with pytest.raises(ValidationError, match="格式无效"):
            parse_digest("not a digest")


class TestVerify:
    def test_bytes_ok(self) -> None:
        verify(DATA, "sha256:" + hashlib.sha256(DATA).hexdigest())

    def test_file_ok(self, tmp_path: Path) -> None:
        f = tmp_path / "blob"
        f.write_bytes(DATA * 1000)
        digest = "sha1:" + hashlib.sha1(DATA * 1000).hexdigest()
        verify(f, digest)
        assert compute_digest(f, "sha1") == digest.split(":", 1)[1]

    def test_mismatch(self, tmp_path: Path) -> None:
        f = tmp_path / "blob"
        f.write_bytes(DATA)
        with pytest.raises(DigestMismatchError) as exc_info:
            verify(f, "sha256:" + "0" * 64)
        assert exc_info.value.code == "DIGEST_MISMATCH"
        assert exc_info.value.actual == "sha256:" + hashlib.sha256(DATA).hexdigest()
        assert not exc_info.value.retryable
