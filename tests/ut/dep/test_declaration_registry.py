"""声明注册表与清单加载测试"""

from __future__ import annotations

import threading
from pathlib import Path

import pytest
import yaml

from fetchkit.core.dep.integrator import IntegrationOptions
from fetchkit.core.dep.locator import Archive, LocalPath, VcsRef
from fetchkit.core.dep.registry import DeclarationRegistry, load_manifest
from fetchkit.core.exceptions import ValidationError

REPO_A = "https://example.com/a.git"


def _write(path: Path, data: dict) -> Path:
    path.write_text(yaml.safe_dump(data, allow_unicode=True), encoding="utf-8")
    return path


class TestDeclare:
    def test_first_declaration_accepted(self) -> None:
        reg = DeclarationRegistry()
        assert reg.declare("X", VcsRef(REPO_A, "v1")).accepted
        assert reg.names() == ["X"]
        assert reg.get("X").locator == VcsRef(REPO_A, "v1")
        assert reg.get("X").first_declared_at > 0

    def test_identical_redeclaration_is_noop(self) -> None:
        reg = DeclarationRegistry()
        assert reg.declare("X", VcsRef(REPO_A, "v1")).accepted
        declared_at = reg.get("X").first_declared_at
        assert reg.declare("X", VcsRef(REPO_A, "v1")).accepted
        assert reg.get("X").first_declared_at == declared_at

    def test_conflict_keeps_first(self) -> None:
        reg = DeclarationRegistry()
        reg.declare("X", VcsRef(REPO_A, "v1"))
        result = reg.declare("X", VcsRef(REPO_A, "v2"))
        assert not result.accepted
        assert result.existing == VcsRef(REPO_A, "v1")
        assert reg.get("X").locator == VcsRef(REPO_A, "v1")

    def test_different_variant_conflicts(self) -> None:
        reg = DeclarationRegistry()
        reg.declare("X", VcsRef(REPO_A, "v1"))
        assert not reg.declare("X", Archive("https://example.com/x.tgz")).accepted

    def test_reset(self) -> None:
        reg = DeclarationRegistry()
        reg.declare("X", VcsRef(REPO_A, "v1"))
        reg.reset()
        assert reg.get("X") is None
        assert reg.declare("X", VcsRef(REPO_A, "v2")).accepted

    @pytest.mark.parametrize("name", ["", "../etc", "a b", "x/y"])
    def test_unsafe_names_rejected(self, name: str) -> None:
        with pytest.raises(ValidationError, match="非法字符"):
            DeclarationRegistry().declare(name, LocalPath("/src"))

    def test_concurrent_declares_single_winner(self) -> None:
        reg = DeclarationRegistry()
        results = []

        def declare(ref: str) -> None:
            results.append(reg.declare("X", VcsRef(REPO_A, ref)))

        threads = [threading.Thread(target=declare, args=(f"v{i}",)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert sum(1 for r in results if r.accepted) == 1


class TestLoadManifest:
    def test_all_variants(self, tmp_path: Path) -> None:
        manifest = _write(tmp_path / "deps.yml", {
            "dependencies": {
                "fmt": {
                    "git_repository": REPO_A, "git_tag": "10.2.1",
                    "options": {"build_testing": True}, "refresh": False,
                },
                "lib1": {"url": "https://example.com/lib1.tgz", "url_hash": "SHA256=" + "AB" * 32},
                "vendored": {"source_dir": "/opt/vendored"},
            },
        })
        reqs = load_manifest(manifest)
        assert [r.name for r in reqs] == ["fmt", "lib1", "vendored"]
        assert reqs[0].locator == VcsRef(REPO_A, "10.2.1")
        assert reqs[0].options == IntegrationOptions(build_testing=True)
        assert reqs[0].refresh is False
        assert reqs[1].locator.digest == "sha256:" + "ab" * 32
        assert reqs[2].refresh is None

    def test_include_relative(self, tmp_path: Path) -> None:
        (tmp_path / "sub").mkdir()
        _write(tmp_path / "sub" / "common.yml", {
            "dependencies": {"zlib": {"source_dir": "/opt/zlib"}},
        })
        manifest = _write(tmp_path / "deps.yml", {
            "include": ["sub/common.yml"],
            "dependencies": {"app": {"source_dir": "/opt/app"}},
        })
        assert [r.name for r in load_manifest(manifest)] == ["zlib", "app"]

    def test_include_cycle_reported(self, tmp_path: Path) -> None:
        _write(tmp_path / "a.yml", {"include": ["b.yml"]})
        _write(tmp_path / "b.yml", {"include": ["a.yml"]})
        with pytest.raises(ValidationError) as exc_info:
            load_manifest(tmp_path / "a.yml")
        assert any("循环" in d for d in exc_info.value.details)

    def test_errors_collected(self, tmp_path: Path) -> None:
        manifest = _write(tmp_path / "deps.yml", {
            "dependencies": {
                "none": {},
                "both": {"source_dir": "/x", "url": "https://example.com/x.tgz"},
                "typo": {"source_dir": "/x", "git_tagz": "v1"},
                "badopt": {"source_dir": "/x", "options": {"shared": True}},
            },
        })
        with pytest.raises(ValidationError) as exc_info:
            load_manifest(manifest)
        joined = "\n".join(exc_info.value.details)
        for name in ("none", "both", "typo", "badopt"):
            assert f": {name}:" in joined

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ValidationError) as exc_info:
            load_manifest(tmp_path / "nope.yml")
        assert "不存在" in exc_info.value.details[0]
