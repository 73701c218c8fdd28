"""测试共享 fixture - 依赖源码树 / 压缩包 / 本地 git 仓库 / 计数拉取器"""

from __future__ import annotations

import hashlib
import io
import os
import shutil
import subprocess
import tarfile
import threading
import time
import zipfile
from pathlib import Path
from typing import Any, Callable

import pytest
import yaml

from fetchkit.core.dep.fetcher import LocalPathFetcher
from fetchkit.core.dep.models import FetchOutcome
from fetchkit.core.exceptions import FetchError

LIB1_DESCRIPTION: dict[str, Any] = {
    "project": "lib1",
    "variables": {"LIB1_VERSION": "1.0"},
    "targets": [
        {"name": "core", "type": "library", "sources": ["src/core.c"]},
        {"name": "tests", "type": "test", "sources": ["test/test_core.c"], "depends": ["core"]},
    ],
}


def write_tree(root: Path, description: dict[str, Any] | None = None) -> Path:
    """写出一个带构建描述的依赖源码树"""
    desc = LIB1_DESCRIPTION if description is None else description
    root.mkdir(parents=True, exist_ok=True)
    (root / "fetchkit.yml").write_text(yaml.safe_dump(desc, allow_unicode=True), encoding="utf-8")
    targets = desc.get("targets")
    for target in targets if isinstance(targets, list) else []:
        if not isinstance(target, dict):
            continue
        for src in target.get("sources", []):
            if "${" in src:
                continue
            path = root / src
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text("int f(void) { return 0; }\n", encoding="utf-8")
    return root


@pytest.fixture()
def source_tree(tmp_path: Path) -> Callable[..., Path]:
    """工厂: source_tree(name, description=None) -> 源码目录"""
    def _make(name: str = "lib1", description: dict[str, Any] | None = None) -> Path:
        return write_tree(tmp_path / "sources" / name, description)
    return _make


@pytest.fixture()
def make_archive(tmp_path: Path) -> Callable[..., tuple[str, str]]:
    """工厂: make_archive(fmt="tar.gz", top="lib1-1.0") -> (file:// URL, sha256 摘要)"""
    def _make(
        fmt: str = "tar.gz",
        top: str = "lib1-1.0",
        description: dict[str, Any] | None = None,
        name: str = "lib1-1.0",
    ) -> tuple[str, str]:
        staging = tmp_path / "archive-staging" / name
        tree = write_tree(staging / top if top else staging, description)
        base = staging if top else tree
        out_dir = tmp_path / "archives"
        out_dir.mkdir(exist_ok=True)
        out = out_dir / f"{name}.{fmt}"
        if fmt == "zip":
            with zipfile.ZipFile(out, "w") as zf:
                for path in sorted(base.rglob("*")):
                    if path.is_file():
                        zf.write(path, path.relative_to(base).as_posix())
        else:
            mode = "w:gz" if fmt in ("tar.gz", "tgz") else "w"
            with tarfile.open(out, mode) as tf:
                for path in sorted(base.iterdir()):
                    tf.add(path, arcname=path.name)
        digest = hashlib.sha256(out.read_bytes()).hexdigest()
        return out.as_uri(), f"sha256:{digest}"
    return _make


@pytest.fixture()
def corrupt_archive(tmp_path: Path, make_archive) -> Callable[[str], str]:
    """工厂: corrupt_archive("tar.gz" | "zip") -> 损坏压缩包的 file:// URL（无摘要可用）

    tar.gz 截掉末尾 40 字节；zip 为 deflate 压缩并破坏成员数据（中央目录完好）。
    """
    def _make(fmt: str = "tar.gz") -> str:
        if fmt == "zip":
            out = tmp_path / "archives" / "broken.zip"
            out.parent.mkdir(exist_ok=True)
            member = "lib1-1.0/big.c"
            with zipfile.ZipFile(out, "w", compression=zipfile.ZIP_DEFLATED) as zf:
                zf.writestr(member, "int f(void) { return 0; }\n" * 500)
                zf.writestr("lib1-1.0/fetchkit.yml", "project: lib1\n")
            data = bytearray(out.read_bytes())
            start = 30 + len(member) + 6
            data[start:start + 20] = b"\xff" * 20
            out.write_bytes(bytes(data))
            return out.as_uri()
        url, _ = make_archive(fmt=fmt, name="broken")
        path = Path(url.removeprefix("file://"))
        path.write_bytes(path.read_bytes()[:-40])
        return url
    return _make


def _git(cwd: Path, *args: str) -> str:
    r = subprocess.run(
        ["git", *args], cwd=str(cwd), capture_output=True, text=True, check=True,
        env={
            "GIT_AUTHOR_NAME": "t", "GIT_AUTHOR_EMAIL": "t@example.com",
            "GIT_COMMITTER_NAME": "t", "GIT_COMMITTER_EMAIL": "t@example.com",
            "HOME": str(cwd), "PATH": os.environ.get("PATH", "/usr/bin:/bin"),
        },
    )
    return r.stdout.strip()


class GitRepo:
    """测试用本地 git 仓库"""

    def __init__(self, path: Path) -> None:
        self.path = path
        self.url = path.as_uri()

    def commit(self, message: str, files: dict[str, str] | None = None) -> str:
        for rel, content in (files or {}).items():
            f = self.path / rel
            f.parent.mkdir(parents=True, exist_ok=True)
            f.write_text(content, encoding="utf-8")
        _git(self.path, "add", "-A")
        _git(self.path, "commit", "-q", "--allow-empty", "-m", message)
        return _git(self.path, "rev-parse", "HEAD")

    def tag(self, name: str, message: str = "") -> None:
        if message:
            _git(self.path, "tag", "-a", name, "-m", message)
        else:
            _git(self.path, "tag", name)

    def branch(self, name: str, files: dict[str, str] | None = None) -> str:
        """在新分支上提交一次后切回 main，返回新分支的提交号"""
        _git(self.path, "checkout", "-q", "-b", name)
        sha = self.commit(f"on {name}", files)
        _git(self.path, "checkout", "-q", "main")
        return sha

    def head(self) -> str:
        return _git(self.path, "rev-parse", "HEAD")


@pytest.fixture()
def git_repo(tmp_path: Path) -> GitRepo:
    """带构建描述的本地 git 仓库（分支 main，首个提交打 v1.0 标签）"""
    if shutil.which("git") is None:
        pytest.skip("需要 git")
    path = write_tree(tmp_path / "upstream" / "lib1")
    _git(path, "init", "-q", "-b", "main")
    repo = GitRepo(path)
    repo.commit("initial")
    repo.tag("v1.0")
    return repo


class CountingFetcher:
    """记录物理拉取次数的假拉取器，可注入延迟、失败与远端提交"""

    def __init__(self, description: dict[str, Any] | None = None, delay: float = 0.0) -> None:
        self.description = description
        self.delay = delay
        self.calls = 0
        self.resolve_calls = 0
        self.remote_commit = "a" * 40
        self.fail_with: BaseException | None = None
        self.local = LocalPathFetcher()
        self._lock = threading.Lock()

    def fetch(self, locator: Any, destination: Path, *, cancel: Any = None) -> FetchOutcome:
        with self._lock:
            self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        if cancel is not None:
            cancel.raise_if_cancelled("fake fetch")
        if self.fail_with is not None:
            raise self.fail_with
        write_tree(destination, self.description)
        digest = getattr(locator, "digest", "")
        return FetchOutcome(
            local_path=str(destination),
            resolved_commit=self.remote_commit if locator.kind == "vcs" else "",
            unverified=locator.kind == "archive" and not digest,
        )

    def resolve_remote(self, locator: Any, *, cancel: Any = None) -> str:
        with self._lock:
            self.resolve_calls += 1
        if self.fail_with is not None and isinstance(self.fail_with, FetchError):
            raise self.fail_with
        return self.remote_commit


@pytest.fixture()
def counting_fetcher() -> CountingFetcher:
    return CountingFetcher()


@pytest.fixture()
def tar_bytes() -> Callable[[dict[str, bytes]], bytes]:
    """工厂: 内存中生成 tar 包"""
    def _make(files: dict[str, bytes]) -> bytes:
        buf = io.BytesIO()
        with tarfile.open(fileobj=buf, mode="w") as tf:
            for name, data in files.items():
                info = tarfile.TarInfo(name)
                info.size = len(data)
                tf.addfile(info, io.BytesIO(data))
        return buf.getvalue()
    return _make


@pytest.fixture()
def make_fetcher() -> Callable[..., CountingFetcher]:
    """工厂: make_fetcher(description=None, delay=0.0) -> CountingFetcher"""
    return CountingFetcher
