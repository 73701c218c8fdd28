"""内容拉取器 - 按 Locator 类型分派

职责:
- GitFetcher:       浅克隆指定 ref，解析远端 ref 对应的提交
- ArchiveFetcher:   下载 → 校验摘要 → 解压（剥离单一顶层目录）
- LocalPathFetcher: 不传输，仅检查路径存在
- ContentFetcher:   按变体分派

约定: destination 由调用方给出且必须尚不存在；拉取失败时不会留下
destination（部分内容由各拉取器自行清理）。
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tarfile
import urllib.error
import uuid
import zipfile
import zlib
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from fetchkit.core.cancel import CancelToken

from fetchkit.core.cancel import check_cancel
from fetchkit.core.dep import integrity
from fetchkit.core.dep.locator import COMMIT_PATTERN, Archive, LocalPath, Locator, VcsRef
from fetchkit.core.dep.models import FetchOutcome
from fetchkit.core.exceptions import FetchError, ValidationError
from fetchkit.utils.net import download, is_not_found, validate_url_scheme
from fetchkit.utils.shell import CommandExecutor, CommandResult, LocalExecutor

logger = logging.getLogger(__name__)

# git stderr 中表示 ref 不存在的特征
_REF_NOT_FOUND_MARKERS = (
    "couldn't find remote ref",
    "not our ref",
    "did not match any",
    "unknown revision",
    "invalid refspec",
    "no such ref",
)

_GIT_ENV = {"GIT_TERMINAL_PROMPT": "0", "GIT_ASKPASS": "echo"}


def _git_error(result: CommandResult, what: str) -> FetchError:
    stderr = result.stderr.strip()
    lowered = stderr.lower()
    kind = "network"
    if any(marker in lowered for marker in _REF_NOT_FOUND_MARKERS):
        kind = "ref_not_found"
    return FetchError(kind, f"{what} 失败 (rc={result.returncode}): {stderr[:300]}")


def _match_ref(refs: dict[str, str], ref: str) -> str:
    """按 git fetch 的查找顺序精确匹配 ls-remote 结果

    ls-remote 的模式会匹配所有以 /<ref> 结尾的 ref（如 refs/heads/feature/main），
    这里只认 <ref>、refs/<ref>、refs/tags/<ref>、refs/heads/<ref>；
    附注标签取解引用后的提交 (^{})。
    """
    for candidate in (ref, f"refs/{ref}", f"refs/tags/{ref}", f"refs/heads/{ref}"):
        peeled = refs.get(f"{candidate}^{{}}")
        if peeled:
            return peeled
        if candidate in refs:
            return refs[candidate]
    return ""


def _discard(path: Path) -> None:
    if path.is_dir():
        shutil.rmtree(path, ignore_errors=True)
    else:
        path.unlink(missing_ok=True)


class GitFetcher:
    """Git 仓库来源 - 默认浅克隆"""

    def __init__(
        self,
        executor: CommandExecutor | None = None,
        *,
        shallow: bool = True,
        timeout: float | None = None,
    ) -> None:
        self.executor = executor or LocalExecutor()
        self.shallow = shallow
        self.timeout = timeout

    def _git(
        self, argv: list[str], *, cwd: Path | None = None,
        cancel: CancelToken | None = None,
    ) -> CommandResult:
        env = {**os.environ, **_GIT_ENV}
        try:
            return self.executor.execute(
                ["git", *argv], cwd=str(cwd or "."), env=env,
                timeout=self.timeout, cancel=cancel,
            )
        except subprocess.TimeoutExpired as e:
            raise FetchError("network", f"git {argv[0]} 超时 ({self.timeout}s)") from e
        except OSError as e:
            raise FetchError("network", f"无法执行 git: {e}") from e

    def resolve_remote(
        self, repository_url: str, ref: str, *, cancel: CancelToken | None = None,
    ) -> str:
        """解析远端 ref 当前指向的提交；40 位提交号直接返回"""
        if COMMIT_PATTERN.fullmatch(ref.lower()):
            return ref.lower()
        r = self._git(["ls-remote", repository_url, ref], cancel=cancel)
        if not r.success:
            raise _git_error(r, f"git ls-remote {repository_url}")
        refs: dict[str, str] = {}
        for line in r.stdout.splitlines():
            sha, _, name = line.partition("\t")
            if name:
                refs[name.strip()] = sha.strip()
        commit = _match_ref(refs, ref)
        if not commit:
            raise FetchError("ref_not_found", f"远端不存在 ref: {repository_url}@{ref}")
        return commit

    def fetch(
        self, locator: VcsRef, destination: Path, *, cancel: CancelToken | None = None,
    ) -> FetchOutcome:
        """检出 ref 到 destination，返回实际提交号"""
        destination.mkdir(parents=True)
        try:
            self._checkout(locator, destination, cancel)
            r = self._git(["rev-parse", "HEAD"], cwd=destination, cancel=cancel)
            if not r.success:
                raise _git_error(r, "git rev-parse")
        except BaseException:
            _discard(destination)
            raise
        commit = r.stdout.strip()
        logger.info("Git 就绪: %s -> %s (%s)", locator.describe(), destination, commit[:12])
        return FetchOutcome(local_path=str(destination), resolved_commit=commit)

    def _checkout(self, locator: VcsRef, workspace: Path, cancel: CancelToken | None) -> None:
        url, ref = locator.repository_url, locator.ref
        r = self._git(["init", "--quiet"], cwd=workspace, cancel=cancel)
        if not r.success:
            raise _git_error(r, "git init")
        check_cancel(cancel, f"git fetch {url}")

        depth = ["--depth", "1"] if self.shallow else []
        r = self._git(
            ["fetch", "--quiet", *depth, url, ref], cwd=workspace, cancel=cancel,
        )
        if r.success:
            target = "FETCH_HEAD"
        else:
            # 回退: 服务端不允许按提交号浅拉取时，完整拉取后再检出
            first = _git_error(r, f"git fetch {url} {ref}")
            if not COMMIT_PATTERN.fullmatch(ref):
                raise first
            logger.info("  浅拉取失败，回退到完整拉取: %s@%s", url, ref)
            r = self._git(
                ["fetch", "--quiet", "--tags", url, "+refs/heads/*:refs/remotes/origin/*"],
                cwd=workspace, cancel=cancel,
            )
            if not r.success:
                raise _git_error(r, f"git fetch {url}")
            target = ref
        check_cancel(cancel, f"git checkout {ref}")

        r = self._git(["checkout", "--quiet", target], cwd=workspace, cancel=cancel)
        if not r.success:
            raise _git_error(r, f"git checkout {ref}")


class ArchiveFetcher:
    """压缩包来源 - 下载、校验、解压"""

    def __init__(self, *, timeout: float = 300, allow_file_urls: bool = False) -> None:
        self.timeout = timeout
        self.allow_file_urls = allow_file_urls

    def fetch(
        self, locator: Archive, destination: Path, *, cancel: CancelToken | None = None,
    ) -> FetchOutcome:
        validate_url_scheme(
            locator.url, context=f"archive {destination.name}",
            allow_file=self.allow_file_urls,
        )
        tag = uuid.uuid4().hex[:8]
        raw = destination.with_name(f".{destination.name}.download-{tag}")
        try:
            logger.info("  下载: %s", locator.url)
            try:
                download(locator.url, raw, timeout=self.timeout, cancel=cancel)
            except urllib.error.URLError as e:
                kind = "not_found" if is_not_found(e) else "network"
                raise FetchError(kind, f"下载失败: {locator.url} - {e}") from e
            except (OSError, ValueError) as e:
                if isinstance(e, FileNotFoundError):
                    raise FetchError("not_found", f"下载失败: {locator.url} - {e}") from e
                raise FetchError("network", f"下载失败: {locator.url} - {e}") from e

            if locator.digest:
                integrity.verify(raw, locator.digest)
            else:
                logger.warning("  未声明摘要，内容未校验: %s", locator.url)
            check_cancel(cancel, f"解压 {locator.url}")
            self._extract(raw, destination, filename=_filename_from_url(locator.url))
        finally:
            raw.unlink(missing_ok=True)

        logger.info("压缩包就绪: %s -> %s", locator.describe(), destination)
        return FetchOutcome(local_path=str(destination), unverified=not locator.digest)

    @staticmethod
    def _extract(archive: Path, destination: Path, *, filename: str) -> None:
        """解压到 destination；单一顶层目录被剥离，非压缩包原样放置"""
        staging = destination.with_name(f".{destination.name}.extract-{uuid.uuid4().hex[:8]}")
        staging.mkdir(parents=True)
        try:
            if tarfile.is_tarfile(archive):
                with tarfile.open(archive) as tf:
                    tf.extractall(path=str(staging), filter="data")  # noqa: S202
            elif zipfile.is_zipfile(archive):
                with zipfile.ZipFile(archive) as zf:
                    zf.extractall(path=str(staging))  # noqa: S202
            else:
                shutil.copy2(archive, staging / filename)
            entries = list(staging.iterdir())
            root = entries[0] if len(entries) == 1 and entries[0].is_dir() else staging
            os.rename(root, destination)
        except (tarfile.TarError, zipfile.BadZipFile, EOFError, zlib.error) as e:
            raise FetchError("network", f"压缩包损坏，无法解压: {filename} - {e}") from e
        finally:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)


class LocalPathFetcher:
    """本地目录来源 - 不做传输"""

    def fetch(
        self, locator: LocalPath, destination: Path | None = None,
        *, cancel: CancelToken | None = None,
    ) -> FetchOutcome:
        path = Path(locator.path).expanduser()
        if not path.is_dir():
            raise FetchError("not_found", f"本地源码目录不存在: {path}")
        return FetchOutcome(local_path=str(path))


class ContentFetcher:
    """按 Locator 变体分派到具体拉取器"""

    def __init__(
        self,
        git: GitFetcher | None = None,
        archive: ArchiveFetcher | None = None,
        local: LocalPathFetcher | None = None,
    ) -> None:
        self.git = git or GitFetcher()
        self.archive = archive or ArchiveFetcher()
        self.local = local or LocalPathFetcher()

    def fetch(
        self, locator: Locator, destination: Path, *, cancel: CancelToken | None = None,
    ) -> FetchOutcome:
        check_cancel(cancel, locator.describe())
        if isinstance(locator, VcsRef):
            return self.git.fetch(locator, destination, cancel=cancel)
        if isinstance(locator, Archive):
            return self.archive.fetch(locator, destination, cancel=cancel)
        if isinstance(locator, LocalPath):
            return self.local.fetch(locator, destination, cancel=cancel)
        raise ValidationError(f"不支持的来源类型: {type(locator).__name__}")

    def resolve_remote(
        self, locator: VcsRef, *, cancel: CancelToken | None = None,
    ) -> str:
        return self.git.resolve_remote(locator.repository_url, locator.ref, cancel=cancel)


def _filename_from_url(url: str) -> str:
    name = url.split("?", 1)[0].rstrip("/").split("/")[-1]
    return name or "download"


