"""内容拉取器测试 - 本地 file:// 压缩包与本地 git 仓库"""

from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

from fetchkit.core.cancel import CancelToken
from fetchkit.core.dep.fetcher import ArchiveFetcher, ContentFetcher, GitFetcher, LocalPathFetcher
from fetchkit.core.dep.locator import Archive, LocalPath, VcsRef
from fetchkit.core.exceptions import (
    DigestMismatchError,
    FetchCancelledError,
    FetchError,
    ValidationError,
)
from fetchkit.utils.shell import CommandResult


class TestArchiveFetcher:
    @pytest.mark.parametrize("fmt", ["tar.gz", "tar", "zip"])
    def test_extract_strips_single_top_dir(self, tmp_path: Path, make_archive, fmt: str) -> None:
        url, digest = make_archive(fmt=fmt)
        dest = tmp_path / "deps" / "lib1-src"
        dest.parent.mkdir()
        outcome = ArchiveFetcher(allow_file_urls=True).fetch(Archive(url, digest), dest)
        assert outcome.local_path == str(dest)
        assert not outcome.unverified
        assert (dest / "fetchkit.yml").is_file()
        assert (dest / "src" / "core.c").is_file()

    def test_flat_archive_kept_as_is(self, tmp_path: Path, make_archive) -> None:
        url, digest = make_archive(top="")
        dest = tmp_path / "lib1-src"
        ArchiveFetcher(allow_file_urls=True).fetch(Archive(url, digest), dest)
        assert (dest / "fetchkit.yml").is_file()

    def test_no_digest_is_unverified(self, tmp_path: Path, make_archive) -> None:
        url, _ = make_archive()
        outcome = ArchiveFetcher(allow_file_urls=True).fetch(Archive(url), tmp_path / "d")
        assert outcome.unverified

    def test_digest_mismatch_never_extracts(self, tmp_path: Path, make_archive) -> None:
        url, _ = make_archive()
        dest = tmp_path / "d"
        with pytest.raises(DigestMismatchError):
            ArchiveFetcher(allow_file_urls=True).fetch(Archive(url, "sha256:" + "0" * 64), dest)
        assert not dest.exists()
        # 原始下载文件也被删除
        assert list(tmp_path.glob(".d.download-*")) == []

    def test_missing_file_is_not_found(self, tmp_path: Path) -> None:
        url = (tmp_path / "missing.tar.gz").as_uri()
        with pytest.raises(FetchError) as exc_info:
            ArchiveFetcher(allow_file_urls=True).fetch(Archive(url), tmp_path / "d")
        assert exc_info.value.kind == "not_found"

    def test_file_scheme_refused_by_default(self, tmp_path: Path, make_archive) -> None:
        url, digest = make_archive()
        with pytest.raises(ValidationError, match="不允许的 URL 协议"):
            ArchiveFetcher().fetch(Archive(url, digest), tmp_path / "d")

    @pytest.mark.parametrize("fmt", ["tar.gz", "zip"])
    def test_corrupt_archive_is_network_error(
        self, tmp_path: Path, corrupt_archive, fmt: str,
    ) -> None:
        dest = tmp_path / "d"
        with pytest.raises(FetchError) as exc_info:
            ArchiveFetcher(allow_file_urls=True).fetch(Archive(corrupt_archive(fmt)), dest)
        assert exc_info.value.kind == "network"
        assert "压缩包损坏" in str(exc_info.value)
        assert not dest.exists()
        assert list(tmp_path.glob(".d.*")) == []

    def test_cancelled_before_download(self, tmp_path: Path, make_archive) -> None:
        url, digest = make_archive()
        token = CancelToken()
        token.cancel("test")
        with pytest.raises(FetchCancelledError):
            ArchiveFetcher(allow_file_urls=True).fetch(
                Archive(url, digest), tmp_path / "d", cancel=token,
            )
        assert not (tmp_path / "d").exists()


class TestLocalPathFetcher:
    def test_passthrough(self, source_tree) -> None:
        src = source_tree()
        assert LocalPathFetcher().fetch(LocalPath(str(src))).local_path == str(src)

    def test_missing(self, tmp_path: Path) -> None:
        with pytest.raises(FetchError) as exc_info:
            LocalPathFetcher().fetch(LocalPath(str(tmp_path / "nope")))
        assert exc_info.value.kind == "not_found"


class TestGitFetcher:
    def test_fetch_tag(self, tmp_path: Path, git_repo) -> None:
        head = subprocess.run(
            ["git", "rev-parse", "HEAD"], cwd=git_repo.path,
            capture_output=True, text=True, check=True,
        ).stdout.strip()
        dest = tmp_path / "lib1-src"
        outcome = GitFetcher().fetch(VcsRef(git_repo.url, "v1.0"), dest)
        assert outcome.resolved_commit == head
        assert (dest / "fetchkit.yml").is_file()

    def test_fetch_pinned_commit(self, tmp_path: Path, git_repo) -> None:
        first = git_repo.commit("second", {"NEWS": "x\n"})
        git_repo.commit("third", {"NEWS": "y\n"})
        dest = tmp_path / "lib1-src"
        outcome = GitFetcher(shallow=False).fetch(VcsRef(git_repo.url, first), dest)
        assert outcome.resolved_commit == first
        assert (dest / "NEWS").read_text() == "x\n"

    def test_resolve_remote_branch_follows_upstream(self, git_repo) -> None:
        fetcher = GitFetcher()
        before = fetcher.resolve_remote(git_repo.url, "main")
        after_commit = git_repo.commit("move", {"CHANGELOG": "1\n"})
        assert fetcher.resolve_remote(git_repo.url, "main") == after_commit
        assert before != after_commit

    def test_resolve_ignores_suffix_matching_refs(self, tmp_path: Path, git_repo) -> None:
        main = git_repo.head()
        sibling = git_repo.branch("feature/main", {"SIBLING": "1\n"})
        assert sibling != main
        fetcher = GitFetcher()
        assert fetcher.resolve_remote(git_repo.url, "main") == main
        outcome = fetcher.fetch(VcsRef(git_repo.url, "main"), tmp_path / "d")
        assert outcome.resolved_commit == main

    def test_resolve_annotated_tag_peeled(self, git_repo) -> None:
        head = git_repo.head()
        git_repo.tag("v2.0", message="release")
        assert GitFetcher().resolve_remote(git_repo.url, "v2.0") == head

    @pytest.mark.parametrize("ref,expected", [
        ("main", "1" * 40),
        ("v1", "3" * 40),
        ("refs/heads/v1", "4" * 40),
        ("HEAD", "1" * 40),
    ])
    def test_resolve_lookup_order(self, ref: str, expected: str) -> None:
        listing = "\n".join([
            f"{'1' * 40}\tHEAD",
            f"{'2' * 40}\trefs/heads/feature/main",
            f"{'1' * 40}\trefs/heads/main",
            f"{'4' * 40}\trefs/heads/v1",
            f"{'5' * 40}\trefs/tags/v1",
            f"{'3' * 40}\trefs/tags/v1^{{}}",
        ])

        class Listing:
            def execute(self, cmd, **kwargs):  # noqa: ANN001, ANN003
                return CommandResult(0, listing + "\n", "")

        assert GitFetcher(Listing()).resolve_remote("https://x/r.git", ref) == expected

    def test_resolve_only_suffix_match_is_not_found(self) -> None:
        class Listing:
            def execute(self, cmd, **kwargs):  # noqa: ANN001, ANN003
                return CommandResult(0, f"{'2' * 40}\trefs/heads/feature/main\n", "")

        with pytest.raises(FetchError) as exc_info:
            GitFetcher(Listing()).resolve_remote("https://x/r.git", "main")
        assert exc_info.value.kind == "ref_not_found"

    def test_resolve_uppercase_commit_without_git(self) -> None:
        class NoGit:
            def execute(self, cmd, **kwargs):  # noqa: ANN001, ANN003
                raise AssertionError(f"不应调用 git: {cmd}")

        commit = "ABCDEF0123" * 4
        assert GitFetcher(NoGit()).resolve_remote("https://x/r.git", commit) == commit.lower()

    def test_unknown_ref(self, tmp_path: Path, git_repo) -> None:
        with pytest.raises(FetchError) as exc_info:
            GitFetcher().fetch(VcsRef(git_repo.url, "no-such-branch"), tmp_path / "d")
        assert exc_info.value.kind == "ref_not_found"
        assert not (tmp_path / "d").exists()

    def test_resolve_unknown_ref(self, git_repo) -> None:
        with pytest.raises(FetchError) as exc_info:
            GitFetcher().resolve_remote(git_repo.url, "no-such-branch")
        assert exc_info.value.kind == "ref_not_found"

    def test_network_error_classified(self, tmp_path: Path) -> None:
        class Unreachable:
            def execute(self, cmd, **kwargs):  # noqa: ANN001, ANN003
                if cmd[1] == "init":
                    return CommandResult(0, "", "")
                return CommandResult(128, "", "fatal: unable to access: Could not resolve host")

        with pytest.raises(FetchError) as exc_info:
            GitFetcher(Unreachable()).fetch(VcsRef("https://x.invalid/r.git", "main"), tmp_path / "d")
        assert exc_info.value.kind == "network"
        assert exc_info.value.retryable


class TestContentFetcher:
    def test_dispatch(self, tmp_path: Path, source_tree) -> None:
        src = source_tree()
        outcome = ContentFetcher().fetch(LocalPath(str(src)), tmp_path / "unused")
        assert outcome.local_path == str(src)
