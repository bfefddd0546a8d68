"""
Tests for the git gateway.
"""
import pytest
from unittest.mock import patch

from cartserver.core import git_gateway
from cartserver.core.errors import (
    InvalidPath,
    InvalidReference,
    PathNotFound,
    RepositoryCommandFailed,
    UnknownCommit,
)
from cartserver.core.git_gateway import (
    GitGateway,
    validate_commit_id,
    validate_path,
    validate_reference,
)

from conftest import HOOK_PATH, MANIFEST_YAML, requires_git


# =============================================================================
# Validation Tests
# =============================================================================

class TestReferenceValidation:
    """Tests for reference syntax checks."""

    @pytest.mark.parametrize("reference", [
        "master",
        "feature/login",
        "v1.0",
        "release_2-x",
        "a" * 50,
    ])
    def test_accepts_valid_references(self, reference):
        """Test that well-formed names pass unchanged."""
        assert validate_reference(reference) == reference

    @pytest.mark.parametrize("reference", [
        "",
        "a" * 51,
        "master; rm -rf /",
        "foo bar",
        "HEAD~1",
        "master^{tree}",
        "$(whoami)",
        "--upload-pack=evil",
        "-n",
    ])
    def test_rejects_invalid_references(self, reference):
        """Test that anything outside the allowlist is rejected."""
        with pytest.raises(InvalidReference):
            validate_reference(reference)

    def test_rejects_non_string(self):
        """Test that non-string values are rejected."""
        with pytest.raises(InvalidReference):
            validate_reference(None)

    def test_commit_id_must_be_full_hex(self):
        """Test commit id validation."""
        assert validate_commit_id("a" * 40) == "a" * 40
        assert validate_commit_id("b" * 64) == "b" * 64
        for bad in ("abc123", "A" * 40, "g" * 40, "a" * 41):
            with pytest.raises(InvalidReference):
                validate_commit_id(bad)


class TestPathValidation:
    """Tests for in-repository path checks."""

    @pytest.mark.parametrize("path", [
        "../secrets",
        "a/../../b",
        "metadata/../..",
        "/etc/passwd",
        "\\windows\\system32",
        "",
        ".",
        "bad\x00path",
    ])
    def test_rejects_unsafe_paths(self, path):
        """Test that traversal, absolute and empty paths are rejected."""
        with pytest.raises(InvalidPath):
            validate_path(path)

    def test_normalizes_paths(self):
        """Test that redundant separators are collapsed."""
        assert validate_path("metadata//manifest.yml") == "metadata/manifest.yml"
        assert validate_path("./README.md") == "README.md"


class TestNoProcessOnInvalidInput:
    """Validation failures never reach git."""

    def test_invalid_reference_runs_nothing(self, tmp_path):
        """Test that resolve() rejects before spawning a process."""
        gateway = GitGateway(tmp_path)
        with patch("cartserver.core.git_gateway.subprocess.run") as run, \
                patch("cartserver.core.git_gateway.subprocess.Popen") as popen:
            with pytest.raises(InvalidReference):
                gateway.resolve("master && touch pwned")
            with pytest.raises(InvalidReference):
                gateway.recent_commits("--all")
            with pytest.raises(InvalidReference):
                gateway.archive("not-a-commit", "zip")
            run.assert_not_called()
            popen.assert_not_called()

    def test_invalid_path_runs_nothing(self, tmp_path):
        """Test that read_file() rejects traversal before spawning a process."""
        gateway = GitGateway(tmp_path)
        with patch("cartserver.core.git_gateway.subprocess.run") as run:
            with pytest.raises(InvalidPath):
                gateway.read_file("../secrets", "a" * 40)
            with pytest.raises(InvalidPath):
                gateway.path_exists("/etc/passwd", "a" * 40)
            run.assert_not_called()

    def test_unsupported_archive_format(self, tmp_path):
        """Test that unknown archive formats are refused."""
        gateway = GitGateway(tmp_path)
        with pytest.raises(ValueError):
            gateway.archive("a" * 40, "rar")

    def test_root_must_be_directory(self, tmp_path):
        """Test construction against a missing directory."""
        with pytest.raises(ValueError):
            GitGateway(tmp_path / "missing")


# =============================================================================
# Repository Tests
# =============================================================================

@requires_git
class TestResolve:
    """Tests for reference resolution against a real repository."""

    def test_branch_and_hash_resolve_to_same_commit(self, cart_repo):
        """Test that a branch and its full id resolve identically."""
        gateway = GitGateway(cart_repo.path)
        by_branch = gateway.resolve("master")
        assert by_branch == cart_repo.head
        assert gateway.resolve(by_branch) == by_branch

    def test_tag_resolves_to_commit(self, cart_repo):
        """Test that tags resolve to the tagged commit."""
        gateway = GitGateway(cart_repo.path)
        assert gateway.resolve("v1.0") == cart_repo.head

    def test_unknown_branch(self, cart_repo):
        """Test that a well-formed but missing name is UnknownCommit."""
        gateway = GitGateway(cart_repo.path)
        with pytest.raises(UnknownCommit):
            gateway.resolve("does-not-exist")

    def test_empty_repository(self, repo_builder):
        """Test that master is unknown in a repository without commits."""
        builder = repo_builder("empty")
        gateway = GitGateway(builder.path)
        with pytest.raises(UnknownCommit):
            gateway.resolve("master")


@requires_git
class TestReadFile:
    """Tests for reading files at a commit."""

    def test_read_manifest(self, cart_repo):
        """Test reading a file returns its committed bytes."""
        gateway = GitGateway(cart_repo.path)
        contents = gateway.read_file("metadata/manifest.yml", cart_repo.head)
        assert contents == MANIFEST_YAML.encode("utf-8")

    def test_missing_file(self, cart_repo):
        """Test that a missing path raises PathNotFound."""
        gateway = GitGateway(cart_repo.path)
        with pytest.raises(PathNotFound):
            gateway.read_file("nope.txt", cart_repo.head)

    def test_path_exists_per_commit(self, cart_repo):
        """Test that existence is evaluated at the given commit."""
        gateway = GitGateway(cart_repo.path)
        assert gateway.path_exists(HOOK_PATH, cart_repo.head) is True
        assert gateway.path_exists(HOOK_PATH, cart_repo.first_commit) is False
        assert gateway.path_exists("metadata", cart_repo.head) is True


@requires_git
class TestArchive:
    """Tests for streamed archives."""

    def test_zip_archive(self, cart_repo):
        """Test that zip archives are streamed as zip data."""
        gateway = GitGateway(cart_repo.path)
        data = b"".join(gateway.archive(cart_repo.head, "zip"))
        assert data.startswith(b"PK")

    def test_tar_gz_archive(self, cart_repo):
        """Test that tar.gz archives are gzip data."""
        gateway = GitGateway(cart_repo.path)
        data = b"".join(gateway.archive(cart_repo.head, "tar.gz"))
        assert data[:2] == b"\x1f\x8b"

    def test_missing_commit_fails_on_consumption(self, cart_repo):
        """Test that a git failure surfaces once the stream is read."""
        gateway = GitGateway(cart_repo.path)
        with pytest.raises(RepositoryCommandFailed):
            b"".join(gateway.archive("0" * 40, "zip"))


@requires_git
class TestListings:
    """Tests for commit and branch listings."""

    def test_recent_commits_newest_first(self, cart_repo):
        """Test commit history content and order."""
        gateway = GitGateway(cart_repo.path)
        commits = gateway.recent_commits("master")

        assert [c.subject for c in commits] == ["add build hook", "initial manifest"]
        assert commits[0].id == cart_repo.head
        assert commits[0].short_id == cart_repo.head[:len(commits[0].short_id)]
        assert commits[0].author == "Test Author"
        assert commits[0].relative_date

    def test_recent_commits_limit(self, cart_repo):
        """Test that the limit is honored."""
        gateway = GitGateway(cart_repo.path)
        assert len(gateway.recent_commits("master", limit=1)) == 1

    def test_recent_commits_memoized(self, cart_repo):
        """Test that history is computed once per resolved commit."""
        gateway = GitGateway(cart_repo.path)
        with patch.object(gateway, "_run", wraps=gateway._run) as run:
            first = gateway.recent_commits("master")
            second = gateway.recent_commits("master")

        log_calls = [c for c in run.call_args_list if c.args[0][0] == "log"]
        assert len(log_calls) == 1
        assert first == second

    def test_recent_branches(self, cart_repo):
        """Test branch listing."""
        cart_repo.branch("feature")
        gateway = GitGateway(cart_repo.path)
        branches = gateway.recent_branches()

        names = {b.name for b in branches}
        assert names == {"master", "feature"}
        assert all(b.commit_id == cart_repo.head for b in branches)

    def test_commit_memo_is_bounded(self, cart_repo, monkeypatch):
        """Test that the history memo keeps only the most recently used entries."""
        monkeypatch.setattr(git_gateway, "MAX_COMMIT_MEMO", 2)
        gateway = GitGateway(cart_repo.path)

        gateway.recent_commits("master", limit=1)
        gateway.recent_commits("master", limit=2)
        gateway.recent_commits("master", limit=1)
        gateway.recent_commits(cart_repo.first_commit, limit=1)

        assert list(gateway._commit_memo) == [
            (cart_repo.head, 1),
            (cart_repo.first_commit, 1),
        ]
