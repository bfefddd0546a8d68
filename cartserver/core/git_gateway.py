"""
Git gateway - the only component that runs git against a repository.

Security:
- No shell=True anywhere, references travel as discrete argv entries
- References are checked against an allowlist before any process runs
- In-repository paths must be relative and stay inside the tree
- Every command runs with cwd fixed to the root given at construction
- Raw git stderr is logged (truncated), never returned to callers
"""
import logging
import os
import posixpath
import re
import subprocess
import tempfile
import threading
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Union

from cartserver.core.errors import (
    InvalidPath,
    InvalidReference,
    PathNotFound,
    RepositoryCommandFailed,
    UnknownCommit,
)

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

REFERENCE_PATTERN = re.compile(r"\A[a-zA-Z0-9_\-./]{1,50}\Z")
COMMIT_ID_PATTERN = re.compile(r"\A(?:[0-9a-f]{40}|[0-9a-f]{64})\Z")

ARCHIVE_FORMATS = ("zip", "tar.gz", "tar")

# Timeouts (seconds)
COMMAND_TIMEOUT = 60

ARCHIVE_CHUNK_SIZE = 64 * 1024
MAX_LISTING = 100
MAX_COMMIT_MEMO = 256
MAX_STDERR_LOG = 2000


@dataclass
class CommandResult:
    """Result of a git invocation."""
    command: list[str]
    exit_code: int
    stdout: bytes
    stderr: str


@dataclass(frozen=True)
class CommitSummary:
    """One line of commit history."""
    id: str
    short_id: str
    author: str
    relative_date: str
    subject: str


@dataclass(frozen=True)
class BranchSummary:
    """A local branch and the commit it points at."""
    name: str
    commit_id: str
    relative_date: str


# =============================================================================
# Validation Functions
# =============================================================================

def validate_reference(reference: str) -> str:
    """
    Check a caller-supplied branch, tag or commit name.

    Raises:
        InvalidReference: If the name is not 1-50 characters of
            letters, digits, "_", "-", "." or "/", or starts with "-"
    """
    if not isinstance(reference, str) or not REFERENCE_PATTERN.match(reference):
        raise InvalidReference(f"Invalid reference: {str(reference)[:60]!r}")
    # git would read a leading dash as an option
    if reference.startswith("-"):
        raise InvalidReference(f"Invalid reference: {reference!r}")
    return reference


def validate_commit_id(commit_id: str) -> str:
    """Check that a value is a full lowercase hex object id."""
    if not isinstance(commit_id, str) or not COMMIT_ID_PATTERN.match(commit_id):
        raise InvalidReference(f"Not a resolved commit id: {str(commit_id)[:80]!r}")
    return commit_id


def validate_path(path: str) -> str:
    """
    Check an in-repository path and return its normalized form.

    Raises:
        InvalidPath: If the path is empty, absolute or contains traversal
    """
    if not isinstance(path, str) or not path or "\x00" in path:
        raise InvalidPath("Path must be a non-empty string")
    if path.startswith("/") or path.startswith("\\"):
        raise InvalidPath(f"Absolute paths are not allowed: {path[:100]!r}")
    if ".." in re.split(r"[/\\]", path):
        raise InvalidPath(f"Path traversal is not allowed: {path[:100]!r}")

    normalized = posixpath.normpath(path)
    if normalized in (".", ""):
        raise InvalidPath("Path must name a file inside the repository")
    return normalized


def _git_env() -> dict:
    """Environment for git: caller's PATH, no inherited GIT_* overrides."""
    env = {k: v for k, v in os.environ.items() if not k.startswith("GIT_")}
    env["GIT_TERMINAL_PROMPT"] = "0"
    # Stable, English relative dates in listings
    env["LC_ALL"] = "C"
    env["LANG"] = "C"
    return env


# =============================================================================
# Gateway
# =============================================================================

class GitGateway:
    """Validated git operations against one repository location."""

    def __init__(
        self,
        root: Union[str, Path],
        command_timeout: int = COMMAND_TIMEOUT,
        git_binary: str = "git",
    ):
        root_path = Path(root).expanduser().resolve()
        if not root_path.is_dir():
            raise ValueError(f"Repository root is not a directory: {root_path}")
        self._root = root_path
        self._command_timeout = command_timeout
        self._git = git_binary
        self._memo_lock = threading.Lock()
        self._commit_memo: "OrderedDict[tuple[str, int], tuple[CommitSummary, ...]]" = OrderedDict()

    @property
    def root(self) -> Path:
        return self._root

    def _run(self, args: list[str]) -> CommandResult:
        """Run git with an argument vector (never a shell string)."""
        cmd = [self._git, *args]
        try:
            result = subprocess.run(
                cmd,
                cwd=str(self._root),
                env=_git_env(),
                capture_output=True,
                timeout=self._command_timeout,
            )
        except subprocess.TimeoutExpired:
            logger.warning(f"git_timeout cmd={args[0]} timeout={self._command_timeout}")
            raise RepositoryCommandFailed(f"git {args[0]} timed out")
        except OSError as e:
            logger.error(f"git_spawn_failed cmd={args[0]} error={type(e).__name__}")
            raise RepositoryCommandFailed(f"git {args[0]} could not be started")

        stderr = (result.stderr or b"").decode("utf-8", errors="replace")
        if result.returncode != 0:
            logger.debug(
                f"git_nonzero cmd={args[0]} exit_code={result.returncode} "
                f"stderr={stderr[:MAX_STDERR_LOG]!r}"
            )
        return CommandResult(
            command=cmd,
            exit_code=result.returncode,
            stdout=result.stdout or b"",
            stderr=stderr,
        )

    def _command_failed(self, result: CommandResult) -> RepositoryCommandFailed:
        logger.error(
            f"git_command_failed cmd={result.command[1]} exit_code={result.exit_code} "
            f"stderr={result.stderr[:MAX_STDERR_LOG]!r}"
        )
        return RepositoryCommandFailed(f"git {result.command[1]} failed")

    def resolve(self, reference: str) -> str:
        """Resolve a branch, tag or commit name to its full commit id."""
        validate_reference(reference)

        result = self._run(["rev-parse", "--verify", "--quiet", f"{reference}^{{commit}}"])
        if result.exit_code != 0:
            if "not a git repository" in result.stderr:
                raise self._command_failed(result)
            raise UnknownCommit(f"Unknown commit: {reference}")

        commit_id = result.stdout.decode("utf-8", errors="replace").strip()
        if not COMMIT_ID_PATTERN.match(commit_id):
            logger.error(f"git_unexpected_output cmd=rev-parse reference={reference!r}")
            raise RepositoryCommandFailed("git rev-parse returned an unexpected value")
        return commit_id

    def read_file(self, path: str, commit_id: str) -> bytes:
        """Read a file's contents as stored at a commit."""
        normalized = validate_path(path)
        validate_commit_id(commit_id)

        result = self._run(["cat-file", "blob", f"{commit_id}:{normalized}"])
        if result.exit_code != 0:
            raise PathNotFound(f"{normalized} not found at {commit_id[:8]}")
        return result.stdout

    def path_exists(self, path: str, commit_id: str) -> bool:
        """Whether a file or directory exists at a commit."""
        normalized = validate_path(path)
        validate_commit_id(commit_id)

        result = self._run(["cat-file", "-e", f"{commit_id}:{normalized}"])
        return result.exit_code == 0

    def archive(self, commit_id: str, fmt: str = "zip") -> Iterator[bytes]:
        """
        Stream an archive of the full tree at a commit.

        The git process is started before this returns; chunks are read
        from its stdout as the caller iterates. A non-zero exit raises
        RepositoryCommandFailed once the stream is exhausted.
        """
        validate_commit_id(commit_id)
        if fmt not in ARCHIVE_FORMATS:
            raise ValueError(f"Unsupported archive format: {fmt}")

        cmd = [self._git, "archive", f"--format={fmt}", commit_id]
        stderr_file = tempfile.TemporaryFile()
        try:
            proc = subprocess.Popen(
                cmd,
                cwd=str(self._root),
                env=_git_env(),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=stderr_file,
            )
        except OSError as e:
            stderr_file.close()
            logger.error(f"git_spawn_failed cmd=archive error={type(e).__name__}")
            raise RepositoryCommandFailed("git archive could not be started")

        logger.info(f"archive_started commit={commit_id[:8]} format={fmt}")
        return self._stream(proc, stderr_file)

    def _stream(self, proc: subprocess.Popen, stderr_file) -> Iterator[bytes]:
        try:
            while True:
                chunk = proc.stdout.read(ARCHIVE_CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk

            try:
                exit_code = proc.wait(timeout=self._command_timeout)
            except subprocess.TimeoutExpired:
                logger.warning(f"git_timeout cmd=archive timeout={self._command_timeout}")
                raise RepositoryCommandFailed("git archive timed out")
            if exit_code != 0:
                stderr_file.seek(0)
                stderr = stderr_file.read().decode("utf-8", errors="replace")
                raise self._command_failed(
                    CommandResult(command=list(proc.args), exit_code=exit_code, stdout=b"", stderr=stderr)
                )
        except BaseException:
            # Consumer went away or git misbehaved: do not leave it running
            if proc.poll() is None:
                proc.kill()
                proc.wait()
            raise
        finally:
            proc.stdout.close()
            stderr_file.close()

    def recent_commits(self, reference: str = "master", limit: int = 10) -> list[CommitSummary]:
        """
        History reachable from a reference, newest first.

        Memoized per (resolved commit, limit): history behind a commit
        never changes. The MAX_COMMIT_MEMO most recently used entries are kept.
        """
        limit = max(1, min(int(limit), MAX_LISTING))
        commit_id = self.resolve(reference)
        key = (commit_id, limit)

        with self._memo_lock:
            cached = self._commit_memo.get(key)
            if cached is not None:
                self._commit_memo.move_to_end(key)
        if cached is not None:
            return list(cached)

        result = self._run([
            "log",
            "--pretty=format:%H%x09%h%x09%an%x09%ar%x09%s",
            "-n", str(limit),
            commit_id,
            "--",
        ])
        if result.exit_code != 0:
            raise self._command_failed(result)

        commits = []
        for line in result.stdout.decode("utf-8", errors="replace").splitlines():
            parts = line.split("\t", 4)
            if len(parts) != 5:
                continue
            commits.append(CommitSummary(*parts))

        with self._memo_lock:
            self._commit_memo[key] = tuple(commits)
            while len(self._commit_memo) > MAX_COMMIT_MEMO:
                self._commit_memo.popitem(last=False)
        return commits

    def recent_branches(self, limit: int = 10) -> list[BranchSummary]:
        """Local branches, most recently committed to first."""
        limit = max(1, min(int(limit), MAX_LISTING))
        result = self._run([
            "for-each-ref",
            "--sort=-committerdate",
            f"--count={limit}",
            "--format=%(refname:short)%09%(objectname)%09%(committerdate:relative)",
            "refs/heads/",
        ])
        if result.exit_code != 0:
            raise self._command_failed(result)

        branches = []
        for line in result.stdout.decode("utf-8", errors="replace").splitlines():
            parts = line.split("\t", 2)
            if len(parts) != 3:
                continue
            branches.append(BranchSummary(name=parts[0], commit_id=parts[1], relative_date=parts[2]))
        return branches
