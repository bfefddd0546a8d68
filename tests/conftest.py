"""
Pytest configuration and fixtures.

Repositories are real git repositories created in tmp_path with the git
CLI; tests that need them are skipped when git is not installed.
"""
import io
import os
import shutil
import subprocess
import sys
import tarfile
import threading
from pathlib import Path

import pytest

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")

MANIFEST_YAML = """\
Name: mock
Display-Name: Mock Cartridge
Cartridge-Version: '1.0'
Cartridge-Vendor: example
Categories:
  - service
  - web_framework
"""

BUILD_HOOK = """\
#!/bin/sh
set -e
echo "building $CART_COMMIT_ID"
echo run >> "{counter}"
mkdir -p out
echo built > out/result.txt
"""

FAILING_HOOK = """\
#!/bin/sh
echo "this build always fails"
exit 3
"""

HOOK_PATH = ".openshift/action_hooks/build"


def _git_env() -> dict:
    env = {k: v for k, v in os.environ.items() if not k.startswith("GIT_")}
    env.update({
        "GIT_AUTHOR_NAME": "Test Author",
        "GIT_AUTHOR_EMAIL": "author@example.com",
        "GIT_COMMITTER_NAME": "Test Author",
        "GIT_COMMITTER_EMAIL": "author@example.com",
        "GIT_CONFIG_NOSYSTEM": "1",
        "HOME": os.environ.get("HOME", "/tmp"),
    })
    return env


def git(repo: Path, *args: str) -> str:
    """Run git in a test repository and return stdout."""
    result = subprocess.run(
        ["git", "-c", "commit.gpgsign=false", *args],
        cwd=str(repo),
        env=_git_env(),
        capture_output=True,
        text=True,
        check=True,
    )
    return result.stdout.strip()


class RepoBuilder:
    """Creates a git repository and commits files into it."""

    def __init__(self, path: Path):
        self.path = path
        self.path.mkdir(parents=True, exist_ok=True)
        git(self.path, "init", "-q")
        git(self.path, "symbolic-ref", "HEAD", "refs/heads/master")

    def commit(self, files: dict, message: str = "update", executable=()) -> str:
        """Write files (None deletes) and commit. Returns the new commit id."""
        for name, content in files.items():
            target = self.path / name
            if content is None:
                git(self.path, "rm", "-q", name)
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content)
            if name in executable:
                target.chmod(0o755)
            git(self.path, "add", name)
        git(self.path, "commit", "-q", "--allow-empty", "-m", message)
        return git(self.path, "rev-parse", "HEAD")

    def branch(self, name: str, start: str = "HEAD") -> None:
        git(self.path, "branch", name, start)

    def tag(self, name: str, start: str = "HEAD") -> None:
        git(self.path, "tag", name, start)


@pytest.fixture
def repo_builder(tmp_path):
    """Factory for throwaway git repositories."""
    def make(name: str = "repo") -> RepoBuilder:
        return RepoBuilder(tmp_path / name)
    return make


@pytest.fixture
def hook_counter(tmp_path) -> Path:
    """File the build hook appends one line to per run."""
    return tmp_path / "hook-runs.txt"


@pytest.fixture
def cart_repo(repo_builder, hook_counter):
    """
    Repository with two commits:
    - first: manifest only (not buildable)
    - second (master): manifest plus a build hook
    """
    builder = repo_builder("cart")
    builder.first_commit = builder.commit(
        {"metadata/manifest.yml": MANIFEST_YAML, "README.md": "mock cartridge\n"},
        message="initial manifest",
    )
    builder.head = builder.commit(
        {HOOK_PATH: BUILD_HOOK.format(counter=hook_counter)},
        message="add build hook",
        executable=(HOOK_PATH,),
    )
    builder.tag("v1.0")
    return builder


@pytest.fixture
def build_root(tmp_path) -> Path:
    return tmp_path / "builds"


def tar_bytes(files: dict, executable=()) -> bytes:
    """In-memory tar archive for fake gateways."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as tar:
        for name, content in files.items():
            data = content.encode("utf-8")
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o755 if name in executable else 0o644
            tar.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


class FakeGateway:
    """
    Gateway double for scheduler tests.

    archive() yields a tar containing an always-succeeding build hook, but
    only after `release` is set, so jobs stay non-terminal until a test
    lets them go.
    """

    def __init__(self, root: Path, hook: str = "#!/bin/sh\nexit 0\n"):
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)
        self.release = threading.Event()
        self.archive_calls = []
        self._payload = tar_bytes({HOOK_PATH: hook, "src/app.txt": "hello\n"}, executable=(HOOK_PATH,))

    def archive(self, commit_id: str, fmt: str = "zip"):
        self.archive_calls.append((commit_id, fmt))
        return self._stream()

    def _stream(self):
        self.release.wait(timeout=30)
        yield self._payload


@pytest.fixture
def fake_gateway_factory(tmp_path):
    """Each fake gets its own root, so builds take different repository locks."""
    created = []

    def make(name: str, **kwargs) -> FakeGateway:
        gateway = FakeGateway(tmp_path / "fake-repos" / name, **kwargs)
        created.append(gateway)
        return gateway

    yield make

    # Never leave build threads blocked after a test
    for gateway in created:
        gateway.release.set()
