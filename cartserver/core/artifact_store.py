"""
Build artifact cache keyed by commit id.

Layout under the build root:
- <commit>.tar.gz   packaged build output (the only cache-hit signal)
- <commit>.build/   scratch directory while a build runs
- <commit>.log      output of the most recent build hook run
- .<commit>.*.tmp   artifact being written, renamed into place when complete

Security:
- File names derive only from validated commit ids
- Artifacts appear via os.replace, so a visible artifact is always complete
"""
import logging
import os
import tarfile
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Union

from cartserver.core.git_gateway import COMMIT_ID_PATTERN, validate_commit_id

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

ARTIFACT_SUFFIX = ".tar.gz"
WORKDIR_SUFFIX = ".build"
LOG_SUFFIX = ".log"
TEMP_SUFFIX = ".tmp"

SIZE_UNITS = ("B", "KB", "MB", "GB", "TB")


@dataclass
class ArtifactInfo:
    """A cached build as shown in listings."""
    commit_id: str
    path: Path
    modified_at: datetime
    size_bytes: int
    human_size: str


def human_size(size_bytes: int) -> str:
    """
    Render a byte count with 1024-based units.

    Values above 9 in the chosen unit have no decimals, smaller ones keep
    one: 512 -> "512 B", 5120 -> "5.0 KB", 10240 -> "10 KB".
    """
    value = float(size_bytes)
    unit = SIZE_UNITS[0]
    for unit in SIZE_UNITS:
        if value < 1024 or unit == SIZE_UNITS[-1]:
            break
        value /= 1024

    if value > 9:
        return f"{value:.0f} {unit}"
    return f"{value:.1f} {unit}"


class BuildArtifactStore:
    """Filesystem-backed build cache plus scratch-space allocator."""

    def __init__(self, build_root: Union[str, Path]):
        self._build_root = Path(build_root).expanduser().resolve()
        self._build_root.mkdir(parents=True, exist_ok=True)

    @property
    def build_root(self) -> Path:
        return self._build_root

    def artifact_path(self, commit_id: str) -> Path:
        validate_commit_id(commit_id)
        return self._build_root / f"{commit_id}{ARTIFACT_SUFFIX}"

    def working_directory(self, commit_id: str) -> Path:
        """Scratch directory for a build of this commit. Not created here."""
        validate_commit_id(commit_id)
        return self._build_root / f"{commit_id}{WORKDIR_SUFFIX}"

    def log_path(self, commit_id: str) -> Path:
        validate_commit_id(commit_id)
        return self._build_root / f"{commit_id}{LOG_SUFFIX}"

    def has_artifact(self, commit_id: str) -> bool:
        """Existence check only, contents are not inspected."""
        return self.artifact_path(commit_id).is_file()

    def list_artifacts(self) -> list[ArtifactInfo]:
        """All cached builds, most recently written first."""
        artifacts = []
        for item in self._build_root.iterdir():
            if not item.name.endswith(ARTIFACT_SUFFIX):
                continue
            commit_id = item.name[:-len(ARTIFACT_SUFFIX)]
            if not COMMIT_ID_PATTERN.match(commit_id):
                continue
            try:
                stat = item.stat()
            except FileNotFoundError:
                continue
            artifacts.append(ArtifactInfo(
                commit_id=commit_id,
                path=item,
                modified_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                size_bytes=stat.st_size,
                human_size=human_size(stat.st_size),
            ))

        artifacts.sort(key=lambda a: a.modified_at, reverse=True)
        return artifacts

    def store_artifact(self, commit_id: str, source_dir: Path) -> ArtifactInfo:
        """
        Package a directory's contents as the artifact for a commit.

        Writes a gzipped tarball to a temporary file in the build root, then
        renames it over the canonical path.
        """
        final_path = self.artifact_path(commit_id)
        source_dir = Path(source_dir)

        fd, tmp_path = tempfile.mkstemp(
            dir=str(self._build_root),
            prefix=f".{commit_id}.",
            suffix=TEMP_SUFFIX,
        )
        try:
            with os.fdopen(fd, "wb") as fh:
                with tarfile.open(fileobj=fh, mode="w:gz") as tar:
                    for child in sorted(source_dir.iterdir()):
                        tar.add(str(child), arcname=child.name)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, str(final_path))
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

        stat = final_path.stat()
        logger.info(f"artifact_stored commit={commit_id[:8]} size={stat.st_size}")
        return ArtifactInfo(
            commit_id=commit_id,
            path=final_path,
            modified_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            size_bytes=stat.st_size,
            human_size=human_size(stat.st_size),
        )

    def run_startup_cleanup(self) -> int:
        """Remove temp files left by interrupted packaging. Returns count deleted."""
        deleted = 0
        for item in self._build_root.iterdir():
            if item.is_file() and item.name.startswith(".") and item.name.endswith(TEMP_SUFFIX):
                try:
                    item.unlink()
                    deleted += 1
                except OSError as e:
                    logger.warning(f"cleanup_temp_failed file={item.name} error={type(e).__name__}")

        if deleted > 0:
            logger.info(f"cleanup_temp_artifacts deleted={deleted}")
        return deleted
