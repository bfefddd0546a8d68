"""
Cartridge service - the entry points the HTTP layer calls.

Everything is built from explicit parameters; nothing here reads the
environment. The HTTP layer handles authentication and URL construction.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator, Optional, Union

from cartserver.core import manifest as manifests
from cartserver.core.artifact_store import ArtifactInfo, BuildArtifactStore
from cartserver.core.build_queue import (
    BUILD_TIMEOUT,
    DEFAULT_CAPACITY,
    BuildScheduler,
    Job,
)
from cartserver.core.errors import PathNotFound, QueueFull
from cartserver.core.git_gateway import (
    COMMAND_TIMEOUT,
    BranchSummary,
    CommitSummary,
    GitGateway,
)
from cartserver.core.manifest import BUILD_HOOK_PATH, DerivedManifest, Manifest

logger = logging.getLogger(__name__)


class SubmitStatus(str, Enum):
    """Outcome of a build request."""
    ACCEPTED = "accepted"
    ALREADY_EXISTS = "already_exists"
    NOT_BUILDABLE = "not_buildable"
    QUEUE_FULL = "queue_full"


@dataclass
class BuildSubmission:
    """Result of submit_build."""
    status: SubmitStatus
    commit_id: str
    job: Optional[Job] = None


@dataclass
class BuildStatus:
    """Everything known about the build of one commit."""
    commit_id: str
    buildable: bool
    cached: bool
    job: Optional[Job] = None


class CartridgeService:
    """Manifest resolution, archives, and build caching for one repository."""

    def __init__(
        self,
        gateway: GitGateway,
        store: BuildArtifactStore,
        scheduler: BuildScheduler,
        hook_path: str = BUILD_HOOK_PATH,
    ):
        self.gateway = gateway
        self.store = store
        self.scheduler = scheduler
        self._hook_path = hook_path

    @classmethod
    def from_paths(
        cls,
        repo_path: Union[str, Path],
        build_root: Union[str, Path],
        queue_capacity: int = DEFAULT_CAPACITY,
        build_timeout: int = BUILD_TIMEOUT,
        command_timeout: int = COMMAND_TIMEOUT,
    ) -> "CartridgeService":
        gateway = GitGateway(repo_path, command_timeout=command_timeout)
        store = BuildArtifactStore(build_root)
        store.run_startup_cleanup()
        scheduler = BuildScheduler(capacity=queue_capacity, build_timeout=build_timeout)
        logger.info(
            f"service_ready repo={gateway.root} build_root={store.build_root} "
            f"capacity={queue_capacity}"
        )
        return cls(gateway, store, scheduler)

    # -------------------------------------------------------------------------
    # Manifests and archives
    # -------------------------------------------------------------------------

    def resolve_manifest(
        self,
        reference: str,
        source_url_for: Callable[[Manifest, str], str],
    ) -> DerivedManifest:
        """
        Client-facing manifest at a reference.

        source_url_for(manifest, commit_id) returns the externally visible
        URL embedded as Source-Url.
        """
        commit_id, manifest = manifests.resolve(self.gateway, reference)
        return manifests.with_source(manifest, commit_id, source_url_for(manifest, commit_id))

    def open_archive(self, reference: str, fmt: str = "zip") -> tuple[str, Iterator[bytes]]:
        commit_id = self.gateway.resolve(reference)
        return commit_id, self.gateway.archive(commit_id, fmt)

    def recent_commits(self, reference: str = "master", limit: int = 10) -> list[CommitSummary]:
        return self.gateway.recent_commits(reference, limit)

    def recent_branches(self, limit: int = 10) -> list[BranchSummary]:
        return self.gateway.recent_branches(limit)

    # -------------------------------------------------------------------------
    # Builds
    # -------------------------------------------------------------------------

    def is_buildable(self, reference: str) -> bool:
        commit_id = self.gateway.resolve(reference)
        return manifests.is_buildable(self.gateway, commit_id, self._hook_path)

    def has_cached_build(self, reference: str) -> bool:
        commit_id = self.gateway.resolve(reference)
        return self.store.has_artifact(commit_id)

    def list_cached_builds(self) -> list[ArtifactInfo]:
        return self.store.list_artifacts()

    def build_status(self, reference: str) -> BuildStatus:
        commit_id = self.gateway.resolve(reference)
        return BuildStatus(
            commit_id=commit_id,
            buildable=manifests.is_buildable(self.gateway, commit_id, self._hook_path),
            cached=self.store.has_artifact(commit_id),
            job=self.scheduler.job_for(commit_id),
        )

    def submit_build(self, reference: str) -> BuildSubmission:
        """
        Queue a build unless one is cached already.

        Checks run in order: cached artifact, build hook present, queue
        capacity.
        """
        commit_id = self.gateway.resolve(reference)

        if self.store.has_artifact(commit_id):
            return BuildSubmission(SubmitStatus.ALREADY_EXISTS, commit_id)
        if not manifests.is_buildable(self.gateway, commit_id, self._hook_path):
            return BuildSubmission(SubmitStatus.NOT_BUILDABLE, commit_id)

        try:
            job = self.scheduler.submit(commit_id, self.gateway, self.store)
        except QueueFull:
            return BuildSubmission(SubmitStatus.QUEUE_FULL, commit_id)
        return BuildSubmission(SubmitStatus.ACCEPTED, commit_id, job)

    def artifact_file(self, reference: str) -> tuple[str, Path]:
        """Path of the cached build for a reference."""
        commit_id = self.gateway.resolve(reference)
        path = self.store.artifact_path(commit_id)
        if not path.is_file():
            raise PathNotFound(f"No cached build for {commit_id[:8]}")
        return commit_id, path

    def build_log(self, reference: str) -> tuple[str, Path]:
        """Path of the log written by the last build hook run for a reference."""
        commit_id = self.gateway.resolve(reference)
        path = self.store.log_path(commit_id)
        if not path.is_file():
            raise PathNotFound(f"No build log for {commit_id[:8]}")
        return commit_id, path
