"""
Pydantic schemas for cartridge API responses.
"""
from datetime import datetime
from typing import Any, Optional, List

from pydantic import BaseModel, Field

from cartserver.core.build_queue import Job, JobState
from cartserver.core.service import SubmitStatus


class ErrorResponse(BaseModel):
    """Body returned for every typed core failure."""
    detail: str
    error_code: str


class CommitItem(BaseModel):
    """One commit in a history listing."""
    id: str
    short_id: str
    author: str
    relative_date: str
    subject: str


class BranchItem(BaseModel):
    """One branch in a branch listing."""
    name: str
    commit_id: str
    relative_date: str


class ArtifactItem(BaseModel):
    """A cached build."""
    commit_id: str
    modified_at: datetime
    size_bytes: int
    human_size: str
    download_url: str


class ArtifactListResponse(BaseModel):
    items: List[ArtifactItem]
    total: int


class JobInfo(BaseModel):
    """Build job as seen by clients."""
    id: str
    state: JobState
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    exit_code: Optional[int] = None
    error: Optional[str] = None

    @classmethod
    def from_job(cls, job: Optional[Job]) -> Optional["JobInfo"]:
        if job is None:
            return None
        return cls(
            id=job.id,
            state=job.state,
            created_at=job.created_at,
            started_at=job.started_at,
            finished_at=job.finished_at,
            duration_ms=job.duration_ms,
            exit_code=job.exit_code,
            error=job.error,
        )


class BuildStatusResponse(BaseModel):
    """Response for GET /builds/{commit}."""
    commit_id: str
    buildable: bool
    cached: bool
    job: Optional[JobInfo] = None
    artifact_url: Optional[str] = None


class BuildSubmitResponse(BaseModel):
    """Response for POST /builds/{commit}."""
    status: SubmitStatus
    commit_id: str
    job: Optional[JobInfo] = None
    status_url: str


class IndexResponse(BaseModel):
    """Response for GET /."""
    commit_id: Optional[str] = Field(default=None, description="Commit of the default branch")
    manifest: Optional[dict[str, Any]] = None
    manifest_url: str
    commits: List[CommitItem]
    branches: List[BranchItem]
    builds: List[ArtifactItem]
    builds_enabled: bool
    queue_capacity: int
    active_builds: int
