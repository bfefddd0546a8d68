"""
Cartridge API routes.

Endpoints:
- GET /                          - Current manifest, history, branches and cached builds
- GET /cartridge.yml             - Manifest of the default branch with Source-Url
- GET /manifest/{commit}         - Manifest at a branch, tag or commit
- GET /archive/{commit}/{file}   - git archive as .zip or .tar.gz
- GET /commits, GET /branches    - History listings
- GET /builds                    - Cached builds
- GET /builds/{commit}           - Build status for a commit
- GET /builds/{commit}/artifact  - Download a cached build
- GET /builds/{commit}/log       - Output of the last build hook run
- POST /builds/{commit}          - Trigger a build (HTTP Basic auth)

All decisions are made by CartridgeService; this module only maps
requests and URLs.
"""
import logging
from dataclasses import asdict
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import (
    FileResponse,
    JSONResponse,
    PlainTextResponse,
    RedirectResponse,
    StreamingResponse,
)

from cartserver.core.auth import require_build_password
from cartserver.core.errors import CartridgeError
from cartserver.core.manifest import Manifest
from cartserver.core.service import CartridgeService, SubmitStatus
from cartserver.schemas.cartridge import (
    ArtifactItem,
    ArtifactListResponse,
    BranchItem,
    BuildStatusResponse,
    BuildSubmitResponse,
    CommitItem,
    ErrorResponse,
    IndexResponse,
    JobInfo,
)

logger = logging.getLogger(__name__)

# Body of every typed core failure, see cartridge_error_handler in app.py
ERROR_RESPONSES = {
    status: {"model": ErrorResponse}
    for status in (400, 404, 409, 422, 429, 500, 502)
}

router = APIRouter(tags=["cartridge"], responses=ERROR_RESPONSES)

ARCHIVE_MEDIA_TYPES = {
    "zip": "application/zip",
    "tar.gz": "application/gzip",
}

SUBMIT_STATUS_CODES = {
    SubmitStatus.ACCEPTED: 202,
    SubmitStatus.ALREADY_EXISTS: 200,
    SubmitStatus.NOT_BUILDABLE: 409,
    SubmitStatus.QUEUE_FULL: 429,
}


def get_service(request: Request) -> CartridgeService:
    return request.app.state.service


def get_base_url(request: Request) -> str:
    """
    Base URL for building absolute URLs.

    Priority:
    1. CART_PUBLIC_BASE_URL (if set)
    2. Forwarded or request host
    """
    settings = request.app.state.settings
    if settings.public_base_url:
        return settings.public_base_url.rstrip("/")
    scheme = request.headers.get("x-forwarded-proto", request.url.scheme)
    host = request.headers.get("x-forwarded-host", request.headers.get("host", ""))
    if host:
        return f"{scheme}://{host}"
    return str(request.base_url).rstrip("/")


def archive_url(base_url: str, name, commit_id: str, fmt: str = "zip") -> str:
    """URL of the source archive embedded in derived manifests."""
    filename = quote(str(name or "cartridge"), safe="")
    return f"{base_url}/archive/{quote(commit_id, safe='')}/{filename}.{fmt}"


def _source_url_for(request: Request):
    base_url = get_base_url(request)

    def source_url_for(manifest: Manifest, commit_id: str) -> str:
        return archive_url(base_url, manifest.name, commit_id)

    return source_url_for


def _artifact_item(base_url: str, info) -> ArtifactItem:
    return ArtifactItem(
        commit_id=info.commit_id,
        modified_at=info.modified_at,
        size_bytes=info.size_bytes,
        human_size=info.human_size,
        download_url=f"{base_url}/builds/{info.commit_id}/artifact",
    )


def _manifest_response(request: Request, service: CartridgeService, reference: str) -> PlainTextResponse:
    derived = service.resolve_manifest(reference, _source_url_for(request))
    return PlainTextResponse(
        derived.to_yaml(),
        headers={"X-Commit-Id": derived.commit_id},
    )


# =============================================================================
# Manifests and archives
# =============================================================================

@router.get("/", response_model=IndexResponse)
def index(request: Request, service: CartridgeService = Depends(get_service)):
    """Overview of the default branch and the build cache."""
    settings = request.app.state.settings
    base_url = get_base_url(request)

    commit_id = None
    manifest = None
    commits = []
    try:
        derived = service.resolve_manifest(settings.default_ref, _source_url_for(request))
        commit_id = derived.commit_id
        manifest = derived.document
        commits = service.recent_commits(settings.default_ref)
    except CartridgeError as e:
        # An empty or manifest-less repository still gets an index page
        logger.info(f"index_without_manifest error_code={e.error_code}")

    return IndexResponse(
        commit_id=commit_id,
        manifest=manifest,
        manifest_url=f"{base_url}/cartridge.yml",
        commits=[CommitItem(**asdict(c)) for c in commits],
        branches=[BranchItem(**asdict(b)) for b in service.recent_branches()],
        builds=[_artifact_item(base_url, a) for a in service.list_cached_builds()],
        builds_enabled=settings.builds_enabled,
        queue_capacity=service.scheduler.capacity,
        active_builds=len(service.scheduler.active_jobs()),
    )


@router.get("/cartridge.yml", response_class=PlainTextResponse)
def current_manifest(request: Request, service: CartridgeService = Depends(get_service)):
    """Manifest of the default branch."""
    return _manifest_response(request, service, request.app.state.settings.default_ref)


@router.get("/manifest/{commit:path}", response_class=PlainTextResponse)
def manifest_at(commit: str, request: Request, service: CartridgeService = Depends(get_service)):
    """Manifest at a branch, tag or commit."""
    return _manifest_response(request, service, commit)


@router.get("/archive/{commit:path}/{filename}")
def archive(
    commit: str,
    filename: str,
    request: Request,
    service: CartridgeService = Depends(get_service),
):
    """Stream the tree at a commit. Unknown extensions redirect to .zip."""
    name, _, ext = filename.partition(".")
    if ext not in ARCHIVE_MEDIA_TYPES:
        return RedirectResponse(
            url=f"/archive/{quote(commit, safe='/')}/{quote(name, safe='')}.zip",
            status_code=302,
        )

    commit_id, stream = service.open_archive(commit, ext)
    return StreamingResponse(
        stream,
        media_type=ARCHIVE_MEDIA_TYPES[ext],
        headers={
            "Content-Disposition": f'attachment; filename="{quote(name, safe="")}.{ext}"',
            "X-Commit-Id": commit_id,
        },
    )


@router.get("/commits", response_model=list[CommitItem])
def commits(
    request: Request,
    ref: Optional[str] = Query(default=None, max_length=50),
    limit: int = Query(default=10, ge=1, le=100),
    service: CartridgeService = Depends(get_service),
):
    reference = ref or request.app.state.settings.default_ref
    return [CommitItem(**asdict(c)) for c in service.recent_commits(reference, limit)]


@router.get("/branches", response_model=list[BranchItem])
def branches(
    limit: int = Query(default=10, ge=1, le=100),
    service: CartridgeService = Depends(get_service),
):
    return [BranchItem(**asdict(b)) for b in service.recent_branches(limit)]


# =============================================================================
# Builds
# =============================================================================

@router.get("/builds", response_model=ArtifactListResponse)
def list_builds(request: Request, service: CartridgeService = Depends(get_service)):
    base_url = get_base_url(request)
    items = [_artifact_item(base_url, a) for a in service.list_cached_builds()]
    return ArtifactListResponse(items=items, total=len(items))


@router.get("/builds/{commit:path}/artifact")
def download_build(commit: str, service: CartridgeService = Depends(get_service)):
    commit_id, path = service.artifact_file(commit)
    return FileResponse(
        path,
        media_type="application/gzip",
        filename=f"{commit_id}.tar.gz",
    )


@router.get("/builds/{commit:path}/log")
def build_log(commit: str, service: CartridgeService = Depends(get_service)):
    _, path = service.build_log(commit)
    return FileResponse(path, media_type="text/plain; charset=utf-8")


@router.post(
    "/builds/{commit:path}",
    response_model=BuildSubmitResponse,
    responses={409: {"model": BuildSubmitResponse}, 429: {"model": BuildSubmitResponse}},
    dependencies=[Depends(require_build_password)],
)
def trigger_build(commit: str, request: Request, service: CartridgeService = Depends(get_service)):
    """Queue a build. 202 when accepted, 200 when already cached."""
    submission = service.submit_build(commit)
    logger.info(f"build_requested commit={submission.commit_id[:8]} status={submission.status.value}")

    body = BuildSubmitResponse(
        status=submission.status,
        commit_id=submission.commit_id,
        job=JobInfo.from_job(submission.job),
        status_url=f"{get_base_url(request)}/builds/{submission.commit_id}",
    )
    headers = {"Retry-After": "30"} if submission.status == SubmitStatus.QUEUE_FULL else None
    return JSONResponse(
        status_code=SUBMIT_STATUS_CODES[submission.status],
        content=body.model_dump(mode="json"),
        headers=headers,
    )


@router.get("/builds/{commit:path}", response_model=BuildStatusResponse)
def build_status(commit: str, request: Request, service: CartridgeService = Depends(get_service)):
    status = service.build_status(commit)
    artifact_url = None
    if status.cached:
        artifact_url = f"{get_base_url(request)}/builds/{status.commit_id}/artifact"
    return BuildStatusResponse(
        commit_id=status.commit_id,
        buildable=status.buildable,
        cached=status.cached,
        job=JobInfo.from_job(status.job),
        artifact_url=artifact_url,
    )
