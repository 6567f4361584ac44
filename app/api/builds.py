"""
Build API endpoints.

All endpoints require a credential; status, logs, download and cancel are
further restricted to the build's owner (admin: any build).
"""
import logging
from typing import Optional

from fastapi import APIRouter, File, Form, Request, UploadFile
from fastapi.responses import Response

from app.core.build_service import get_build_service
from app.core.gatekeeper import MAX_UPLOAD_BYTES
from app.core.registry import format_timestamp
from app.core.security import get_identity
from app.schemas.build import (
    BuildListItem,
    BuildListResponse,
    BuildLogsResponse,
    BuildStatusResponse,
    BuildSubmitResponse,
    CancelResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["builds"])


@router.post("/build", response_model=BuildSubmitResponse)
async def submit_build(
    request: Request,
    project: Optional[UploadFile] = File(None),
    config: Optional[str] = Form(None),
) -> BuildSubmitResponse:
    """
    Submit a project ZIP (multipart field "project") and a JSON build config
    (form field "config").

    Returns immediately with buildId. Poll /api/build/{id}/status for progress.
    """
    identity = get_identity(request)

    data = None
    if project is not None:
        # One byte over the cap is enough for the gatekeeper to reject it
        data = await project.read(MAX_UPLOAD_BYTES + 1)

    record = get_build_service().submit(identity, data, config)
    return BuildSubmitResponse(buildId=record.id)


@router.get("/build/{build_id}/status", response_model=BuildStatusResponse)
async def get_build_status(build_id: str, request: Request) -> BuildStatusResponse:
    """Status, progress and the last 20 log lines."""
    identity = get_identity(request)
    return BuildStatusResponse(**get_build_service().status_view(build_id, identity))


@router.get("/build/{build_id}/logs", response_model=BuildLogsResponse)
async def get_build_logs(build_id: str, request: Request) -> BuildLogsResponse:
    """Full build log."""
    record = get_build_service().get_build(build_id, get_identity(request))
    return BuildLogsResponse(id=record.id, status=record.status, logs=record.logs)


@router.get("/build/{build_id}/download")
async def download_build(build_id: str, request: Request) -> Response:
    """
    Download the APK of a complete build.

    409 while the build is not complete, 404 once the artifact has expired.
    """
    identity = get_identity(request)
    apk_bytes, filename = get_build_service().read_artifact(build_id, identity)

    logger.info(f"artifact_downloaded build_id={build_id} size={len(apk_bytes)}")
    return Response(
        content=apk_bytes,
        media_type="application/vnd.android.package-archive",
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "Content-Length": str(len(apk_bytes)),
        },
    )


@router.delete("/build/{build_id}", response_model=CancelResponse)
async def cancel_build(build_id: str, request: Request) -> CancelResponse:
    """Cancel a build that has not started yet."""
    get_build_service().cancel(build_id, get_identity(request))
    return CancelResponse()


@router.get("/builds", response_model=BuildListResponse)
async def list_builds(request: Request) -> BuildListResponse:
    """The caller's builds (admin: all builds), newest first, at most 50."""
    records = get_build_service().list_builds(get_identity(request))
    return BuildListResponse(
        builds=[
            BuildListItem(
                id=r.id,
                status=r.status,
                appName=r.config.app_name,
                packageId=r.config.package_id,
                progress=r.progress,
                createdAt=format_timestamp(r.created_at),
                completedAt=format_timestamp(r.completed_at),
            )
            for r in records
        ]
    )
