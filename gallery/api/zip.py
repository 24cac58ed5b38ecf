"""Zip archive API router: request, poll by token, download."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import FileResponse
from starlette.background import BackgroundTask

from gallery.api.deps import get_services
from gallery.schemas.job import EnqueueResponse, JobProgressResponse, ZipRequest
from gallery.services.container import Services
from gallery.services.enqueue import EnqueueStatus

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("", status_code=202)
def request_zip(body: ZipRequest, services: Services = Depends(get_services)) -> EnqueueResponse:
    """Queue an archive of a folder or an explicit file list. Keep the token to poll and download."""
    if body.files:
        result = services.gate.enqueue_zip_files(body.files, body.filename_hint)
    else:
        assert body.path is not None
        result = services.gate.enqueue_zip_folder(body.path, body.filename_hint)
    if result.status == EnqueueStatus.REJECTED:
        raise HTTPException(status_code=422, detail=result.reason)
    return EnqueueResponse.model_validate(result)


@router.get("/{token}")
def zip_status(token: str, services: Services = Depends(get_services)) -> JobProgressResponse:
    progress = services.status.get_zip_job(token)
    if progress is None:
        raise HTTPException(status_code=404, detail="Unknown download token")
    return JobProgressResponse.model_validate(progress)


@router.get("/{token}/download")
def download_zip(token: str, services: Services = Depends(get_services)) -> FileResponse:
    """Stream the archive; the job becomes downloaded once the response has been sent."""
    # JobNotFoundError / JobNotReadyError / ArtifactExpiredError map to 404 / 409 / 410.
    job, path = services.delivery.locate(token)
    return FileResponse(
        path,
        media_type="application/zip",
        filename=services.delivery.download_name(job, path),
        background=BackgroundTask(services.delivery.mark_delivered, token),
    )
