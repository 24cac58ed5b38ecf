"""Job enqueue and status polling API router."""

import logging

from fastapi import APIRouter, Depends, HTTPException

from gallery.api.deps import get_services
from gallery.models.job import JobKind, JobScope
from gallery.schemas.job import (
    EnqueueResponse,
    FolderCacheRequest,
    RawPreviewJobRequest,
    StatusRequest,
    StatusResponse,
    ThumbnailJobRequest,
)
from gallery.services.container import Services
from gallery.services.enqueue import EnqueueResult, EnqueueStatus
from gallery.services.status import StatusFilter

logger = logging.getLogger(__name__)

router = APIRouter()


def _accepted(result: EnqueueResult) -> EnqueueResponse:
    if result.status == EnqueueStatus.REJECTED:
        raise HTTPException(status_code=422, detail=result.reason)
    return EnqueueResponse.model_validate(result)


@router.post("/thumbnails", status_code=202)
def enqueue_thumbnail(
    body: ThumbnailJobRequest, services: Services = Depends(get_services)
) -> EnqueueResponse:
    """Queue a thumbnail render; returns the existing job if one is already in flight."""
    return _accepted(services.gate.enqueue_thumbnail(body.path, body.size))


@router.post("/folder-cache", status_code=202)
def enqueue_folder_cache(
    body: FolderCacheRequest, services: Services = Depends(get_services)
) -> EnqueueResponse:
    return _accepted(services.gate.enqueue_folder_cache(body.path, body.size))


@router.post("/raw-previews", status_code=202)
def enqueue_raw_preview(
    body: RawPreviewJobRequest, services: Services = Depends(get_services)
) -> EnqueueResponse:
    gate = services.gate
    if body.scope == JobScope.FOLDER:
        return _accepted(gate.enqueue_raw_folder(body.path, body.size))
    return _accepted(gate.enqueue_raw_preview(body.path, body.size))


@router.get("/status")
def global_status(
    kind: JobKind | None = None, services: Services = Depends(get_services)
) -> StatusResponse:
    """Counts and progress for every job created within the recent window."""
    report = services.status.get_status(StatusFilter(kinds=[kind] if kind else None))
    return StatusResponse.model_validate(report)


@router.post("/status")
def keyed_status(body: StatusRequest, services: Services = Depends(get_services)) -> StatusResponse:
    """Progress for an explicit set of content keys, e.g. the files a client just uploaded."""
    report = services.status.get_status(
        StatusFilter(keys=body.keys or None, since=body.since, session_id=body.session_id)
    )
    return StatusResponse.model_validate(report)
